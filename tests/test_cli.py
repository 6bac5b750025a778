"""Tests for the CLI's streamed answer rendering."""

from unittest.mock import MagicMock

from citedoc.cli.main import render_answer
from citedoc.core.models import StreamEvent, StreamEventType

CLOSED = '<citation cited-text="revenue grew 12%" file-id="doc_a" chunk-id="f1">1</citation>'


def _text(delta):
    return StreamEvent(type=StreamEventType.TEXT, delta=delta)


def _rendered(live):
    return [call[0][0].plain for call in live.update.call_args_list]


def test_half_streamed_citation_is_never_rendered():
    live = MagicMock()
    events = [
        _text("Revenue grew "),
        _text('<citation cited-text="revenue gr'),
        _text('ew 12%" file-id="doc_a" chunk-id="f1">1</citation>'),
        _text(" last year."),
        StreamEvent(type=StreamEventType.CONVERSATION_ID, conversation_id="c1", transient=True),
        StreamEvent(type=StreamEventType.FINISH),
    ]

    answer_text, conversation_id, error_text = render_answer(events, live)

    assert _rendered(live) == [
        "Revenue grew ",
        "Revenue grew ",
        f"Revenue grew {CLOSED}",
        f"Revenue grew {CLOSED} last year.",
    ]
    assert answer_text == f"Revenue grew {CLOSED} last year."
    assert conversation_id == "c1"
    assert error_text is None


def test_partial_tag_name_is_not_rendered():
    live = MagicMock()

    render_answer([_text("Costs fell <cit")], live)

    assert _rendered(live) == ["Costs fell "]


def test_error_event_stops_rendering():
    live = MagicMock()
    events = [
        _text("Partial"),
        StreamEvent(type=StreamEventType.ERROR, error_text="AI generation failed."),
        _text(" never shown"),
    ]

    answer_text, conversation_id, error_text = render_answer(events, live)

    assert answer_text == "Partial"
    assert conversation_id is None
    assert error_text == "AI generation failed."
    assert live.update.call_count == 1
