"""Tests for prompt assembly, the stream sanitizer and answer streaming."""

import json
import re
from unittest.mock import MagicMock

import openai
import pytest

from citedoc.core.answer import (
    AnswerStreamer,
    build_context,
    build_prompt,
    encode_sse,
    format_history,
    parse_citations,
    sanitize_stream_text,
    source_document_ids,
)
from citedoc.core.errors import StoreError
from citedoc.core.models import Message, Role, StreamEvent, StreamEventType

CLOSED = '<citation cited-text="revenue grew 12%" file-id="doc_a" file-page-number="3" chunk-id="f1">1</citation>'


def _chunk(content):
    chunk = MagicMock()
    chunk.choices = [MagicMock()]
    chunk.choices[0].delta.content = content
    return chunk


def _message(role, content):
    return Message(id=f"m-{content}", conversation_id="c1", role=role, content=content)


@pytest.fixture
def recorder():
    recorder = MagicMock()
    recorder.return_value = _message(Role.ASSISTANT, "stored")
    return recorder


def _streamer(settings, client, recorder):
    return AnswerStreamer(settings, client=client, recorder=recorder)


# Sanitizer

def test_sanitize_truncates_dangling_citation():
    text = 'Revenue grew <citation cited-text="revenue gr'
    assert sanitize_stream_text(text) == "Revenue grew "


def test_sanitize_keeps_closed_citation():
    text = f"Revenue grew {CLOSED} last year."
    assert sanitize_stream_text(text) == text


def test_sanitize_truncates_after_closed_citation():
    text = f"Revenue grew {CLOSED} and costs <citation chunk-id="
    assert sanitize_stream_text(text) == f"Revenue grew {CLOSED} and costs "


def test_sanitize_strips_echoed_sources():
    text = 'Intro <sources><source chunk-id="f1">raw</source></sources>answer'
    assert sanitize_stream_text(text) == "Intro answer"


def test_sanitize_is_idempotent_on_complete_text():
    text = f"A {CLOSED} B {CLOSED}"
    once = sanitize_stream_text(text)
    assert sanitize_stream_text(once) == once == text


def test_sanitize_prefixes_never_show_open_tag():
    """Every prefix of a streamed answer renders without a dangling tag."""
    full = f"Revenue grew {CLOSED} overall."
    for end in range(len(full) + 1):
        safe = sanitize_stream_text(full[:end])
        assert safe.count("<citation") == safe.count("</citation>")


def test_sanitize_truncates_partial_tag_name():
    assert sanitize_stream_text("Revenue grew <cita") == "Revenue grew "
    assert sanitize_stream_text("Revenue grew <") == "Revenue grew "
    assert sanitize_stream_text(f"{CLOSED} and <ci") == f"{CLOSED} and "


def test_sanitize_prefixes_never_end_in_partial_tag():
    full = f"Revenue grew {CLOSED} overall."
    for end in range(len(full) + 1):
        safe = sanitize_stream_text(full[:end])
        assert not re.search(r"</?[a-z]*$", safe)


def test_sanitize_empty():
    assert sanitize_stream_text("") == ""


# Prompt assembly

def test_build_context_addresses_each_fragment(make_fragment):
    fragments = [
        make_fragment("f1", content="First.", page=2),
        make_fragment("f2", document_id="doc_b", content="Second."),
    ]

    context = build_context(fragments)

    assert context == (
        '<source chunk-id="f1" file-id="doc_a" page-number="2">First.</source>\n\n'
        '<source chunk-id="f2" file-id="doc_b">Second.</source>'
    )


def test_format_history_uses_roles():
    history = [_message(Role.USER, "hi"), _message(Role.ASSISTANT, "hello")]
    assert format_history(history) == "USER: hi\nASSISTANT: hello"


def test_build_prompt_without_sources_still_has_question():
    prompt = build_prompt("What changed?", [_message(Role.USER, "earlier")], [])

    assert "<sources>\n\n</sources>" in prompt
    assert "USER: earlier" in prompt
    assert "What changed?" in prompt


def test_parse_citations_reads_attributes():
    citations = parse_citations(f"Growth {CLOSED} and again {CLOSED}.")

    assert len(citations) == 2
    assert citations[0].cited_text == "revenue grew 12%"
    assert citations[0].fragment_id == "f1"
    assert citations[0].document_id == "doc_a"
    assert citations[0].page_number == 3
    assert citations[0].ordinal == 1
    assert citations[1].ordinal == 1


def test_source_document_ids_are_deduplicated(make_fragment):
    fragments = [make_fragment("f1"), make_fragment("f2", document_id="doc_b"), make_fragment("f3")]
    assert source_document_ids(fragments) == ["doc_a", "doc_b"]


def test_encode_sse_frames():
    text = encode_sse(StreamEvent(type=StreamEventType.TEXT, delta="Hi"))
    chat = encode_sse(StreamEvent(type=StreamEventType.CONVERSATION_ID, conversation_id="c1", transient=True))
    error = encode_sse(StreamEvent(type=StreamEventType.ERROR, error_text="AI generation failed."))

    assert text.startswith("data: ") and text.endswith("\n\n")
    assert json.loads(text[6:]) == {"type": "text", "delta": "Hi"}
    assert json.loads(chat[6:]) == {"type": "conversation_id", "chatId": "c1", "transient": True}
    assert json.loads(error[6:]) == {"type": "error", "errorText": "AI generation failed."}


# Streaming

def test_answer_streams_then_records(settings, recorder, make_fragment):
    client = MagicMock()
    client.chat.completions.create.return_value = iter([_chunk("Hel"), _chunk(None), _chunk("lo")])
    fragments = [make_fragment("f1"), make_fragment("f2"), make_fragment("f3", document_id="doc_b")]

    events = list(_streamer(settings, client, recorder).answer("q?", [], fragments, "c1"))

    assert [e.type for e in events] == [
        StreamEventType.TEXT, StreamEventType.TEXT, StreamEventType.CONVERSATION_ID, StreamEventType.FINISH
    ]
    assert "".join(e.delta for e in events if e.type == StreamEventType.TEXT) == "Hello"
    assert events[2].conversation_id == "c1"
    assert events[2].transient
    recorder.assert_called_once_with("c1", "Hello", ["doc_a", "doc_b"])


def test_answer_calls_model_with_streaming(settings, recorder):
    client = MagicMock()
    client.chat.completions.create.return_value = iter([_chunk("ok")])

    list(_streamer(settings, client, recorder).answer("q?", [], [], "c1"))

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["temperature"] == 0.1
    assert kwargs["stream"] is True
    assert kwargs["messages"][0]["role"] == "user"
    assert "q?" in kwargs["messages"][0]["content"]


def test_answer_error_before_output(settings, recorder):
    client = MagicMock()
    client.chat.completions.create.side_effect = openai.OpenAIError("boom")

    events = list(_streamer(settings, client, recorder).answer("q?", [], [], "c1"))

    assert len(events) == 1
    assert events[0].type == StreamEventType.ERROR
    assert events[0].error_text == "AI generation failed."
    recorder.assert_not_called()


def test_answer_error_mid_stream_keeps_partial_text(settings, recorder):
    def broken_stream():
        yield _chunk("Partial")
        raise openai.OpenAIError("connection reset")

    client = MagicMock()
    client.chat.completions.create.return_value = broken_stream()

    events = list(_streamer(settings, client, recorder).answer("q?", [], [], "c1"))

    assert [e.type for e in events] == [StreamEventType.TEXT, StreamEventType.ERROR]
    recorder.assert_not_called()


def test_answer_empty_output_is_not_recorded(settings, recorder):
    client = MagicMock()
    client.chat.completions.create.return_value = iter([])

    events = list(_streamer(settings, client, recorder).answer("q?", [], [], "c1"))

    assert [e.type for e in events] == [StreamEventType.CONVERSATION_ID, StreamEventType.FINISH]
    recorder.assert_not_called()


def test_answer_dropped_by_consumer_is_not_recorded(settings, recorder):
    client = MagicMock()
    client.chat.completions.create.return_value = iter([_chunk("one"), _chunk("two")])

    stream = _streamer(settings, client, recorder).answer("q?", [], [], "c1")
    next(stream)
    stream.close()

    recorder.assert_not_called()


def test_answer_record_failure_ends_with_error_event(settings, recorder):
    client = MagicMock()
    client.chat.completions.create.return_value = iter([_chunk("Partial "), _chunk("answer")])
    recorder.side_effect = StoreError("connection lost")

    events = list(_streamer(settings, client, recorder).answer("q?", [], [], "c1"))

    assert [e.type for e in events] == [
        StreamEventType.TEXT, StreamEventType.TEXT, StreamEventType.CONVERSATION_ID, StreamEventType.ERROR
    ]
    assert "".join(e.delta for e in events if e.type == StreamEventType.TEXT) == "Partial answer"
    assert events[-1].error_text == "AI generation failed."
