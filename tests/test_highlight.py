"""Tests for locating and marking cited excerpts in addressable markup."""

from bs4 import BeautifulSoup

from citedoc.core.highlight import highlight, normalize_quote

MARKUP = "\n".join([
    '<p data-chunk-id="f1">The quick brown fox</p>',
    '<p data-chunk-id="f2">jumps over the lazy dog</p>',
    '<p data-chunk-id="f2">The lazy dog sleeps</p>',
    '<p data-chunk-id="f3">Tom &amp; Jerry</p>',
])


def _spans(markup):
    return BeautifulSoup(markup, "html.parser").find_all("span", class_="highlight")


def _blocks(markup):
    return BeautifulSoup(markup, "html.parser").find_all("p")


def test_targeted_match_marks_first_block_only():
    result = highlight(MARKUP, "f2", "lazy dog")

    spans = _spans(result.markup)
    assert result.matched
    assert len(spans) == 1
    assert spans[0].get_text() == "lazy dog"
    assert result.scroll_target.block_index == 1
    assert result.scroll_target.fragment_id == "f2"


def test_falls_back_to_document_wide_search():
    """Quote not in the targeted fragment: every occurrence in the document is marked."""
    result = highlight(MARKUP, "f1", "lazy dog")

    assert result.matched
    assert len(_spans(result.markup)) == 2
    assert result.scroll_target.block_index == 1
    assert result.scroll_target.fragment_id == "f2"


def test_falls_back_to_whole_fragment_blocks():
    """Quote nowhere in the document: the fragment's blocks are marked as a whole."""
    result = highlight(MARKUP, "f2", "not in this document")

    blocks = _blocks(result.markup)
    marked = [b for b in blocks if "highlight" in (b.get("class") or [])]
    assert result.matched
    assert [b.get_text() for b in marked] == ["jumps over the lazy dog", "The lazy dog sleeps"]
    assert _spans(result.markup) == []
    assert result.scroll_target.block_index == 1


def test_without_fragment_searches_whole_document():
    result = highlight(MARKUP, quoted_text="the")

    # "The", "the", "The" across three blocks, case-insensitive
    assert len(_spans(result.markup)) == 3
    assert result.scroll_target.block_index == 0


def test_match_is_case_and_quote_insensitive():
    result = highlight(MARKUP, "f1", "“THE   quick”")

    spans = _spans(result.markup)
    assert len(spans) == 1
    assert spans[0].get_text() == "The quick"


def test_escaped_text_is_matched_as_displayed():
    result = highlight(MARKUP, "f3", "Tom & Jerry")

    assert result.scroll_target.block_index == 3
    assert "&amp;" in result.markup


def test_highlights_do_not_accumulate():
    first = highlight(MARKUP, "f2", "lazy dog")
    second = highlight(first.markup, "f1", "quick brown")

    spans = _spans(second.markup)
    assert len(spans) == 1
    assert spans[0].get_text() == "quick brown"
    # Text split by the first highlight is merged back into one node
    assert _blocks(second.markup)[1].string == "jumps over the lazy dog"


def test_block_highlight_class_is_reverted():
    first = highlight(MARKUP, "f2", "not in this document")
    second = highlight(first.markup, quoted_text="Jerry")

    assert not any("highlight" in (b.get("class") or []) for b in _blocks(second.markup))
    assert len(_spans(second.markup)) == 1


def test_no_match_without_fragment():
    result = highlight(MARKUP, quoted_text="elephant")

    assert not result.matched
    assert result.scroll_target is None
    assert _spans(result.markup) == []


def test_normalize_quote():
    assert normalize_quote('  “Hello”   "big"\n world\'s  ') == "Hello big worlds"
    assert normalize_quote(None) == ""
