"""Locate a cited excerpt inside addressable markup and mark it."""

import re
import logging
from typing import List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

from .align import BLOCK_ATTRIBUTE
from .models import HighlightResult, ScrollTarget

logger = logging.getLogger(__name__)

HIGHLIGHT_CLASS = "highlight"

_QUOTE_CHARS = re.compile(r"[“”\"']")
_WHITESPACE = re.compile(r"\s+")


def normalize_quote(text: Optional[str]) -> str:
    """Strip quote characters and collapse whitespace."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", _QUOTE_CHARS.sub("", text)).strip()


def clear_highlights(soup: BeautifulSoup) -> None:
    """Revert every earlier highlight so requests never accumulate."""
    for span in soup.find_all("span", class_=HIGHLIGHT_CLASS):
        span.unwrap()

    for tag in soup.find_all(class_=HIGHLIGHT_CLASS):
        classes = [c for c in tag.get("class", []) if c != HIGHLIGHT_CLASS]
        if classes:
            tag["class"] = classes
        else:
            del tag["class"]

    # Merge the text nodes split apart by earlier highlights
    soup.smooth()


def _text_nodes(root: Tag) -> List[NavigableString]:
    return [node for node in root.find_all(string=True) if type(node) is NavigableString]


def _mark_text_node(soup: BeautifulSoup, node: NavigableString, pattern: re.Pattern,
                    all_occurrences: bool) -> Optional[Tag]:
    """Wrap matches inside one text node; returns the first highlight span."""
    text = str(node)
    pieces = []
    first_span = None
    cursor = 0

    for match in pattern.finditer(text):
        if match.start() > cursor:
            pieces.append(NavigableString(text[cursor:match.start()]))
        span = soup.new_tag("span", attrs={"class": HIGHLIGHT_CLASS})
        span.string = match.group(0)
        pieces.append(span)
        if first_span is None:
            first_span = span
        cursor = match.end()
        if not all_occurrences:
            break

    if first_span is None:
        return None

    if cursor < len(text):
        pieces.append(NavigableString(text[cursor:]))
    node.replace_with(*pieces)
    return first_span


def _mark_in(soup: BeautifulSoup, root: Tag, pattern: re.Pattern, all_occurrences: bool) -> Optional[Tag]:
    first_span = None
    for node in _text_nodes(root):
        span = _mark_text_node(soup, node, pattern, all_occurrences)
        if first_span is None:
            first_span = span
    return first_span


def _scroll_target(blocks: List[Tag], element: Tag) -> Optional[ScrollTarget]:
    block = element if element.has_attr(BLOCK_ATTRIBUTE) else element.find_parent(attrs={BLOCK_ATTRIBUTE: True})
    if block is None:
        return None
    # Tag equality is structural, duplicate lines need identity
    for index, candidate in enumerate(blocks):
        if candidate is block:
            return ScrollTarget(block_index=index, fragment_id=block.get(BLOCK_ATTRIBUTE))
    return None


def highlight(markup: str, fragment_id: Optional[str] = None, quoted_text: Optional[str] = None) -> HighlightResult:
    """
    Mark a cited excerpt in a fresh copy of the markup.

    With a fragment id, the excerpt is searched inside that fragment's
    blocks first (first block containing it wins), then across the whole
    document (every occurrence), and finally every block of the fragment is
    marked as a whole. Without a fragment id only the document-wide search
    runs. Matching is case-insensitive on the normalized quote.

    Args:
        markup: Addressable markup produced at ingestion
        fragment_id: Fragment the citation points at
        quoted_text: Excerpt quoted by the citation

    Returns:
        HighlightResult with the marked markup and the first match's block
    """
    soup = BeautifulSoup(markup or "", "html.parser")
    clear_highlights(soup)

    blocks = soup.find_all(attrs={BLOCK_ATTRIBUTE: True})
    needle = normalize_quote(quoted_text)
    pattern = re.compile(re.escape(needle), re.IGNORECASE) if needle else None
    first_match = None

    if fragment_id:
        targeted = [b for b in blocks if b.get(BLOCK_ATTRIBUTE) == fragment_id]

        if pattern is not None:
            for block in targeted:
                first_match = _mark_in(soup, block, pattern, all_occurrences=False)
                if first_match is not None:
                    break

            if first_match is None:
                first_match = _mark_in(soup, soup, pattern, all_occurrences=True)

        if first_match is None and targeted:
            logger.info(f"Excerpt not located, marking all blocks of fragment {fragment_id}")
            for block in targeted:
                block["class"] = block.get("class", []) + [HIGHLIGHT_CLASS]
            first_match = targeted[0]

    elif pattern is not None:
        first_match = _mark_in(soup, soup, pattern, all_occurrences=True)

    return HighlightResult(
        markup=str(soup),
        scroll_target=_scroll_target(blocks, first_match) if first_match is not None else None,
        matched=first_match is not None
    )
