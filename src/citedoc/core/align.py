"""Map original document lines to fragments and render addressable markup."""

import html
import logging
from typing import List, Sequence

from .fragment import fragment_id, normalize_lines
from .models import Fragment

logger = logging.getLogger(__name__)

BLOCK_ATTRIBUTE = "data-chunk-id"


def best_fragment_for_span(start: int, end: int, fragments: Sequence[Fragment]) -> str:
    """Id of the fragment with the largest overlap with ``[start, end)``.

    Ties keep the earlier fragment; no overlap at all falls back to the
    first fragment.
    """
    best_id = fragments[0].id
    best_score = 0
    for fragment in fragments:
        overlap = max(0, min(end, fragment.end_offset) - max(start, fragment.start_offset))
        if overlap > best_score:
            best_score = overlap
            best_id = fragment.id
    return best_id


def render_block(line: str, chunk_id: str) -> str:
    return f'<p {BLOCK_ATTRIBUTE}="{chunk_id}">{html.escape(line, quote=False)}</p>'


def align_lines(
    lines: List[str],
    joined_text: str,
    fragments: Sequence[Fragment],
    document_id: str
) -> str:
    """
    Tag each original line with the fragment that covers most of it.

    Args:
        lines: Non-blank original lines, in document order
        joined_text: The normalized text the fragments were cut from
        fragments: Fragments with offsets into ``joined_text``
        document_id: Owning document (used only when there are no fragments)

    Returns:
        One ``<p data-chunk-id="...">`` block per line, newline separated
    """
    blocks = []
    search_from = 0

    for line_index, line in enumerate(lines):
        trimmed = line.strip()
        if not trimmed:
            continue

        # Never re-match earlier text so duplicate lines land on later spans
        line_start = joined_text.find(trimmed, search_from)
        if line_start == -1:
            line_start = joined_text.find(trimmed)

        if line_start != -1:
            line_end = line_start + len(trimmed)
            search_from = max(search_from, line_end)

        if not fragments:
            chunk_id = fragment_id(line, line_index, document_id)
        elif line_start == -1:
            chunk_id = fragments[0].id
        else:
            chunk_id = best_fragment_for_span(line_start, line_end, fragments)

        blocks.append(render_block(line, chunk_id))

    return "\n".join(blocks)


def align_document(raw_text: str, fragments: Sequence[Fragment], document_id: str) -> str:
    """Normalize raw text the same way the fragmenter saw it, then align."""
    lines, joined_text = normalize_lines(raw_text)
    markup = align_lines(lines, joined_text, fragments, document_id)
    logger.info(f"Aligned {len(lines)} lines to {len(fragments)} fragments for {document_id}")
    return markup
