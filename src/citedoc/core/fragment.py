"""Deterministic text fragmentation with sentence-aware cuts and overlap."""

import hashlib
from typing import List, Tuple

from .models import TextSpan

FRAGMENT_TARGET = 400
FRAGMENT_MIN = 256
FRAGMENT_MAX = 512
FRAGMENT_OVERLAP_RATIO = 0.1

SENTENCE_TERMINALS = ".!?"


def fragment_id(content: str, ordinal: int, document_id: str) -> str:
    """Stable id for a fragment: sha256 over (content, ordinal, document id)."""
    digest = hashlib.sha256(f"{content}{ordinal}{document_id}".encode("utf-8"))
    return digest.hexdigest()[:16]


def normalize_lines(raw_text: str) -> Tuple[List[str], str]:
    """
    Split raw document text into its non-blank lines and the joined text.

    The joined text (lines separated by single spaces) is what gets
    fragmented; the lines are what the source aligner tags.
    """
    lines = [line for line in raw_text.split("\n") if line.strip()]
    return lines, " ".join(lines)


def _find_sentence_boundary(text: str, start: int, lower: int, upper: int, min_size: int) -> int:
    """
    Search backward from ``upper`` to ``lower`` for a sentence end.

    Returns the cut position just after the terminal character, or -1. A cut
    is only accepted if the trimmed span ``text[start:cut]`` is at least
    ``min_size`` characters long.
    """
    text_len = len(text)
    for j in range(min(upper, text_len - 1), lower - 1, -1):
        if text[j] not in SENTENCE_TERMINALS:
            continue
        if j + 1 >= text_len or text[j + 1].isspace():
            cut = j + 1
            if len(text[start:cut].strip()) >= min_size:
                return cut
            # Anything further back is shorter still
            return -1
    return -1


def _split_oversized(piece: str, offset: int, max_size: int) -> List[TextSpan]:
    """Re-split an over-long piece on whitespace into parts of at most max_size."""
    parts = []
    sub_start = 0
    while sub_start < len(piece):
        sub_end = min(sub_start + max_size, len(piece))
        if sub_end < len(piece):
            last_space = piece.rfind(" ", 0, sub_end + 1)
            if last_space > sub_start + max_size // 2:
                sub_end = last_space
        sub_text = piece[sub_start:sub_end].strip()
        if sub_text:
            parts.append(TextSpan(content=sub_text, start=offset + sub_start, end=offset + sub_end))
        if sub_end == sub_start:
            break
        sub_start = sub_end
    return parts


def fragment_text(
    text: str,
    target: int = FRAGMENT_TARGET,
    min_size: int = FRAGMENT_MIN,
    max_size: int = FRAGMENT_MAX,
    overlap_ratio: float = FRAGMENT_OVERLAP_RATIO
) -> List[TextSpan]:
    """
    Split text into bounded, overlapping fragments.

    Args:
        text: Normalized document text
        target: Desired fragment length in characters
        min_size: Minimum length of every fragment but the last
        max_size: Hard upper bound on fragment length
        overlap_ratio: Fraction of ``target`` shared by consecutive fragments

    Returns:
        Ordered spans with their ``[start, end)`` offsets into ``text``
    """
    spans: List[TextSpan] = []
    if not text or not text.strip():
        return spans

    text_len = len(text)
    overlap_chars = max(1, int(target * overlap_ratio))
    i = 0

    while i < text_len:
        desired_end = min(i + target, text_len)

        if desired_end < text_len:
            search_start = i + min_size // 2
            found = _find_sentence_boundary(text, i, search_start, desired_end, min_size)
            end = found if found != -1 and found - i >= min_size // 2 else desired_end
        else:
            end = text_len

        if end <= i:
            end = min(i + target, text_len)

        raw = text[i:end]
        piece = raw.strip()

        if len(piece) > max_size:
            lead = len(raw) - len(raw.lstrip())
            spans.extend(_split_oversized(piece, i + lead, max_size))
        elif piece:
            spans.append(TextSpan(content=piece, start=i, end=end))

        if end >= text_len:
            break

        next_start = max(i + 1, end - overlap_chars)
        i = end if next_start <= i else next_start

    return spans
