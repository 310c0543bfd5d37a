# infrastructure/text_chunker.py
"""Fixed-size overlapping text chunking"""
from dataclasses import dataclass
from typing import List, Sequence

from core.exceptions import InvalidChunkParametersError


@dataclass(frozen=True)
class TextFragment:
    ordinal: int
    start: int  # codepoint offset into the normalized text
    end: int
    text: str


def validate_chunk_parameters(max_len: int, overlap: int) -> None:
    if (
        not isinstance(max_len, int) or not isinstance(overlap, int)
        or isinstance(max_len, bool) or isinstance(overlap, bool)
        or max_len <= 0 or overlap <= 0 or overlap >= max_len
    ):
        raise InvalidChunkParametersError(max_len, overlap)


def chunk_text(text: str, max_len: int, overlap: int) -> List[TextFragment]:
    """
    Split text into fragments of at most max_len codepoints.

    Fragment i starts at i * (max_len - overlap). Generation stops with the
    fragment that reaches the end of the text, so the last one may be short.
    Python strings index by codepoint, so no character is ever split.

    Args:
        text: Normalized document text
        max_len: Maximum fragment length
        overlap: Characters shared by neighbouring fragments

    Returns:
        Fragments in ordinal order; empty text gives an empty list

    Raises:
        InvalidChunkParametersError: unless 0 < overlap < max_len
    """
    validate_chunk_parameters(max_len, overlap)
    if not text:
        return []

    step = max_len - overlap
    length = len(text)
    fragments: List[TextFragment] = []
    start = 0
    while True:
        end = min(start + max_len, length)
        fragments.append(TextFragment(ordinal=len(fragments), start=start, end=end, text=text[start:end]))
        if end >= length:
            break
        start += step
    return fragments


def reconstruct_text(fragments: Sequence[TextFragment]) -> str:
    """Inverse of chunk_text: join fragments in ordinal order, dropping each overlap."""
    ordered = sorted(fragments, key=lambda f: f.ordinal)
    parts: List[str] = []
    covered = 0
    for fragment in ordered:
        parts.append(fragment.text[covered - fragment.start:])
        covered = fragment.end
    return "".join(parts)
