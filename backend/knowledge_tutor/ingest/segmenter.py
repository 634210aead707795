"""Fixed-window text segmentation."""

from __future__ import annotations

from typing import Iterator

from knowledge_tutor.ingest.types import Segment

DEFAULT_WINDOW = 500
DEFAULT_OVERLAP = 100
DEFAULT_PAGE_CHARS = 2000


def segment_text(
    text: str,
    window: int = DEFAULT_WINDOW,
    overlap: int = DEFAULT_OVERLAP,
    page_char_budget: int = DEFAULT_PAGE_CHARS,
) -> list[Segment]:
    """Split text into overlapping character windows.

    Windows start every ``window - overlap`` characters from offset 0 until
    the cursor passes the end of the text. Whitespace-only windows are dropped
    and do not consume an index, so kept indices stay contiguous from 0.

    Page numbers are estimated as ``start // page_char_budget + 1`` and are
    only approximate.
    """
    if window <= 0:
        raise ValueError("window must be positive")
    if overlap < 0 or overlap >= window:
        raise ValueError("overlap must be in [0, window)")
    if page_char_budget <= 0:
        raise ValueError("page_char_budget must be positive")

    segments: list[Segment] = []
    for start, end in _iter_windows(len(text), window, window - overlap):
        piece = text[start:end]
        if not piece.strip():
            continue
        segments.append(
            Segment(
                index=len(segments),
                text=piece,
                start_char=start,
                end_char=end,
                page=estimate_page(start, page_char_budget),
            )
        )
    return segments


def estimate_page(offset: int, page_char_budget: int = DEFAULT_PAGE_CHARS) -> int:
    return offset // page_char_budget + 1


def _iter_windows(length: int, window: int, stride: int) -> Iterator[tuple[int, int]]:
    cursor = 0
    while cursor < length:
        yield cursor, min(length, cursor + window)
        cursor += stride


def iter_batches(segments: list[Segment], size: int) -> Iterator[list[Segment]]:
    """Yield consecutive slices of ``size`` segments, preserving order."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    for offset in range(0, len(segments), size):
        yield segments[offset : offset + size]


__all__ = ["segment_text", "estimate_page", "iter_batches"]
