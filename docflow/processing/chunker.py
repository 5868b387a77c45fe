"""Overlapping character-window chunking with page attribution."""

from bisect import bisect_right
from dataclasses import dataclass
from typing import List

from docflow.processing.extract import PAGE_MARKER_RE


@dataclass
class TextChunk:
    index: int
    content: str
    char_start: int
    char_end: int
    page_number: int
    page_markers_found: int


def chunk_text(
    text: str,
    chunk_size: int = 500,
    overlap: int = 100,
    total_pages: int = 1,
    chars_per_token: int = 4,
) -> List[TextChunk]:
    """Split text into windows of `chunk_size` tokens stepping by `chunk_size - overlap`.

    A chunk's page is the last `[Page N]` marker before its centre,
    clamped to [1, total_pages].
    """
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")

    window = chunk_size * chars_per_token
    step = (chunk_size - overlap) * chars_per_token

    markers = [(m.start(), int(m.group(1))) for m in PAGE_MARKER_RE.finditer(text)]
    positions = [pos for pos, _ in markers]
    total_pages = max(1, total_pages)

    chunks: List[TextChunk] = []
    start = 0
    while start < len(text):
        end = min(start + window, len(text))
        content = text[start:end].strip()
        if content:
            centre = start + (end - start) / 2
            i = bisect_right(positions, centre)
            page = markers[i - 1][1] if i > 0 else 1
            chunks.append(TextChunk(
                index=len(chunks),
                content=content,
                char_start=start,
                char_end=end,
                page_number=min(max(1, page), total_pages),
                page_markers_found=len(markers),
            ))
        if end == len(text):
            break
        start += step

    return chunks
