"""Document chunking for shared embeddings and hybrid search."""

from __future__ import annotations

from dataclasses import dataclass

# Chunking parameters
CHUNK_SIZE = 1500  # characters
CHUNK_OVERLAP = 300  # 20% overlap

# Break points searched backwards from the tentative window end
BREAK_MARKERS = ("\n\n", ". ", "\n")


@dataclass(frozen=True)
class Chunk:
    """A trimmed document segment and its position in emission order."""

    content: str
    index: int

    def to_dict(self) -> dict:
        return {"content": self.content, "chunk_index": self.index}


def _find_break(text: str, position: int, end: int, chunk_size: int) -> int | None:
    """Return the latest acceptable break point inside ``text[position:end]``.

    A break point is acceptable when it lies no earlier than halfway into
    the window.
    """
    best = max(text.rfind(marker, position, end) for marker in BREAK_MARKERS)
    if best != -1 and best >= position + chunk_size / 2:
        return best
    return None


def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[Chunk]:
    """Split text into overlapping, boundary-aware chunks.

    Scans left to right. When a window ends before the end of the text, the
    cut is moved back to the latest paragraph break, sentence end or newline
    found in the second half of the window; otherwise the raw window boundary
    is used. The next window starts ``overlap`` characters before the cut,
    but always strictly after the previous start, so the scan terminates
    even when ``overlap >= chunk_size``.

    Args:
        text: Normalized document text
        chunk_size: Window width in characters (must be positive)
        overlap: Characters shared between neighbouring windows

    Returns:
        Chunks with contiguous indices starting at 0. Empty chunks are dropped.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    overlap = max(overlap, 0)

    chunks: list[Chunk] = []
    length = len(text)
    position = 0

    while position < length:
        end = min(position + chunk_size, length)

        if end < length:
            break_point = _find_break(text, position, end, chunk_size)
            if break_point is not None:
                end = break_point + 1

        content = text[position:end].strip()
        if content:
            chunks.append(Chunk(content=content, index=len(chunks)))

        if end >= length:
            break

        next_position = end - overlap
        if next_position <= position:
            next_position = end
        position = next_position

    return chunks


def build_archive_text(title: str | None, description: str | None, text: str | None) -> str:
    """Combine the archive fields that are chunked and embedded."""
    return f"{title or ''}\n\n{description or ''}\n\n{text or ''}"
