"""Fixed-size character windows with overlap.

``chunk[i]`` covers ``text[start_i : start_i + chunk_size]`` where
``start_i = i * (chunk_size - overlap)``.  The last window may be shorter.
Output depends only on (text, chunk_size, overlap, document_id), so
re-chunking a document always yields the same chunk ids and spans.
"""

from __future__ import annotations

import logging
from typing import Iterator

from case_rag.models import Chunk

logger = logging.getLogger(__name__)


def normalize_text(text: str) -> str:
    """Normalize extracted text before chunking.

    - CRLF / CR line endings become LF.
    - NUL bytes (common in PDF extraction) are dropped.
    - Trailing whitespace on each line and at the end is removed.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def _check_params(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(f"overlap must be in [0, chunk_size), got {overlap}")


def chunk_spans(text_length: int, chunk_size: int, overlap: int) -> list[tuple[int, int]]:
    """Return the ``(start, end)`` offsets of every window."""
    _check_params(chunk_size, overlap)
    step = chunk_size - overlap
    spans: list[tuple[int, int]] = []
    start = 0
    while start < text_length:
        end = min(start + chunk_size, text_length)
        spans.append((start, end))
        if end == text_length:
            break
        start += step
    return spans


def iter_chunks(
    text: str,
    chunk_size: int,
    overlap: int,
    document_id: str = "",
) -> Iterator[Chunk]:
    """Yield chunks lazily.  Calling again restarts from the first window."""
    _check_params(chunk_size, overlap)
    if not text.strip():
        return
    for ordinal, (start, end) in enumerate(chunk_spans(len(text), chunk_size, overlap)):
        yield Chunk(
            chunk_id=f"{document_id}#{ordinal}",
            document_id=document_id,
            ordinal=ordinal,
            text=text[start:end],
            start=start,
            end=end,
        )


def chunk_text(
    text: str,
    chunk_size: int,
    overlap: int,
    document_id: str = "",
) -> list[Chunk]:
    """Split *text* into overlapping windows.

    Args:
        text: Normalized document text.
        chunk_size: Window length in characters.
        overlap: Characters shared by consecutive windows (``< chunk_size``).
        document_id: Owner document, used to build chunk ids.

    Returns:
        Ordered list of chunks; empty for empty or whitespace-only text.
    """
    chunks = list(iter_chunks(text, chunk_size, overlap, document_id))
    logger.debug(
        "Chunked %d chars into %d chunks (size=%d, overlap=%d).",
        len(text), len(chunks), chunk_size, overlap,
    )
    return chunks


def reconstruct_text(chunks: list[Chunk]) -> str:
    """Concatenate chunk spans, skipping the overlapping prefix of each."""
    parts: list[str] = []
    covered = 0
    for chunk in sorted(chunks, key=lambda c: c.ordinal):
        skip = max(0, covered - chunk.start)
        parts.append(chunk.text[skip:])
        covered = max(covered, chunk.end)
    return "".join(parts)
