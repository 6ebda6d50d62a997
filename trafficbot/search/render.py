# Pure formatting helpers: retrieved chunks -> labeled text blocks for the prompt.

from __future__ import annotations
from typing import Iterable

from .types import DocumentChunk


def format_chunk(chunk: DocumentChunk, label: str = "MUTCD") -> str:
    if chunk.kind == "bid":
        status = chunk.meta.get("status", "unknown")
        return f"[BID: #{chunk.source_id} – {chunk.content}]\nStatus: {status}"
    return f"[{label}: {chunk.source_id}, Chunk {chunk.chunk_index}]\n{chunk.content}"


def format_chunks(chunks: Iterable[DocumentChunk], labels: dict | None = None) -> str:
    """Render chunks as labeled blocks separated by blank lines; empty input -> ''."""
    labels = labels or {}
    return "\n\n".join(
        format_chunk(c, labels.get(c.collection, c.collection.upper())) for c in chunks
    )
