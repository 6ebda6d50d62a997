# Data models for the search layer: what retrieval returns and how personas are structured.

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any


@dataclass(frozen=True)
class DocumentChunk:
    """A ranked fragment returned by a similarity search."""
    content: str
    source_id: str
    chunk_index: int
    score: float
    collection: str = "mutcd"
    kind: str = "document"
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Persona:
    """Describes the assistant's tone, style, and behavior directives."""
    key: str
    name: str
    style: str
    directives: str

