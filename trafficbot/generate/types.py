# Typed dataclasses shared across generator modules.

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Message:
    """Single chat turn: system, user, or assistant."""
    role: str
    content: str


@dataclass
class ModelParams:
    """LLM parameters per request."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


def to_chat_format(messages: List[Message]) -> List[dict]:
    return [{"role": m.role, "content": m.content} for m in messages]
