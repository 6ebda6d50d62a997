# Pure formatting helpers for the structured section of the context.

from __future__ import annotations

import json
from typing import Any, Dict, Iterable

SCHEMA_UNAVAILABLE = "Schema unavailable"
NO_DATA_FOUND = "No data found."
STRUCTURED_UNAVAILABLE = "Structured query unavailable."


def query_failed(attempts: int) -> str:
    return f"Structured query failed after {attempts} attempts."


def format_row(index: int, row: Dict[str, Any]) -> str:
    return f"[Result {index}]\n{json.dumps(row, indent=2, default=str)}"


def format_rows(rows: Iterable[Dict[str, Any]]) -> str:
    """Numbered, pretty-printed rows; zero rows -> NO_DATA_FOUND."""
    blocks = [format_row(i, row) for i, row in enumerate(rows, start=1)]
    return "\n\n".join(blocks) if blocks else NO_DATA_FOUND
