"""Schema descriptor for the structured store and its process-wide cache.

The descriptor is restricted to an allow-list of tables and columns. It is
built from the (table, column, type) triples returned by introspection and is
never mutated afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from trafficbot.errors import PipelineError, SchemaUnavailable

logger = logging.getLogger(__name__)

Triple = Tuple[str, str, str]


@dataclass(frozen=True)
class SchemaDescriptor:
    columns: Mapping[Tuple[str, str], str]

    @classmethod
    def from_rows(cls, rows: Iterable[Sequence[str]],
                  allow_list: Optional[Mapping[str, Sequence[str]]] = None) -> "SchemaDescriptor":
        """Build from raw triples, dropping anything outside the allow-list."""
        cols: Dict[Tuple[str, str], str] = {}
        for table, column, dtype in rows:
            if allow_list is not None:
                allowed = allow_list.get(table)
                if allowed is None or (allowed and column not in allowed):
                    continue
            cols[(table, column)] = dtype
        return cls(MappingProxyType(cols))

    def __bool__(self) -> bool:
        return bool(self.columns)

    def tables(self) -> List[str]:
        return sorted({t for t, _ in self.columns})

    def column_names(self) -> set:
        return {c for _, c in self.columns}

    def has_column(self, column: str, table: Optional[str] = None) -> bool:
        if table is None:
            return column in self.column_names()
        return (table, column) in self.columns

    def render(self) -> str:
        """One line per table: ``table(col type, col type, ...)``."""
        lines = []
        for table in self.tables():
            cols = ", ".join(f"{c} {d}" for (t, c), d in self.columns.items() if t == table)
            lines.append(f"- {table}({cols})")
        return "\n".join(lines)


class _Unavailable:
    """Sentinel for 'introspection never succeeded'. Falsy; check before use."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNAVAILABLE"


UNAVAILABLE = _Unavailable()

Loader = Callable[[], Awaitable[Iterable[Triple]]]


class SchemaCache:
    """Get-or-load cache for the schema descriptor.

    Successes are cached for the life of the process; failures are not, so
    the next call fetches again. Two concurrent first calls may both fetch;
    both build equal descriptors and the last write wins.
    """

    def __init__(self, loader: Loader, allow_list: Optional[Mapping[str, Sequence[str]]] = None):
        self._loader = loader
        self._allow_list = allow_list
        self._schema: Optional[SchemaDescriptor] = None

    @property
    def loaded(self) -> bool:
        return self._schema is not None

    def peek(self) -> Union[SchemaDescriptor, _Unavailable]:
        return self._schema if self._schema is not None else UNAVAILABLE

    async def get(self) -> Union[SchemaDescriptor, _Unavailable]:
        if self._schema is not None:
            return self._schema

        try:
            rows = await self._loader()
        except PipelineError as e:
            logger.warning("Schema introspection failed: %s", e)
            return UNAVAILABLE
        except Exception as e:
            logger.warning("Schema introspection failed unexpectedly: %r", e)
            return UNAVAILABLE

        schema = SchemaDescriptor.from_rows(rows, self._allow_list)
        if not schema:
            logger.warning("Schema introspection returned no allow-listed columns")
            return UNAVAILABLE

        self._schema = schema
        logger.info("Schema loaded: %d columns across %s", len(schema.columns), schema.tables())
        return schema

    async def require(self) -> SchemaDescriptor:
        """Like get(), but raises SchemaUnavailable instead of returning the sentinel."""
        schema = await self.get()
        if not schema:
            raise SchemaUnavailable("schema introspection has not succeeded")
        return schema
