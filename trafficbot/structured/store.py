# Structured-store transport: metadata introspection and ad-hoc read-only execution.

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from trafficbot.errors import ExecutionFailure, UpstreamUnavailable

from .schema import Triple

logger = logging.getLogger(__name__)

INTROSPECT_SQL = text(
    """
    SELECT table_name, column_name, data_type
    FROM information_schema.columns
    WHERE table_schema = :schema AND table_name IN :tables
    ORDER BY table_name, ordinal_position
    """
).bindparams(bindparam("tables", expanding=True))


class SqlStore:
    def __init__(self, url: Optional[str] = None, engine: Optional[AsyncEngine] = None,
                 db_schema: str = "public", row_limit: int = 100, timeout: float = 30.0):
        if engine is None and not url:
            raise ValueError("SqlStore needs a database URL or an engine")
        self.engine = engine or create_async_engine(url, pool_pre_ping=True)
        self.db_schema = db_schema
        self.row_limit = row_limit
        self.timeout = timeout

    @property
    def _is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    async def introspect(self, allow_list: Mapping[str, Sequence[str]]) -> List[Triple]:
        """Read (table, column, type) triples for the allow-listed tables."""
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    INTROSPECT_SQL, {"schema": self.db_schema, "tables": list(allow_list)}
                )
                return [(r[0], r[1], r[2]) for r in result.fetchall()]
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailable("schema introspection", str(e)) from e

    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        """Run one validated statement inside a read-only transaction that is always rolled back."""
        logger.debug("Executing structured query: %s", sql)
        try:
            async with self.engine.connect() as conn:
                if self._is_postgres:
                    await conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                    await conn.exec_driver_sql(f"SET LOCAL statement_timeout = {int(self.timeout * 1000)}")
                result = await conn.exec_driver_sql(sql)
                rows = [dict(r) for r in result.mappings().fetchmany(self.row_limit)]
                await conn.rollback()
                return rows
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            raise ExecutionFailure(str(e)) from e

    async def aclose(self):
        await self.engine.dispose()
