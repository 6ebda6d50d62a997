"""Per-turn retrieval-augmentation pipeline.

One inbound turn:
  1. take the most recent user utterance
  2. run the document branch and the structured branch concurrently (fan-out/join)
  3. assemble documents first, structured second, whichever settled first
  4. stream the answer with the enriched system message

Both branches degrade to a string on failure; neither aborts the turn.
Retrieval already in flight is not cancelled on disconnect, it is allowed to
finish and its result is dropped if the turn was cancelled before assembly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from trafficbot.context import assemble, compose_system_prompt
from trafficbot.errors import ClientCancelled
from trafficbot.generate.streamer import CompletionStream, CompletionStreamer
from trafficbot.generate.types import Message
from trafficbot.search.render import format_chunks
from trafficbot.search.retriever import DocumentRetriever
from trafficbot.structured.executor import QueryExecutor
from trafficbot.structured.render import (
    SCHEMA_UNAVAILABLE,
    STRUCTURED_UNAVAILABLE,
    format_rows,
    query_failed,
)
from trafficbot.structured.schema import SchemaCache

logger = logging.getLogger(__name__)


def extract_user_query(messages: List[Message]) -> str:
    """Text of the last message if it comes from the user, else ''."""
    if not messages or messages[-1].role != "user":
        return ""
    return (messages[-1].content or "").strip()


class StructuredPath:
    """Schema -> executor -> formatted rows, or a sentinel string."""

    def __init__(self, cache: SchemaCache, executor: QueryExecutor):
        self.cache = cache
        self.executor = executor

    async def run(self, question: str) -> str:
        schema = await self.cache.get()
        if not schema:
            return SCHEMA_UNAVAILABLE
        report = await self.executor.run(question, schema)
        if report.ok:
            return format_rows(report.rows)
        return query_failed(report.attempts)


@dataclass
class TurnContext:
    query: str
    documents: str = ""
    structured: str = ""

    @property
    def text(self) -> str:
        return assemble(self.documents, self.structured)


class RetrievalPipeline:
    def __init__(
        self,
        streamer: CompletionStreamer,
        persona_prompt: str,
        retriever: Optional[DocumentRetriever] = None,
        structured: Optional[StructuredPath] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        self.streamer = streamer
        self.persona_prompt = persona_prompt
        self.retriever = retriever
        self.structured = structured
        self.labels = labels or {}

    # -------------------------
    # Branches
    # -------------------------
    async def document_section(self, query: str) -> str:
        if self.retriever is None:
            return ""
        try:
            chunks = await self.retriever.retrieve(query)
        except Exception:
            logger.exception("Document branch failed")
            return ""
        return format_chunks(chunks, self.labels)

    async def structured_section(self, query: str) -> str:
        if self.structured is None:
            return ""
        try:
            return await self.structured.run(query)
        except Exception:
            logger.exception("Structured branch failed")
            return STRUCTURED_UNAVAILABLE

    # -------------------------
    # Turn
    # -------------------------
    async def build_context(self, query: str, cancel: Optional[asyncio.Event] = None) -> TurnContext:
        ctx = TurnContext(query=query)
        if not query:
            return ctx
        ctx.documents, ctx.structured = await asyncio.gather(
            self.document_section(query),
            self.structured_section(query),
        )
        if cancel is not None and cancel.is_set():
            raise ClientCancelled("turn cancelled before context assembly")
        return ctx

    async def run_turn(self, messages: List[Message], cancel: Optional[asyncio.Event] = None) -> CompletionStream:
        """Retrieve, assemble and open the answer stream.

        Raises UpstreamUnavailable if the completion call fails before output,
        ClientCancelled if the caller left during retrieval.
        """
        query = extract_user_query(messages)
        ctx = await self.build_context(query, cancel)
        logger.info(
            "Turn context: %d chars (documents=%d, structured=%d)",
            len(ctx.text), len(ctx.documents), len(ctx.structured),
        )
        system_prompt = compose_system_prompt(self.persona_prompt, ctx.text)
        return await self.streamer.stream(system_prompt, messages, cancel)
