# Vector retrieval over one or more chunk collections.
#  - the query is embedded once per turn
#  - each collection is searched through a Postgres RPC (match_documents, match_bid_vectors, ...)
#  - every failure degrades to an empty result; nothing propagates to the caller

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from trafficbot.errors import ConfigurationError, PipelineError, UpstreamUnavailable

from .embeddings import EmbeddingClient
from .types import DocumentChunk

logger = logging.getLogger(__name__)


class VectorSearch:
    """Calls ``POST {url}/rest/v1/rpc/{fn}`` with the query vector, threshold and limit."""

    def __init__(self, url: str, key: Optional[str] = None, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url.rstrip("/")
        self.key = key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.key:
            headers["apikey"] = self.key
            headers["Authorization"] = f"Bearer {self.key}"
        return headers

    async def match(self, rpc: str, vector: Sequence[float], threshold: float, limit: int) -> List[Dict[str, Any]]:
        payload = {
            "query_embedding": list(vector),
            "match_threshold": threshold,
            "match_count": limit,
        }
        try:
            resp = await self._client.post(f"{self.url}/rest/v1/rpc/{rpc}", json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("vector search", str(e)) from e
        if resp.status_code >= 400:
            raise UpstreamUnavailable("vector search", resp.text[:200], status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable("vector search", f"unparseable body: {e}") from e
        # no matches is a valid empty result
        if data is None:
            return []
        if not isinstance(data, list):
            raise UpstreamUnavailable("vector search", f"unexpected payload: {str(data)[:200]}")
        return data

    async def aclose(self):
        await self._client.aclose()


@dataclass
class VectorCollection:
    name: str
    rpc: str
    search: VectorSearch
    kind: str = "document"  # document | bid

    def parse(self, row: Dict[str, Any]) -> DocumentChunk:
        meta = row.get("metadata") or {}
        score = float(row.get("similarity", row.get("score", 0.0)) or 0.0)
        if self.kind == "bid":
            return DocumentChunk(
                content=meta.get("searchable_text", ""),
                source_id=str(row.get("id", "")),
                chunk_index=int(meta.get("source_idx", 0) or 0),
                score=score,
                collection=self.name,
                kind="bid",
                meta={"status": meta.get("status", "unknown"), "created_at": meta.get("created_at")},
            )
        return DocumentChunk(
            content=row.get("content", ""),
            source_id=str(meta.get("source", row.get("source", ""))),
            chunk_index=int(meta.get("chunk_index", row.get("chunk_index", 0)) or 0),
            score=score,
            collection=self.name,
            kind="document",
        )


def rank(chunks: List[DocumentChunk], top_k: int, threshold: float) -> List[DocumentChunk]:
    """Keep chunks at or above threshold, best first, clipped to top_k."""
    kept = [c for c in chunks if c.score >= threshold]
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[:top_k]


class DocumentRetriever:
    def __init__(self, embedder: EmbeddingClient, collections: List[VectorCollection],
                 top_k: int = 3, threshold: float = 0.5):
        self.embedder = embedder
        self.collections = collections
        self.top_k = top_k
        self.threshold = threshold

    # -------------------------
    # Per-collection search
    # -------------------------
    async def _search_one(self, coll: VectorCollection, vector: List[float],
                          top_k: int, threshold: float) -> List[DocumentChunk]:
        try:
            rows = await coll.search.match(coll.rpc, vector, threshold, top_k)
            return rank([coll.parse(r) for r in rows], top_k, threshold)
        except PipelineError as e:
            logger.warning("Search in %s failed: %s", coll.name, e)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed rows from %s: %s", coll.name, e)
        return []

    # -------------------------
    # Public API
    # -------------------------
    async def retrieve(self, query: str, top_k: Optional[int] = None,
                       threshold: Optional[float] = None) -> List[DocumentChunk]:
        """Embed the query and search every collection.

        Results are grouped by collection in configuration order, each group
        ordered by descending score. Returns [] on any failure.
        """
        top_k = self.top_k if top_k is None else top_k
        threshold = self.threshold if threshold is None else threshold
        if not query.strip() or not self.collections:
            return []

        try:
            vector = await self.embedder.embed(query)
        except ConfigurationError as e:
            logger.error("Embedding configuration error: %s", e)
            return []
        except PipelineError as e:
            logger.warning("Embedding failed, skipping document retrieval: %s", e)
            return []

        groups = await asyncio.gather(
            *(self._search_one(c, vector, top_k, threshold) for c in self.collections)
        )
        return [chunk for group in groups for chunk in group]

    async def aclose(self):
        await self.embedder.aclose()
        seen = set()
        for c in self.collections:
            if id(c.search) not in seen:
                seen.add(id(c.search))
                await c.search.aclose()
