"""Query embedding against a hosted feature-extraction endpoint.

The endpoint takes a single-element batch ``{"inputs": [text]}`` and answers
with either a batch of one vector or the bare vector.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from trafficbot.errors import ConfigurationError, UpstreamUnavailable

logger = logging.getLogger(__name__)


def normalize_embedding(data) -> List[float]:
    """Unwrap ``[[...]]`` or ``[...]`` into a flat list of floats."""
    if isinstance(data, list) and data and isinstance(data[0], list):
        data = data[0]
    if not isinstance(data, list) or not data:
        raise ValueError(f"unexpected embedding payload: {type(data).__name__}")
    return [float(x) for x in data]


class EmbeddingClient:
    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        expected_dim: Optional[int] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.expected_dim = expected_dim
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed(self, text: str) -> List[float]:
        """Embed one query. No retry here; callers decide whether to degrade."""
        try:
            resp = await self._client.post(self.url, json={"inputs": [text]}, headers=self._headers())
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("embedding", str(e)) from e

        if resp.status_code >= 400:
            raise UpstreamUnavailable("embedding", resp.text[:200], status=resp.status_code)

        try:
            vec = normalize_embedding(resp.json())
        except (ValueError, TypeError) as e:
            raise UpstreamUnavailable("embedding", f"unparseable body: {e}") from e

        if self.expected_dim and len(vec) != self.expected_dim:
            raise ConfigurationError(
                f"embedding dim {len(vec)} != configured index dim {self.expected_dim}"
            )
        return vec

    async def aclose(self):
        await self._client.aclose()
