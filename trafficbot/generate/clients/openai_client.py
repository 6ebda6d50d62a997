# Async client for any OpenAI-compatible Chat Completions API (OpenAI, xAI, ...).
# generate() is the single-shot mode used for query generation;
# open_stream() is the streaming mode used for the final answer.

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from trafficbot.errors import UpstreamUnavailable
from ..types import Message, ModelParams, to_chat_format


def _unavailable(e: Exception) -> UpstreamUnavailable:
    return UpstreamUnavailable("completion", str(e), status=getattr(e, "status_code", None))


class OpenAIClient:
    def __init__(self, model: str = "grok-4-fast", api_key: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: float = 60.0,
                 client: Optional[AsyncOpenAI] = None):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def _kwargs(self, messages: List[Message], params: ModelParams) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": to_chat_format(messages)}
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        if params.max_tokens:
            kwargs["max_tokens"] = params.max_tokens
        return kwargs

    async def generate(self, messages: List[Message], params: ModelParams) -> Tuple[str, Dict[str, Any]]:
        try:
            resp = await self.client.chat.completions.create(**self._kwargs(messages, params))
        except openai.APIError as e:
            raise _unavailable(e) from e
        text = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        return text, {"engine": "openai", "model": self.model}

    async def open_stream(self, messages: List[Message], params: ModelParams) -> AsyncIterator[str]:
        """Start a streamed completion. Fails before any output on a non-success status."""
        try:
            stream = await self.client.chat.completions.create(**self._kwargs(messages, params), stream=True)
        except openai.APIError as e:
            raise _unavailable(e) from e
        return self._deltas(stream)

    async def _deltas(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except (openai.APIError, httpx.HTTPError) as e:
            raise _unavailable(e) from e
        finally:
            await stream.close()
