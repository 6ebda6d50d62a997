"""Streams the final answer from the model back to the caller.

``CompletionStreamer.stream()`` opens the upstream stream eagerly, so an
unreachable model or a non-success status raises ``UpstreamUnavailable``
before any output exists. After that, the returned ``CompletionStream``:

- can be iterated once;
- stops as soon as the cancellation event fires, without pulling further
  upstream deltas, and closes the upstream transport;
- truncates on a mid-stream transport error instead of raising.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, List, Optional

from trafficbot.errors import PipelineError

from .types import Message, ModelParams

logger = logging.getLogger(__name__)


class CompletionStream:
    def __init__(self, deltas: AsyncIterator[str], cancel: Optional[asyncio.Event] = None):
        self._deltas = deltas
        self._cancel = cancel
        self._started = False
        self.cancelled = False
        self.truncated = False
        self.chars = 0

    def __aiter__(self):
        if self._started:
            raise RuntimeError("completion stream can only be consumed once")
        self._started = True
        return self._relay()

    def _cancel_requested(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def _next(self) -> Optional[str]:
        """Next upstream delta, raced against the cancellation event. None means cancelled."""
        if self._cancel is None:
            return await self._deltas.__anext__()
        nxt = asyncio.ensure_future(self._deltas.__anext__())
        stop = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({nxt, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not nxt.done():
                nxt.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration, PipelineError):
                    await nxt
        if nxt in done and not nxt.cancelled():
            return nxt.result()
        return None

    async def _relay(self) -> AsyncIterator[str]:
        try:
            while not self._cancel_requested():
                try:
                    delta = await self._next()
                except StopAsyncIteration:
                    return
                if delta is None:
                    break
                self.chars += len(delta)
                yield delta
            self.cancelled = True
            logger.info("Client cancelled; completion stream stopped after %d chars", self.chars)
        except asyncio.CancelledError:
            # response task torn down by the server on disconnect
            self.cancelled = True
            logger.info("Completion stream cancelled after %d chars", self.chars)
            raise
        except PipelineError as e:
            self.truncated = True
            logger.warning("Completion stream interrupted after %d chars: %s", self.chars, e)
        finally:
            with contextlib.suppress(RuntimeError):
                await self._deltas.aclose()


class CompletionStreamer:
    def __init__(self, model_client, params: Optional[ModelParams] = None):
        self.model_client = model_client
        self.params = params or ModelParams(temperature=0.3, max_tokens=1000)

    async def stream(self, system_prompt: str, history: List[Message],
                     cancel: Optional[asyncio.Event] = None) -> CompletionStream:
        messages = [Message(role="system", content=system_prompt), *history]
        deltas = await self.model_client.open_stream(messages, self.params)
        return CompletionStream(deltas, cancel)
