# Dummy model client for local dev and testing without API calls.

import asyncio
from typing import Any, AsyncIterator, Dict, List, Tuple

from ..types import Message, ModelParams


class EchoDevClient:
    def __init__(self, delay: float = 0.0):
        self.model = "echo-dev"
        self.delay = delay

    def _echo(self, messages: List[Message]) -> str:
        user_inputs = [m.content for m in messages if m.role == "user"]
        return f"[ECHO RESPONSE]\n{user_inputs[-1] if user_inputs else '(no user input)'}"

    async def generate(self, messages: List[Message], params: ModelParams) -> Tuple[str, Dict[str, Any]]:
        meta = {"engine": "echo", "model": self.model, "temp": params.temperature, "max_tokens": params.max_tokens}
        return self._echo(messages), meta

    async def open_stream(self, messages: List[Message], params: ModelParams) -> AsyncIterator[str]:
        return self._deltas(self._echo(messages))

    async def _deltas(self, text: str) -> AsyncIterator[str]:
        for word in text.split(" "):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word + " "
