"""Outbound chat-protocol stream.

Server-sent events carrying role-tagged message parts, in the UI message
stream format the chat front end consumes:

    start -> start-step -> text-start -> text-delta* -> text-end -> finish-step -> finish -> [DONE]
"""

import json
import uuid
from typing import AsyncIterator

from trafficbot.generate.streamer import CompletionStream

HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "x-vercel-ai-ui-message-stream": "v1",
}

DONE = "data: [DONE]\n\n"


def sse(payload: dict) -> str:
    return "data: " + json.dumps(payload) + "\n\n"


async def ui_message_stream(stream: CompletionStream, message_id: str | None = None) -> AsyncIterator[str]:
    message_id = message_id or f"msg-{uuid.uuid4().hex}"
    text_id = f"txt-{uuid.uuid4().hex[:12]}"

    yield sse({"type": "start", "messageId": message_id})
    yield sse({"type": "start-step"})
    yield sse({"type": "text-start", "id": text_id})
    async for delta in stream:
        yield sse({"type": "text-delta", "id": text_id, "delta": delta})

    if stream.cancelled:
        # nobody is listening any more
        return

    # a truncated stream still closes normally
    yield sse({"type": "text-end", "id": text_id})
    yield sse({"type": "finish-step"})
    yield sse({"type": "finish"})
    yield DONE
