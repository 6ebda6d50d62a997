import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from trafficbot.app import ChatRequest, UIMessage, app, chat, get_pipeline, to_model_messages
from trafficbot.generate.streamer import CompletionStreamer
from trafficbot.pipeline import RetrievalPipeline

from conftest import FakeModel

client = TestClient(app)

CHAT_BODY = {
    "messages": [
        {"id": "1", "role": "user", "parts": [{"type": "text", "text": "What is a taper?"}]},
    ]
}


def use_pipeline(model):
    pipeline = RetrievalPipeline(streamer=CompletionStreamer(model), persona_prompt="P")
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    return pipeline


def events(body: str):
    return [line[len("data: "):] for line in body.split("\n\n") if line.startswith("data: ")]


def test_root_ok():
    r = client.get("/")
    assert r.status_code == 200


def test_health_ok():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_chat_streams_ui_message_events():
    model = FakeModel(deltas=["A taper ", "is ..."])
    use_pipeline(model)
    try:
        r = client.post("/api/chat", json=CHAT_BODY)
    finally:
        app.dependency_overrides.clear()

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["x-vercel-ai-ui-message-stream"] == "v1"
    items = events(r.text)
    assert items[-1] == "[DONE]"
    parsed = [json.loads(i) for i in items[:-1]]
    assert [p["type"] for p in parsed][:3] == ["start", "start-step", "text-start"]
    assert "".join(p["delta"] for p in parsed if p["type"] == "text-delta") == "A taper is ..."
    assert parsed[-1]["type"] == "finish"
    assert model.stream_messages[-1].content == "What is a taper?"


def test_chat_upstream_failure_is_502():
    use_pipeline(FakeModel(fail_open=True))
    try:
        r = client.post("/api/chat", json=CHAT_BODY)
    finally:
        app.dependency_overrides.clear()
    assert r.status_code == 502


def test_chat_rejects_malformed_body():
    r = client.post("/api/chat", json={"messages": [{"parts": []}]})
    assert r.status_code == 422


def test_retrieve_without_collections_is_empty():
    use_pipeline(FakeModel())
    try:
        r = client.get("/retrieve", params={"q": "taper"})
    finally:
        app.dependency_overrides.clear()
    assert r.status_code == 200
    assert r.json() == {"query": "taper", "docs": []}


def test_schema_not_configured_is_503():
    use_pipeline(FakeModel())
    try:
        r = client.get("/schema")
    finally:
        app.dependency_overrides.clear()
    assert r.status_code == 503


def test_ui_messages_convert_text_parts_and_legacy_content():
    msgs = to_model_messages([
        UIMessage(role="user", parts=[{"type": "text", "text": "a"}, {"type": "step-start"}, {"type": "text", "text": "b"}]),
        UIMessage(role="assistant", content="c"),
        UIMessage(role="tool", content="ignored"),
    ])
    assert [(m.role, m.content) for m in msgs] == [("user", "ab"), ("assistant", "c")]


class RecordingPipeline(RetrievalPipeline):
    async def run_turn(self, messages, cancel=None):
        self.stream = await super().run_turn(messages, cancel)
        return self.stream


class DisconnectingRequest:
    """Reports a disconnect once the model has produced `after` deltas."""

    def __init__(self, model, after):
        self.model = model
        self.after = after

    async def is_disconnected(self):
        return self.model.pulled >= self.after


@pytest.mark.asyncio
async def test_disconnect_mid_stream_stops_upstream():
    model = FakeModel(deltas=[f"t{i} " for i in range(50)], delay=0.02)
    pipeline = RecordingPipeline(streamer=CompletionStreamer(model), persona_prompt="P")

    response = await chat(ChatRequest(**CHAT_BODY), DisconnectingRequest(model, after=5), pipeline)
    items = events("".join([chunk async for chunk in response.body_iterator]))

    assert pipeline.stream.cancelled
    assert 5 <= model.pulled < 50
    assert "[DONE]" not in items
    pulled_at_cancel = model.pulled
    await asyncio.sleep(0.1)
    assert model.pulled == pulled_at_cancel
    assert model.closed


@pytest.mark.asyncio
async def test_connected_client_gets_the_full_stream():
    model = FakeModel(deltas=["a ", "b ", "c"])
    pipeline = RecordingPipeline(streamer=CompletionStreamer(model), persona_prompt="P")

    response = await chat(ChatRequest(**CHAT_BODY), DisconnectingRequest(model, after=99), pipeline)
    items = events("".join([chunk async for chunk in response.body_iterator]))

    assert not pipeline.stream.cancelled
    assert items[-1] == "[DONE]"
    assert model.pulled == 3
