# ============================================================
# ETC Assistant FastAPI App
# ------------------------------------------------------------
# This app wires everything together:
#   - bot config (bots/<bot>/bot.yaml) + persona
#   - document retrieval over vector collections
#   - schema-driven SQL path against the structured store
#   - streamed answers from an OpenAI-compatible model (or Echo)
# ============================================================

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, List, Optional

import yaml
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

# --- Local imports ---
from trafficbot.errors import ClientCancelled, SchemaUnavailable, UpstreamUnavailable
from trafficbot.generate import CompletionStreamer, EchoDevClient, Message, ModelParams
from trafficbot.pipeline import RetrievalPipeline, StructuredPath
from trafficbot.search import DocumentRetriever, EmbeddingClient, VectorCollection, VectorSearch
from trafficbot.search.prompts import build_system_prompt, load_persona
from trafficbot.settings import settings
from trafficbot.structured import (
    KeywordQueryValidator,
    QueryExecutor,
    QueryGenerator,
    SchemaCache,
    SqlStore,
)
from trafficbot.ui_stream import HEADERS, ui_message_stream

logger = logging.getLogger(__name__)


# ------------------------------------------------------------
# 🧠 Helpers: load bot config
# ------------------------------------------------------------
@lru_cache(maxsize=16)
def load_bot_config(bot_name: str) -> dict:
    path = os.path.join(settings.BOTS_DIR, bot_name, "bot.yaml")
    if not os.path.exists(path):
        raise FileNotFoundError(f"Bot config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


# ------------------------------------------------------------
# 🔧 Model client selection
# ------------------------------------------------------------
def build_model_client():
    if settings.USE_ECHO or not settings.LLM_API_KEY:
        logger.warning("No LLM_API_KEY set (or USE_ECHO=1); answers come from EchoDevClient")
        return EchoDevClient()
    from trafficbot.generate.clients.openai_client import OpenAIClient
    return OpenAIClient(
        model=settings.LLM_MODEL,
        api_key=settings.LLM_API_KEY,
        base_url=settings.LLM_BASE_URL,
        timeout=settings.REQUEST_TIMEOUT * 2,
    )


def build_retriever(s_cfg: dict) -> Optional[DocumentRetriever]:
    sources = {
        "primary": (settings.VECTOR_URL, settings.VECTOR_KEY),
        "bids": (settings.BID_VECTOR_URL, settings.BID_VECTOR_KEY),
    }
    searches: Dict[str, VectorSearch] = {}
    collections: List[VectorCollection] = []
    for c in s_cfg.get("collections", []):
        source = c.get("source", "primary")
        url, key = sources.get(source, (None, None))
        if not url:
            logger.warning("Collection %s skipped: no URL configured for source %r", c.get("name"), source)
            continue
        if source not in searches:
            searches[source] = VectorSearch(url, key, timeout=settings.REQUEST_TIMEOUT)
        collections.append(
            VectorCollection(name=c["name"], rpc=c["rpc"], search=searches[source], kind=c.get("kind", "document"))
        )
    if not collections:
        return None
    embedder = EmbeddingClient(
        settings.EMBED_URL,
        api_key=settings.EMBED_API_KEY,
        expected_dim=settings.EMBED_DIM,
        timeout=settings.REQUEST_TIMEOUT,
    )
    return DocumentRetriever(
        embedder,
        collections,
        top_k=s_cfg.get("top_k", 3),
        threshold=s_cfg.get("threshold", 0.5),
    )


def build_structured_path(q_cfg: dict, g_cfg: dict, model_client) -> Optional[StructuredPath]:
    if not q_cfg.get("enabled", True) or not settings.DATABASE_URL:
        return None
    allow_list = q_cfg.get("allow_list", {})
    store = SqlStore(settings.DATABASE_URL, row_limit=q_cfg.get("row_limit", 100), timeout=settings.REQUEST_TIMEOUT)
    cache = SchemaCache(lambda: store.introspect(allow_list), allow_list)
    generator = QueryGenerator(
        model_client,
        ModelParams(temperature=g_cfg.get("query_temperature", 0.0), max_tokens=400),
        rules=q_cfg.get("rules"),
        example=q_cfg.get("example"),
    )
    validator = KeywordQueryValidator(
        strict=q_cfg.get("strict_columns", False),
        allowed_functions=q_cfg.get("query_functions", []),
    )
    executor = QueryExecutor(generator, validator, store, max_attempts=q_cfg.get("max_attempts", 2))
    return StructuredPath(cache, executor)


@lru_cache(maxsize=1)
def get_pipeline() -> RetrievalPipeline:
    cfg = load_bot_config(settings.BOT)
    s_cfg = cfg.get("search", {})
    q_cfg = cfg.get("structured", {})
    g_cfg = cfg.get("generate", {})

    model_client = build_model_client()
    persona = load_persona(s_cfg.get("persona_key", "etc-default"))
    logger.info("Bot %s: persona %s, model %s", settings.BOT, persona.key, getattr(model_client, "model", "?"))
    labels = {c["name"]: c.get("label", c["name"].upper()) for c in s_cfg.get("collections", [])}

    return RetrievalPipeline(
        streamer=CompletionStreamer(
            model_client,
            ModelParams(temperature=g_cfg.get("temperature", 0.3), max_tokens=g_cfg.get("max_tokens", 1000)),
        ),
        persona_prompt=build_system_prompt(persona.name, persona.style, persona.directives),
        retriever=build_retriever(s_cfg),
        structured=build_structured_path(q_cfg, g_cfg, model_client),
        labels=labels,
    )


# ------------------------------------------------------------
# 🚀 FastAPI init
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    yield
    if get_pipeline.cache_info().currsize:
        pipeline = get_pipeline()
        if pipeline.retriever is not None:
            await pipeline.retriever.aclose()
        if pipeline.structured is not None:
            await pipeline.structured.executor.store.aclose()


app = FastAPI(title="ETC Assistant API", version="0.3", lifespan=lifespan)


# ------------------------------------------------------------
# 📦 Pydantic models
# ------------------------------------------------------------
class UIPart(BaseModel):
    type: str = "text"
    text: Optional[str] = None


class UIMessage(BaseModel):
    id: Optional[str] = None
    role: str
    parts: List[UIPart] = []
    content: Optional[str] = None  # legacy clients

    def text(self) -> str:
        texts = [p.text for p in self.parts if p.type == "text" and p.text]
        if texts:
            return "".join(texts)
        return self.content or ""


class ChatRequest(BaseModel):
    id: Optional[str] = None
    messages: List[UIMessage]


class RetrieveResponse(BaseModel):
    query: str
    docs: List[Dict[str, Any]]


def to_model_messages(messages: List[UIMessage]) -> List[Message]:
    return [Message(role=m.role, content=m.text()) for m in messages if m.role in ("user", "assistant", "system")]


async def _watch_disconnect(request: Request, cancel: asyncio.Event):
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(0.1)


# ------------------------------------------------------------
# 💬 Main chat route
# ------------------------------------------------------------
@app.post("/api/chat")
async def chat(req: ChatRequest, request: Request, pipeline: RetrievalPipeline = Depends(get_pipeline)):
    cancel = asyncio.Event()
    # watches for a disconnect through retrieval and the whole answer stream
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    streaming = False
    try:
        stream = await pipeline.run_turn(to_model_messages(req.messages), cancel)
        streaming = True
    except ClientCancelled:
        logger.info("Client disconnected during retrieval; turn dropped")
        return Response(status_code=499)
    except UpstreamUnavailable as e:
        logger.error("Completion call failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        if not streaming:
            watcher.cancel()

    async def body():
        try:
            async for event in ui_message_stream(stream):
                yield event
        finally:
            cancel.set()
            watcher.cancel()

    return StreamingResponse(body(), media_type="text/event-stream", headers=HEADERS)


# ------------------------------------------------------------
# 🔎 Retrieval-only routes
# ------------------------------------------------------------
@app.get("/retrieve", response_model=RetrieveResponse)
async def retrieve_endpoint(
    q: str = Query(..., description="Search query"),
    top_k: int = 3,
    pipeline: RetrievalPipeline = Depends(get_pipeline),
):
    if pipeline.retriever is None:
        return {"query": q, "docs": []}
    chunks = await pipeline.retriever.retrieve(q, top_k=top_k)
    docs = [
        {"source": c.source_id, "chunk_index": c.chunk_index, "score": c.score,
         "collection": c.collection, "content": c.content}
        for c in chunks
    ]
    return {"query": q, "docs": docs}


@app.get("/schema")
async def schema_endpoint(pipeline: RetrievalPipeline = Depends(get_pipeline)):
    if pipeline.structured is None:
        raise HTTPException(status_code=503, detail="Structured store not configured")
    try:
        schema = await pipeline.structured.cache.require()
    except SchemaUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"tables": {t: [c for (tt, c) in schema.columns if tt == t] for t in schema.tables()}}


# ------------------------------------------------------------
# 🧭 Health checks
# ------------------------------------------------------------
@app.get("/healthz")
def healthz():
    return {
        "ok": True,
        "env": settings.ENV,
        "debug": settings.DEBUG,
        "app": settings.app_name,
    }


@app.get("/health")
def health():
    return {"status": "ok", "env": settings.ENV}


@app.get("/")
def hello():
    return {"message": "ETC Assistant service running."}
