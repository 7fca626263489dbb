"""
FastAPI application — the chatservice entry point.

Thin transport over CompletionOrchestrator:
  - POST /chat streams reply snapshots as server-sent events (or returns
    the final reply as JSON with stream=false)
  - conversation inspection and ending
  - health and flight recorder endpoints
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from chatservice.backends import make_backend
from chatservice.completion import CompletionOrchestrator, CompletionOutput, CompletionRequest
from chatservice.config import get_config
from chatservice.errors import (
    ChatServiceError,
    CompletionTimeout,
    ConcurrentUpdateError,
    ConversationEnded,
    ConversationLookupError,
    ConversationNotFound,
    PersistenceError,
    StreamError,
    ValidationError,
)
from chatservice.flight_recorder import FlightRecorderStore
from chatservice.storage import ConversationStore, make_store
from chatservice.tokens import make_token_counter
from chatservice.wiretap import WireLog

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals: initialized at startup
# ---------------------------------------------------------------------------
store: ConversationStore | None = None
orchestrator: CompletionOrchestrator | None = None
flight_recorder: FlightRecorderStore | None = None
wire: WireLog | None = None

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Most specific first
_ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (ValidationError, 400),
    (ConversationEnded, 409),
    (ConcurrentUpdateError, 409),
    (ConversationLookupError, 503),
    (StreamError, 502),
    (CompletionTimeout, 504),
    (PersistenceError, 500),
]


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global store, orchestrator, flight_recorder, wire

    cfg = get_config()
    _setup_logging(cfg)

    storage_cfg = cfg.get("storage", {})
    store = make_store(
        storage_cfg.get("type", "sqlite"),
        sqlite_path=storage_cfg.get("sqlite_path", "./data/chatservice.db"),
    )

    wire_cfg = cfg.get("wiretap", {})
    wire = WireLog(wire_cfg.get("path", "./data/wire.jsonl")) if wire_cfg.get("enabled", True) else None

    fr_cfg = cfg.get("flight_recorder", {})
    flight_recorder = None
    if fr_cfg.get("enabled", True):
        flight_recorder = FlightRecorderStore(
            max_records=fr_cfg.get("max_records", 1000),
            retention_hours=fr_cfg.get("retention_hours", 24),
        )

    counter_name = cfg.get("tokens", {}).get("counter", "tiktoken")
    orchestrator = CompletionOrchestrator(
        store=store,
        backend=make_backend(cfg),
        token_counter=make_token_counter(counter_name),
        wire=wire,
        flight_recorder=flight_recorder,
    )

    server = cfg.get("server", {})
    logger.info(
        "chatservice started — listening on %s:%s, backend %r",
        server.get("host"), server.get("port"), orchestrator.backend,
    )
    logger.info("Storage: %s", storage_cfg.get("type", "sqlite"))
    logger.info("Token counter: %s", counter_name)
    logger.info("Wiretap: %s", "enabled" if wire else "disabled")
    logger.info("Flight recorder: %s", "enabled" if flight_recorder else "disabled")

    yield

    if wire:
        wire.close()
    await store.close()
    logger.info("chatservice stopped")


app = FastAPI(title="chatservice", lifespan=lifespan)


def _error_body(exc: BaseException) -> dict:
    body = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, ChatServiceError) and exc.phase is not None:
        body["phase"] = exc.phase.value
    if isinstance(exc, PersistenceError) and exc.output is not None:
        body["content"] = exc.output.content
    return body


def _error_response(exc: BaseException) -> JSONResponse:
    status = 500
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            status = code
            break
    return JSONResponse(_error_body(exc), status_code=status)


def _sse(data: dict, event: str | None = None) -> str:
    frame = f"event: {event}\n" if event else ""
    return frame + f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _streaming_cfg() -> tuple[int, float | None]:
    s_cfg = get_config().get("streaming", {})
    return s_cfg.get("buffer_size", 16), s_cfg.get("timeout")


async def _event_stream(req: CompletionRequest):
    """
    Run the round as a producer task and relay its snapshots.
    The bounded queue is the only hand-off between the two.
    """
    buffer_size, timeout = _streaming_cfg()
    queue: asyncio.Queue[CompletionOutput] = asyncio.Queue(maxsize=buffer_size)
    producer = asyncio.create_task(orchestrator.execute(req, queue, timeout=timeout))

    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {getter, producer}, return_when=asyncio.FIRST_COMPLETED,
            )
            if getter in done:
                yield _sse(getter.result().to_dict())
                continue
            getter.cancel()
            break

        while not queue.empty():
            yield _sse(queue.get_nowait().to_dict())

        exc = producer.exception()
        if exc is None:
            yield _sse(producer.result().to_dict(), event="done")
        else:
            yield _sse(_error_body(exc), event="error")
        yield "data: [DONE]\n\n"
    finally:
        # Client went away mid-stream
        if not producer.done():
            producer.cancel()


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@app.post("/chat")
async def chat(request: Request):
    """
    Run one conversation turn.
    Body: {chat_id?, user_id, user_message, stream?, config?}
    """
    body = await request.json()
    try:
        req = CompletionRequest.from_dict(body, get_config().get("chat", {}))
    except ValidationError as e:
        return _error_response(e)

    if not body.get("stream", True):
        _, timeout = _streaming_cfg()
        try:
            result = await orchestrator.execute(req, timeout=timeout)
        except ChatServiceError as e:
            return _error_response(e)
        return JSONResponse(result.to_dict())

    return StreamingResponse(
        _event_stream(req), media_type="text/event-stream", headers=SSE_HEADERS,
    )


@app.get("/chat/{chat_id}")
async def get_chat(chat_id: str):
    """Conversation with its active window and erased history."""
    try:
        conversation = await store.find(chat_id)
    except ConversationNotFound as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    return JSONResponse(conversation.to_dict())


@app.post("/chat/{chat_id}/end")
async def end_chat(chat_id: str):
    """End a conversation. Later turns on it fail with ConversationEnded."""
    try:
        conversation = await store.find(chat_id)
    except ConversationNotFound as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    conversation.end()
    try:
        await store.save(conversation)
    except PersistenceError as e:
        return _error_response(e)
    logger.info("Conversation %s ended", chat_id)
    return JSONResponse({"chat_id": chat_id, "status": conversation.status.value})


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    backend_ok = await orchestrator.backend.health_check()
    return JSONResponse({"status": "ok", "backend": backend_ok})


@app.get("/api/v1/flight-recorder")
async def flight_records(n: int = 10):
    if flight_recorder is None:
        return JSONResponse({"enabled": False, "records": []})
    flight_recorder.evict_stale()
    return JSONResponse({
        "enabled": True,
        "records": [r.to_json() for r in flight_recorder.recent(n)],
    })


@app.get("/api/v1/flight-recorder/{record_id}")
async def flight_record(record_id: str, format: str = "json"):
    record = flight_recorder.get(record_id) if flight_recorder else None
    if record is None:
        return JSONResponse({"error": f"No flight record {record_id}"}, status_code=404)
    if format == "text":
        return PlainTextResponse(record.render_text())
    return JSONResponse(record.to_json())
