"""FastAPI application for the knowledge relay.

Provides blocking and streaming chat endpoints that verify an optional
captcha, retrieve supporting text from the knowledge store, and relay the
model's answer back to the caller.

Request flow:
1. Validate the request body (non-empty query)
2. Verify the captcha challenge, if one is configured
3. Retrieve knowledge context (best effort)
4. Generate the answer, in one piece or as server-sent events
"""

import json
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from knowledge_relay import __version__
from knowledge_relay.captcha import (
    CAPTCHA_HEADERS,
    CaptchaDispatcher,
    create_dispatcher,
    extract_captcha_params,
)
from knowledge_relay.captcha_providers import CaptchaError
from knowledge_relay.config import RelayConfig, load_config
from knowledge_relay.generation import GenerationClient
from knowledge_relay.knowledge import KnowledgeClient
from knowledge_relay.models import ChatRequest, ChatResponse
from knowledge_relay.rag import UNAVAILABLE_MESSAGE, ChatUnavailable, RAGService
from knowledge_relay.telemetry import log_event, logger, setup_logging, teardown_logging

CONFIG_PATH: Optional[str] = os.getenv("RELAY_CONFIG")

_TRUSTED_PROXIES = ("127.0.0.1", "::1")

_config: Optional[RelayConfig] = None
_captcha_dispatcher: Optional[CaptchaDispatcher] = None
_rag_service: Optional[RAGService] = None


def get_config() -> RelayConfig:
    """Return the loaded relay configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_captcha_dispatcher() -> CaptchaDispatcher:
    """Return the captcha dispatcher (lazy-init from config)."""
    global _captcha_dispatcher
    if _captcha_dispatcher is None:
        _captcha_dispatcher = create_dispatcher(get_config().captcha, logger)
    return _captcha_dispatcher


def get_rag_service() -> RAGService:
    """Return the chat orchestrator (lazy-init from config)."""
    global _rag_service
    if _rag_service is None:
        cfg = get_config()
        _rag_service = RAGService(
            knowledge=KnowledgeClient(cfg.knowledge, logger),
            generator=GenerationClient(cfg.ai, logger),
            system_prompt=cfg.rag.system_prompt,
            logger=logger,
        )
    return _rag_service


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize logging and services on startup; release logging on shutdown."""
    cfg = get_config()
    setup_logging(cfg.log)
    log_event(logger, "startup", port=cfg.server.port, mode=cfg.server.mode,
              captcha=cfg.captcha.type or "none")
    get_captcha_dispatcher()
    get_rag_service()
    yield
    log_event(logger, "shutdown")
    teardown_logging()


def _cors_origins(cfg: RelayConfig) -> list:
    origins = [d.rstrip("/") for d in cfg.server.allow_domains if d]
    return origins or ["*"]


app = FastAPI(title="Knowledge Relay", version=__version__, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(get_config()),
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", *CAPTCHA_HEADERS],
)

router = APIRouter()


def _error_response(status: int, message: str) -> JSONResponse:
    """Build a consistent JSON failure response."""
    body = ChatResponse(success=False, message=message)
    return JSONResponse(status_code=status, content=body.to_json())


def _encode_sse(event: str, data: Dict[str, Any]) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def _client_ip(request: Request) -> str:
    """Caller address, honouring X-Forwarded-For from a local reverse proxy."""
    host = request.client.host if request.client else ""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded and host in _TRUSTED_PROXIES:
        return forwarded.split(",")[0].strip()
    return host


async def _verify_captcha(request: Request, body: ChatRequest) -> Optional[JSONResponse]:
    """Run the captcha check; return a 400 response if it did not pass."""
    dispatcher = get_captcha_dispatcher()
    params = extract_captcha_params(
        dispatcher.type, request.headers, body.captcha_fields(), _client_ip(request)
    )
    try:
        await dispatcher.verify(params)
    except CaptchaError as exc:
        return _error_response(400, exc.detail)
    return None


@router.post("/chat", response_model=None)
async def chat(request: Request, body: ChatRequest) -> JSONResponse:
    """Answer a question with a single JSON response."""
    failure = await _verify_captcha(request, body)
    if failure is not None:
        return failure

    try:
        response = await get_rag_service().process_chat(body.query)
    except ChatUnavailable as exc:
        return JSONResponse(status_code=500, content=exc.response.to_json())

    return JSONResponse(status_code=200, content=response.to_json())


@router.post("/chat/stream", response_model=None)
async def chat_stream(request: Request, body: ChatRequest):
    """Answer a question as a server-sent event stream.

    Events: ``connected`` first, then ``data`` units, then ``done`` or ``error``.
    """
    failure = await _verify_captcha(request, body)
    if failure is not None:
        return failure

    return StreamingResponse(
        _stream_events(get_rag_service(), body.query),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _stream_events(service: RAGService, query: str) -> AsyncIterator[str]:
    yield _encode_sse("connected", {"success": True, "message": "Connection established, processing..."})

    try:
        session = await service.process_stream_chat(query)
    except ChatUnavailable as exc:
        yield _encode_sse("error", {"success": False, "message": exc.response.message})
        return

    try:
        async for unit in session:
            if unit.reasoning_content:
                yield _encode_sse("data", {"reasoning_content": unit.reasoning_content})
            if unit.content:
                yield _encode_sse("data", {"content": unit.content})
    except Exception as exc:
        log_event(logger, "stream_error_sent", error=str(exc))
        yield _encode_sse("error", {"success": False, "message": UNAVAILABLE_MESSAGE})
        return
    finally:
        # Runs on caller disconnect too; the producer is cancelled, not awaited.
        await session.aclose()

    yield _encode_sse("done", {"success": True, "message": "Answer complete"})


@router.get("/health")
async def health() -> Dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "message": "Knowledge relay is running"}


app.include_router(router, prefix="/api/v1")
app.include_router(router)


@app.get("/", include_in_schema=False)
async def root() -> Dict[str, Any]:
    return {
        "service": "Knowledge Relay",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "health": "/api/v1/health",
            "chat": "/api/v1/chat",
            "stream": "/api/v1/chat/stream",
        },
    }


@app.get("/robots.txt", include_in_schema=False)
async def robots() -> PlainTextResponse:
    return PlainTextResponse("User-agent: *\nDisallow: /\nAllow: /api/v1/health\n")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into the chat failure envelope."""
    problems = "; ".join(
        "{}: {}".format(".".join(str(p) for p in err.get("loc", ())[1:]) or "body", err.get("msg"))
        for err in exc.errors()
    )
    return _error_response(400, "Invalid request parameters: {}".format(problems))
