from __future__ import annotations

import datetime as _dt
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .errors import CopilotError, GatewayError, RouteError, ValidationError
from .gateway import create_model_gateway
from .logging_config import get_logger
from .models import (
    HealthResponse,
    SessionChatRequest,
    StatelessChatRequest,
    StatelessChatResponse,
    normalize_messages,
    pick_text_override,
    resolve_options,
)
from .session import ChatStream, SessionRegistry
from .store import create_transcript_store

logger = get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Expose-Headers": "X-Session-Id",
}

# * Lazy initialization - only created when a chat endpoint is called
registry: Optional[SessionRegistry] = None


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if registry is not None:
        logger.info("Waiting for in-flight transcript captures before shutdown")
        await registry.drain()


app = FastAPI(title="DevOps Copilot Chat API", lifespan=lifespan)


# * ============================================================================
# * Middleware
# * ============================================================================

@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """
    Log every request and response with a short request id and timing.
    """
    request_id = str(uuid.uuid4())[:8]
    start_time = time.time()
    method = request.method
    path = request.url.path

    logger.info(
        f"→ {method} {path}",
        extra={
            "request_id": request_id,
            "method": method,
            "endpoint": path,
        }
    )

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(
            f"✗ {method} {path} - Exception ({duration_ms}ms)",
            exc_info=True,
            extra={
                "request_id": request_id,
                "method": method,
                "endpoint": path,
                "duration_ms": duration_ms,
            }
        )
        raise

    duration_ms = int((time.time() - start_time) * 1000)
    log_level = logger.info if response.status_code < 400 else logger.warning
    log_level(
        f"← {method} {path} - {response.status_code} ({duration_ms}ms)",
        extra={
            "request_id": request_id,
            "method": method,
            "endpoint": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    """
    Every response carries the CORS headers; OPTIONS short-circuits to 204.
    Unhandled errors still get a JSON body (and the headers).
    """
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=CORS_HEADERS)

    try:
        response = await call_next(request)
    except Exception:
        response = JSONResponse({"error": "Internal server error."}, status_code=500)

    response.headers.update(CORS_HEADERS)
    return response


# * ============================================================================
# * Error mapping
# * ============================================================================

@app.exception_handler(CopilotError)
async def copilot_error_handler(_request: Request, exc: CopilotError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        error = RouteError("Not found")
    elif exc.status_code == 405:
        error = RouteError("Method not allowed", status_code=405)
    else:
        error = CopilotError(str(exc.detail), status_code=exc.status_code)
    return JSONResponse(
        error.to_payload(),
        status_code=error.status_code,
        headers=getattr(exc, "headers", None),
    )


# * ============================================================================
# * Initialization
# * ============================================================================

def _init_registry() -> SessionRegistry:
    """Lazily build the session registry (gateway + store) on first use."""
    global registry
    if registry is None:
        settings = get_settings()
        registry = SessionRegistry(
            gateway=create_model_gateway(settings),
            store=create_transcript_store(settings),
            system_prompt=settings.system_prompt,
            history_limit=settings.history_limit,
            max_buffer=settings.tee_max_buffer,
            max_sessions=settings.max_resident_sessions,
        )
    return registry


# * ============================================================================
# * Root & Health Check Endpoints
# * ============================================================================

@app.get("/")
async def root() -> Dict[str, Any]:
    """Root endpoint - returns API info."""
    return {
        "name": "DevOps Copilot Chat API",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "health": "GET /health",
            "chat": "POST /chat",
        },
    }


@app.get("/health")
@app.get("/api/health")
async def health() -> Dict[str, Any]:
    """Reachability probe. Never touches the gateway or the store."""
    timestamp = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    return HealthResponse(ok=True, timestamp=timestamp).model_dump()


# * ============================================================================
# * Chat Endpoint
# * ============================================================================

@app.post("/chat")
@app.post("/api/chat")
async def chat(request: Request) -> Response:
    """
    ``{message, sessionId}`` streams a reply and records it in the session
    transcript; ``{messages, ...}`` is a stateless one-shot completion.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON.")

    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")

    if "message" in payload:
        return await _session_chat(payload)
    return await _stateless_chat(payload)


async def _session_chat(payload: Dict[str, Any]) -> Response:
    try:
        body = SessionChatRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("`message` must be a string and `sessionId` a string.", details=str(e.errors()[0]["msg"]))

    if not body.message.strip():
        raise ValidationError("`message` is required.")

    session_id = (body.sessionId or "").strip() or str(uuid.uuid4())
    logger.info(
        f"Chat request: {len(body.message)} chars",
        extra={"session_id": session_id},
    )

    session = _init_registry().get(session_id)
    stream = await session.handle_message(body.message)

    return StreamingResponse(
        _forward(stream),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-store", "X-Session-Id": session_id},
        background=BackgroundTask(stream.wait_committed),
    )


async def _forward(stream: ChatStream) -> AsyncIterator[bytes]:
    # Headers are already on the wire; an error can only end the body early
    try:
        async for chunk in stream:
            yield chunk
    except Exception as exc:
        logger.warning(
            f"Reply stream ended early: {exc}",
            extra={"session_id": stream.session_id},
        )
    finally:
        await stream.aclose()


async def _stateless_chat(payload: Dict[str, Any]) -> Response:
    # Every field accepts any JSON value, so this never rejects the body
    body = StatelessChatRequest.model_validate(payload)

    messages = normalize_messages(body.messages)
    if not messages:
        raise ValidationError("At least one user message is required.")

    settings = get_settings()
    gateway = _init_registry().gateway
    model = pick_text_override(body.model, settings.default_model)
    system = pick_text_override(body.system, settings.system_prompt)
    options = resolve_options(body)

    try:
        text, raw = await gateway.complete(
            system,
            [message.as_turn() for message in messages],
            options=options,
            model=model,
        )
    except Exception as exc:
        logger.error(f"AI invocation failed: {exc}", exc_info=True, extra={"model": model})
        details = (exc.details or exc.message) if isinstance(exc, GatewayError) else str(exc)
        raise GatewayError("Unable to generate AI response.", details=details or "Unknown error") from exc

    return JSONResponse(StatelessChatResponse(model=model, response=text, raw=raw).model_dump())
