"""FastAPI application for the unified chat gateway.

Exposes an OpenAI-compatible /v1/chat/completions endpoint that validates
the request, routes it to one backend, and normalizes the backend's text
stream into canonical chunks (or a single completion when streaming is off).

Request flow:
1. Parse and validate the body (rejected requests never reach a backend)
2. Select a backend by model prefix, falling back to round robin
3. Open the backend stream
4. Normalize (stream) or aggregate (batch) the increments
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from gateway.aggregate import aggregate_completion
from gateway.backends import BackendError, build_backends
from gateway.config import GatewayConfig, load_config
from gateway.models import (
    ChatCompletionRequest,
    ErrorDetail,
    ErrorResponse,
    ModelCard,
    ModelList,
)
from gateway.router import RouteResult, Router
from gateway.stream import ResponseContext, new_completion_id, sse_stream
from gateway.telemetry import log_request, setup_logging

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/gateway.config.json")

_logger = logging.getLogger("gateway")

_config: Optional[GatewayConfig] = None
_router: Optional[Router] = None

_EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def get_config() -> GatewayConfig:
    """Return the loaded gateway configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_router() -> Router:
    """Return the router over every offered backend (lazy-init from config).

    Raises:
        ConfigurationError: If no backend can be offered.
    """
    global _router
    if _router is None:
        cfg = get_config()
        _router = Router.from_config(cfg, build_backends(cfg))
    return _router


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, and the router on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_router()
    yield


app = FastAPI(title="Unified Chat Gateway", version="0.1.0", lifespan=lifespan)


class InvalidRequestError(Exception):
    """Raised when a request body is rejected before routing."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


def _error_response(status: int, error_type: str, message: str) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(message=message, type=error_type))
    return JSONResponse(status_code=status, content=body.model_dump())


async def _read_messages_body(request: Request) -> Dict[str, Any]:
    """Decode the JSON body and check that it carries a messages array."""
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid JSON in request body")

    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        raise InvalidRequestError("messages is required and must be an array")
    return body


def _parse_chat_request(body: Dict[str, Any]) -> ChatCompletionRequest:
    # Explicit nulls fall back to the field defaults (stream defaults to true).
    fields = {key: value for key, value in body.items() if value is not None}
    try:
        return ChatCompletionRequest.model_validate(fields)
    except ValidationError as exc:
        errors = "; ".join(
            "{}: {}".format(".".join(str(p) for p in err["loc"]), err["msg"])
            for err in exc.errors()
        )
        raise InvalidRequestError("Invalid request: {}".format(errors))


async def _open_stream(
    route: RouteResult, chat_request: ChatCompletionRequest
) -> AsyncIterator[str]:
    _logger.info("Using backend: %s", route.backend.name)
    return await route.backend.chat(chat_request.messages, route.model)


async def _logged_sse(
    increments: AsyncIterator[str],
    context: ResponseContext,
    backend: str,
    requested_model: Optional[str],
) -> AsyncIterator[str]:
    """Frame the normalized stream, logging how it ended.

    A failure after streaming started is re-raised so the transport aborts
    the body without a ``[DONE]`` marker.
    """
    try:
        async for frame in sse_stream(increments, context):
            yield frame
    except Exception as exc:
        log_request(
            request_id=context.id,
            backend=backend,
            model=requested_model,
            outcome="stream_error",
            stream=True,
            error=str(exc),
        )
        raise

    log_request(
        request_id=context.id,
        backend=backend,
        model=requested_model,
        outcome="success",
        stream=True,
    )


@app.post("/v1/chat/completions", response_model=None)
async def chat_completions(request: Request) -> Response:
    """Handle an OpenAI-compatible chat completion request."""
    try:
        chat_request = _parse_chat_request(await _read_messages_body(request))
    except InvalidRequestError as exc:
        log_request(
            request_id=None,
            backend=None,
            model=None,
            outcome="validation_error",
            error=exc.message,
        )
        return _error_response(400, "invalid_request_error", exc.message)

    route = get_router().select(chat_request.requested_model)
    context = ResponseContext.create(chat_request.model, chat_request.include_usage)
    backend_name = route.backend.name

    # --- Open the backend stream ---
    try:
        increments = await _open_stream(route, chat_request)
    except BackendError as exc:
        log_request(
            request_id=context.id,
            backend=backend_name,
            model=chat_request.model,
            outcome="backend_error",
            stream=chat_request.stream,
            error=str(exc),
        )
        return _error_response(
            500, "internal_error", "Failed to get stream from backend: {}".format(exc.message)
        )
    except Exception as exc:
        _logger.exception("Error processing request")
        log_request(
            request_id=context.id,
            backend=backend_name,
            model=chat_request.model,
            outcome="backend_error",
            stream=chat_request.stream,
            error=str(exc),
        )
        return _error_response(500, "internal_error", "Internal server error")

    if chat_request.stream:
        return StreamingResponse(
            _logged_sse(increments, context, backend_name, chat_request.model),
            media_type="text/event-stream",
            headers=_EVENT_STREAM_HEADERS,
        )

    # --- Batched response ---
    try:
        completion = await aggregate_completion(increments, context)
    except Exception as exc:
        log_request(
            request_id=context.id,
            backend=backend_name,
            model=chat_request.model,
            outcome="backend_error",
            stream=False,
            error=str(exc),
        )
        return _error_response(500, "internal_error", "Internal server error")

    log_request(
        request_id=context.id,
        backend=backend_name,
        model=chat_request.model,
        outcome="success",
        stream=False,
        usage=completion.usage.model_dump(),
    )
    return JSONResponse(status_code=200, content=completion.model_dump())


@app.get("/v1/models", response_model=None)
async def list_models() -> JSONResponse:
    """List the routable models of every offered backend."""
    config = get_config()
    offered = {backend.name for backend in get_router().backends}
    created = int(time.time())

    catalog = ModelList(
        data=[
            ModelCard(id=model_id, created=created, owned_by=backend.display_name)
            for backend in config.backends.values()
            if backend.name in offered
            for model_id in backend.models
        ]
    )
    return JSONResponse(status_code=200, content=catalog.model_dump())


@app.post("/chat", response_model=None)
async def legacy_chat(request: Request) -> Response:
    """Stream raw backend text for older clients.

    Always routes round robin and writes increments without chunk framing.
    """
    request_id = new_completion_id()
    try:
        body = await _read_messages_body(request)
        chat_request = _parse_chat_request({"messages": body["messages"]})
    except InvalidRequestError as exc:
        log_request(
            request_id=request_id,
            backend=None,
            model=None,
            outcome="validation_error",
            error=exc.message,
        )
        return _error_response(400, "invalid_request_error", exc.message)

    route = get_router().select()
    try:
        increments = await _open_stream(route, chat_request)
    except Exception as exc:
        log_request(
            request_id=request_id,
            backend=route.backend.name,
            model=None,
            outcome="backend_error",
            stream=True,
            error=str(exc),
        )
        return _error_response(500, "internal_error", "Internal server error")

    return StreamingResponse(
        increments, media_type="text/event-stream", headers=_EVENT_STREAM_HEADERS
    )
