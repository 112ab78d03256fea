"""FastAPI application exposing the OpenAI and Anthropic chat dialects."""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clirelay import __version__
from clirelay.backend.errors import (
    ExecutionError,
    InvalidRequestError,
    PayloadTooLargeError,
    RateLimitError,
    RouteNotFoundError,
    error_envelope,
    error_status,
    error_summary,
)
from clirelay.backend.translator import to_anthropic_response, to_openai_response, to_rca_response
from clirelay.config import Settings, load_settings
from clirelay.kernel.debug_log import DebugLogWriter
from clirelay.kernel.types import OUTPUT_MODE_STREAM, new_request_id, now_ms
from clirelay.service.executor import ChatExecutor
from clirelay.service.guards import FixedWindowRateLimiter, check_api_key
from clirelay.service.validation import (
    parse_anthropic_messages,
    parse_chat_completion,
    parse_rca,
    warn_on_model,
)


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

HEALTH_PATH = "/health"


def _error_response(exc: BaseException) -> JSONResponse:
    headers: Dict[str, str] = {}
    if isinstance(exc, RateLimitError):
        retry_after_ms = int(exc.details.get("retry_after_ms") or 0)
        headers["Retry-After"] = str(max(1, (retry_after_ms + 999) // 1000))
    return JSONResponse(status_code=error_status(exc), content=error_envelope(exc), headers=headers)


def _client_key(request: Request) -> str:
    if request.client is not None and request.client.host:
        return str(request.client.host)
    return "unknown"


def _service_info(settings: Settings) -> Dict[str, Any]:
    return {
        "name": "clirelay",
        "version": __version__,
        "endpoints": [
            {"path": HEALTH_PATH, "method": "GET", "description": "Health check endpoint"},
            {
                "path": "/v1/chat/completions",
                "method": "POST",
                "description": "OpenAI-compatible chat completions endpoint",
                "parameters": {
                    "input_format": "text (default) | stream-json",
                    "output_format": "text | json (default) | stream-json",
                    "stream": "boolean (deprecated, use output_format)",
                },
            },
            {
                "path": "/v1/messages",
                "method": "POST",
                "description": "Anthropic-compatible messages endpoint",
            },
            {
                "path": "/api/rca",
                "method": "POST",
                "description": "Root cause analysis endpoint (always uses json output)",
            },
        ],
        "config": {
            "rate_limit_enabled": settings.rate_limit_enabled,
            "auth_enabled": settings.auth_enabled,
            "default_model": settings.default_model,
            "supported_input_formats": list(settings.allowed_input_formats),
            "supported_output_formats": list(settings.allowed_output_formats),
        },
    }


def create_app(
    settings: Optional[Settings] = None,
    *,
    executor: Optional[ChatExecutor] = None,
    log_writer: Optional[DebugLogWriter] = None,
) -> FastAPI:
    settings = settings or load_settings()
    writer = log_writer or DebugLogWriter.from_settings(settings)
    http_sink = writer.sink("http")
    executor = executor or ChatExecutor(settings, event_sink=writer.sink("backend"))
    limiter: Optional[FixedWindowRateLimiter] = None
    if settings.rate_limit_enabled:
        limiter = FixedWindowRateLimiter(
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.rate_limit_max_requests,
        )
    started_at = time.monotonic()

    app = FastAPI(title="clirelay", version=__version__)
    app.state.settings = settings
    app.state.executor = executor
    app.state.log_writer = writer

    @app.middleware("http")
    async def request_context(request: Request, call_next: Any) -> Any:
        request_id = new_request_id()
        request.state.request_id = request_id
        started = now_ms()
        if settings.request_logging:
            http_sink(
                "http.request",
                {
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "client": _client_key(request),
                },
            )

        response = None
        if limiter is not None and request.url.path != HEALTH_PATH:
            try:
                limiter.hit(_client_key(request))
            except RateLimitError as exc:
                http_sink(
                    "http.rate_limit.rejected",
                    {"request_id": request_id, "path": request.url.path, "client": _client_key(request)},
                )
                response = _error_response(exc)
        if response is None:
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        if settings.response_logging:
            http_sink(
                "http.response",
                {
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": now_ms() - started,
                },
            )
        return response

    async def require_api_key(request: Request) -> None:
        try:
            check_api_key(
                request.headers,
                enabled=settings.auth_enabled,
                expected_key=settings.auth_api_key,
                header_name=settings.auth_header_name,
            )
        except ExecutionError as exc:
            http_sink(
                "http.auth.rejected",
                {
                    "request_id": getattr(request.state, "request_id", ""),
                    "path": request.url.path,
                    "code": exc.code,
                },
            )
            raise

    async def read_json_body(request: Request) -> Dict[str, Any]:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > settings.request_size_limit_bytes:
            raise PayloadTooLargeError(
                "Request body exceeds {0} bytes".format(settings.request_size_limit_bytes)
            )
        raw = await request.body()
        if len(raw) > settings.request_size_limit_bytes:
            raise PayloadTooLargeError(
                "Request body exceeds {0} bytes".format(settings.request_size_limit_bytes)
            )
        try:
            body = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidRequestError("Invalid JSON body: {0}".format(exc), code="invalid_json") from exc
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object", code="invalid_json")
        return body

    @app.exception_handler(ExecutionError)
    async def handle_execution_error(request: Request, exc: ExecutionError) -> JSONResponse:
        http_sink(
            "http.request.failed" if error_status(exc) >= 500 else "http.request.invalid",
            {
                "request_id": getattr(request.state, "request_id", ""),
                "path": request.url.path,
                "method": request.method,
                "error": error_summary(exc),
            },
        )
        return _error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            http_sink(
                "http.route.invalid",
                {
                    "request_id": getattr(request.state, "request_id", ""),
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return _error_response(
                RouteNotFoundError("Route {0} {1} not found".format(request.method, request.url.path))
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "message": str(exc.detail),
                    "type": "invalid_request_error",
                    "code": "http_{0}".format(exc.status_code),
                }
            },
        )

    @app.get(HEALTH_PATH)
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started_at, 3),
            "version": __version__,
        }

    @app.get("/")
    async def service_info() -> Dict[str, Any]:
        return _service_info(settings)

    @app.post("/v1/chat/completions", dependencies=[Depends(require_api_key)])
    async def chat_completions(request: Request) -> Any:
        body = await read_json_body(request)
        chat = parse_chat_completion(
            body,
            settings.allowed_input_formats,
            settings.allowed_output_formats,
        )
        request_id = request.state.request_id
        warn_on_model(chat.model, request_id, http_sink)

        if chat.output_mode == OUTPUT_MODE_STREAM:
            bridge = executor.stream(chat, request_id=request_id)
            return StreamingResponse(
                bridge.frames(),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        response = await executor.execute(chat, request_id=request_id)
        return to_openai_response(response)

    @app.post("/v1/messages", dependencies=[Depends(require_api_key)])
    async def anthropic_messages(request: Request) -> Dict[str, Any]:
        body = await read_json_body(request)
        chat = parse_anthropic_messages(
            body,
            default_max_tokens=settings.default_max_tokens,
            default_temperature=settings.default_temperature,
        )
        response = await executor.execute(chat, request_id=request.state.request_id)
        return to_anthropic_response(response)

    @app.post("/api/rca", dependencies=[Depends(require_api_key)])
    async def root_cause_analysis(request: Request) -> Dict[str, Any]:
        body = await read_json_body(request)
        chat = parse_rca(
            body,
            default_max_tokens=settings.default_max_tokens,
            default_temperature=settings.default_temperature,
        )
        response = await executor.execute(chat, request_id=request.state.request_id)
        return to_rca_response(response)

    return app


def serve(settings: Settings, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
    import uvicorn

    writer = DebugLogWriter.from_settings(settings)
    app = create_app(settings, log_writer=writer)
    bind_host = host or settings.server_host
    bind_port = int(port or settings.server_port)
    writer.sink("service")(
        "service.started",
        {
            "host": bind_host,
            "port": bind_port,
            "backend_command": settings.backend_command,
            "default_model": settings.default_model,
            "auth_enabled": settings.auth_enabled,
            "rate_limit_enabled": settings.rate_limit_enabled,
        },
    )
    uvicorn.run(
        app,
        host=bind_host,
        port=bind_port,
        log_level="warning" if settings.logs_level == "warn" else settings.logs_level,
        timeout_graceful_shutdown=max(1, settings.shutdown_timeout_ms // 1000),
    )
