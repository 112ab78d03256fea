"""Caller-facing buffered and streaming entry points over the backend core."""

from __future__ import annotations

from typing import Any, Dict, Optional

from clirelay.backend.errors import ExecutionError, InvalidRequestError, error_summary
from clirelay.backend.runner import ProcessRunner, build_command
from clirelay.backend.stream_bridge import StreamingBridge
from clirelay.backend.translator import to_backend_input
from clirelay.config import Settings
from clirelay.kernel.debug_log import EventSink
from clirelay.kernel.types import (
    OUTPUT_MODE_STREAM,
    AggregatedResponse,
    ChatRequest,
    new_request_id,
    now_ms,
)


class ChatExecutor:
    def __init__(
        self,
        settings: Settings,
        event_sink: Optional[EventSink] = None,
        runner: Optional[ProcessRunner] = None,
    ) -> None:
        self._settings = settings
        self._event_sink = event_sink
        self._runner = runner or ProcessRunner(
            kill_grace_ms=settings.kill_grace_ms,
            event_sink=event_sink,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def runner(self) -> ProcessRunner:
        return self._runner

    def prepare(self, request: ChatRequest) -> ChatRequest:
        """Fill configured defaults and reject requests no backend call can serve."""

        if not request.turns:
            raise InvalidRequestError(
                "messages field is required and must be a non-empty array",
                code="invalid_messages",
            )
        if request.input_mode not in self._settings.allowed_input_formats:
            raise InvalidRequestError(
                "Invalid input_format. Must be one of: {0}".format(
                    ", ".join(self._settings.allowed_input_formats)
                ),
                code="invalid_input_format",
            )
        if request.output_mode not in self._settings.allowed_output_formats:
            raise InvalidRequestError(
                "Invalid output_format. Must be one of: {0}".format(
                    ", ".join(self._settings.allowed_output_formats)
                ),
                code="invalid_output_format",
            )
        if not request.model:
            request.model = self._settings.default_model
        return request

    async def execute(self, request: ChatRequest, request_id: Optional[str] = None) -> AggregatedResponse:
        request = self.prepare(request)
        request_id = request_id or new_request_id()
        stdin_payload = to_backend_input(request, request.input_mode)
        argv = self._command(request)

        started = now_ms()
        self._emit(
            "execution.started",
            {
                "request_id": request_id,
                "model": request.model,
                "input_format": request.input_mode,
                "output_format": request.output_mode,
                "turns": len(request.turns),
            },
        )
        try:
            response = await self._runner.run(
                argv,
                stdin_payload,
                self._settings.timeout_ms,
                request_id=request_id,
                output_mode=request.output_mode,
                model=str(request.model or ""),
            )
        except ExecutionError as exc:
            self._emit(
                "execution.failed",
                {
                    "request_id": request_id,
                    "duration_ms": now_ms() - started,
                    "error": error_summary(exc),
                    "code": exc.code,
                },
            )
            raise

        self._emit(
            "execution.completed",
            {
                "request_id": request_id,
                "duration_ms": now_ms() - started,
                "content_length": len(response.content),
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
            },
        )
        return response

    def stream(self, request: ChatRequest, request_id: Optional[str] = None) -> StreamingBridge:
        request.output_mode = OUTPUT_MODE_STREAM
        request = self.prepare(request)
        request_id = request_id or new_request_id()
        stdin_payload = to_backend_input(request, request.input_mode)
        self._emit(
            "execution.stream.started",
            {
                "request_id": request_id,
                "model": request.model,
                "input_format": request.input_mode,
                "turns": len(request.turns),
            },
        )
        return StreamingBridge(
            self._runner,
            self._command(request),
            stdin_payload,
            self._settings.timeout_ms,
            request_id=request_id,
            model=str(request.model or ""),
            event_sink=self._event_sink,
        )

    def _command(self, request: ChatRequest) -> list:
        return build_command(
            self._settings.backend_command,
            request,
            default_model=self._settings.default_model,
            extra_args=self._settings.backend_extra_args,
        )

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(event_type, dict(payload))
        except Exception:
            return
