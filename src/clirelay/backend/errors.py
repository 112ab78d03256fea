"""Execution error taxonomy and the JSON error envelope."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ExecutionError(RuntimeError):
    """Raised when one backend invocation cannot produce a response."""

    error_type = "internal_error"
    code = "unknown_error"
    http_status = 500

    def __init__(self, message: str, *, code: Optional[str] = None, **details: Any) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


class InvalidRequestError(ExecutionError):
    """Malformed or empty input; the caller's fault and never retried."""

    error_type = "invalid_request_error"
    code = "invalid_request"
    http_status = 400


class BackendUnavailableError(ExecutionError):
    """Backend executable missing or not spawnable."""

    error_type = "backend_unavailable_error"
    code = "backend_unavailable"
    http_status = 503


class InputWriteError(ExecutionError):
    """Backend stdin pipe broke before the payload was delivered."""

    error_type = "input_write_error"
    code = "input_write_failed"
    http_status = 500


class ExecutionTimeoutError(ExecutionError):
    """Backend exceeded its allotted wall-clock time."""

    error_type = "timeout_error"
    code = "execution_timeout"
    http_status = 504


class BackendExecutionError(ExecutionError):
    error_type = "backend_execution_error"
    code = "backend_exit_nonzero"
    http_status = 502

    def __init__(self, exit_code: int, diagnostic: str, **details: Any) -> None:
        self.exit_code = int(exit_code)
        self.diagnostic = str(diagnostic or "").strip()
        super().__init__(
            "backend process exited with code {0}: {1}".format(
                self.exit_code,
                self.diagnostic or "Unknown error",
            ),
            exit_code=self.exit_code,
            **details,
        )


class ResponseParseError(ExecutionError):
    """Backend exited 0 but its output violates the output contract."""

    error_type = "response_parse_error"
    code = "invalid_backend_output"
    http_status = 502

    def __init__(self, message: str, raw_output: str = "", **details: Any) -> None:
        self.raw_prefix = str(raw_output or "")[:500]
        super().__init__(message, raw_prefix=self.raw_prefix, **details)


class AuthenticationError(ExecutionError):
    error_type = "authentication_error"
    code = "invalid_api_key"
    http_status = 401


class RateLimitError(ExecutionError):
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"
    http_status = 429


class PayloadTooLargeError(InvalidRequestError):
    code = "request_too_large"
    http_status = 413


class RouteNotFoundError(ExecutionError):
    error_type = "not_found_error"
    code = "route_not_found"
    http_status = 404


def error_envelope(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, ExecutionError):
        body: Dict[str, Any] = {
            "message": str(exc) or "Internal server error",
            "type": exc.error_type,
            "code": exc.code,
        }
    else:
        body = {
            "message": str(exc) or "Internal server error",
            "type": ExecutionError.error_type,
            "code": ExecutionError.code,
        }
    return {"error": body}


def error_status(exc: BaseException) -> int:
    if isinstance(exc, ExecutionError):
        return int(exc.http_status)
    return 500


def error_summary(exc: BaseException) -> str:
    detail = exc.details if isinstance(exc, ExecutionError) else {}
    ordered_keys = (
        "request_id",
        "exit_code",
        "timeout_ms",
        "command",
        "phase",
    )
    segments = [str(exc)]
    if isinstance(exc, ExecutionError):
        segments.append("type={0}".format(exc.error_type))
    for key in ordered_keys:
        value = detail.get(key)
        if value in ("", None):
            continue
        segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)
