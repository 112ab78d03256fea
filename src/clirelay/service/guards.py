"""API-key authentication and fixed-window rate limiting."""

from __future__ import annotations

import hmac
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from clirelay.backend.errors import AuthenticationError, RateLimitError
from clirelay.kernel.types import now_ms


def check_api_key(
    headers: Mapping[str, str],
    *,
    enabled: bool,
    expected_key: str,
    header_name: str,
) -> None:
    if not enabled:
        return
    provided = headers.get(header_name) or headers.get(header_name.lower())
    if not provided:
        raise AuthenticationError("Missing API key", code="missing_api_key")
    if not expected_key or not hmac.compare_digest(str(provided), str(expected_key)):
        raise AuthenticationError("Invalid API key", code="invalid_api_key")


@dataclass
class _Window:
    started_ms: int
    count: int


class FixedWindowRateLimiter:
    """Per-client request counter that resets every ``window_ms``."""

    def __init__(
        self,
        *,
        window_ms: int,
        max_requests: int,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._window_ms = max(1, int(window_ms))
        self._max_requests = max(1, int(max_requests))
        self._clock = clock or now_ms
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def hit(self, client_key: str) -> int:
        """Count one request; returns the remaining budget or raises RateLimitError."""

        now = int(self._clock())
        with self._lock:
            self._prune_locked(now)
            window = self._windows.get(client_key)
            if window is None or now - window.started_ms >= self._window_ms:
                window = _Window(started_ms=now, count=0)
                self._windows[client_key] = window
            if window.count >= self._max_requests:
                retry_after_ms = window.started_ms + self._window_ms - now
                raise RateLimitError(
                    "Too many requests, please try again later",
                    retry_after_ms=max(0, retry_after_ms),
                )
            window.count += 1
            return self._max_requests - window.count

    def _prune_locked(self, now: int) -> None:
        expired = [key for key, item in self._windows.items() if now - item.started_ms >= self._window_ms]
        for key in expired:
            del self._windows[key]
