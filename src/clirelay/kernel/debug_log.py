"""Structured JSONL lifecycle log writer with size-based rotation and redaction."""

from __future__ import annotations

import json
import re
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TextIO

from clirelay.kernel.types import now_ms


EventSink = Callable[[str, Dict[str, Any]], None]

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_RE = re.compile(
    r"(password|secret|token|authorization|cookie|api[_-]?key|access[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([^\s,;]+)")
_KEY_VALUE_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?key|token|secret|authorization|cookie|private[_-]?key)\b\s*[:=]\s*([^\s,;]+)"
)
_SK_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9]{8,}\b")

_LEVEL_ORDER = {"debug": 10, "info": 20, "warn": 30, "error": 40}

# Token counters are not secrets even though their keys match the pattern.
_SAFE_KEYS = {"input_tokens", "output_tokens", "total_tokens", "max_tokens", "prompt_tokens", "completion_tokens"}


def level_for_event(event_type: str) -> str:
    name = str(event_type or "")
    if name.endswith((".failed", ".spawn_failed", ".error")):
        return "error"
    if name.endswith((".timeout", ".kill", ".invalid", ".parse_failed", ".disconnected", ".rejected", ".warning")):
        return "warn"
    if name.endswith((".chunk", ".control", ".written", ".args")):
        return "debug"
    return "info"


class DebugLogWriter:
    """Best-effort JSONL log writer with rotation and an optional console mirror."""

    def __init__(
        self,
        *,
        logs_dir: Path,
        enabled: bool,
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
        level: str = "info",
        console: Optional[TextIO] = None,
    ) -> None:
        self._logs_dir = Path(logs_dir)
        self._enabled = bool(enabled)
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        self._redaction = str(redaction or "default").strip().lower()
        if self._redaction not in {"none", "default", "strict"}:
            self._redaction = "default"
        self._min_level = _LEVEL_ORDER.get(str(level or "info").strip().lower(), _LEVEL_ORDER["info"])
        self._console = console
        self._write_errors = 0
        self._lock = threading.Lock()
        if self._enabled:
            try:
                self._logs_dir.mkdir(parents=True, exist_ok=True)
            except Exception:
                self._write_errors += 1

    @classmethod
    def from_settings(cls, settings: Any, mirror: Optional[bool] = None) -> "DebugLogWriter":
        use_console = settings.logs_console if mirror is None else mirror
        return cls(
            logs_dir=settings.resolved_logs_dir,
            enabled=settings.logs_enabled,
            max_file_bytes=settings.logs_max_file_bytes,
            max_files=settings.logs_max_files,
            redaction=settings.logs_redaction,
            level=settings.logs_level,
            console=sys.stderr if use_console else None,
        )

    @property
    def active_log_file(self) -> Path:
        return self._logs_dir / "clirelay.log.jsonl"

    def sink(self, component: str) -> EventSink:
        """Return an event sink that records lifecycle events for one component."""

        def _sink(event_type: str, payload: Dict[str, Any]) -> None:
            data = dict(payload or {})
            request_id = str(data.pop("request_id", "") or "")
            self.write_entry(
                level=level_for_event(event_type),
                component=component,
                event_type=event_type,
                request_id=request_id,
                message=event_type,
                data=data,
            )

        return _sink

    def write_entry(
        self,
        *,
        level: str,
        component: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        event_type: Optional[str] = None,
        ts_ms: Optional[int] = None,
    ) -> None:
        if not self._enabled and self._console is None:
            return
        level_text = str(level or "info").strip().lower()
        if _LEVEL_ORDER.get(level_text, _LEVEL_ORDER["info"]) < self._min_level:
            return

        record = {
            "ts_ms": int(ts_ms if ts_ms is not None else now_ms()),
            "level": level_text,
            "component": str(component or "service"),
            "event_type": str(event_type or ""),
            "request_id": str(request_id or ""),
            "message": str(message or ""),
            "data": dict(data or {}),
        }

        if self._redaction != "none":
            record["message"] = self._redact_text(record["message"])
            if self._redaction == "strict":
                record["data"] = self._strict_redact(record["data"])
            else:
                record["data"] = self._redact_payload(record["data"])

        with self._lock:
            try:
                line = json.dumps(
                    record,
                    ensure_ascii=True,
                    separators=(",", ":"),
                    default=str,
                )
                if self._console is not None:
                    self._console.write(line + "\n")
                    self._console.flush()
                if not self._enabled:
                    return
                payload = (line + "\n").encode("utf-8")
                self._logs_dir.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed_locked(len(payload))
                with self.active_log_file.open("ab") as fp:
                    fp.write(payload)
            except Exception:
                self._write_errors += 1

    def status(self) -> Dict[str, Any]:
        with self._lock:
            if not self._enabled:
                return {
                    "logs_enabled": False,
                    "logs_dir": str(self._logs_dir),
                    "logs_active_file": str(self.active_log_file),
                    "logs_active_size_bytes": 0,
                    "logs_max_file_bytes": self._max_file_bytes,
                    "logs_max_files": self._max_files,
                    "logs_rotated_files": [],
                    "logs_write_errors": self._write_errors,
                }

            active = self.active_log_file
            active_size = active.stat().st_size if active.is_file() else 0
            rotated = []
            for index in range(1, self._max_files + 1):
                path = self._rotated_file(index)
                if path.exists():
                    rotated.append(str(path))

            return {
                "logs_enabled": True,
                "logs_dir": str(self._logs_dir),
                "logs_active_file": str(active),
                "logs_active_size_bytes": int(active_size),
                "logs_max_file_bytes": self._max_file_bytes,
                "logs_max_files": self._max_files,
                "logs_rotated_files": rotated,
                "logs_write_errors": int(self._write_errors),
            }

    def _rotate_if_needed_locked(self, incoming_size: int) -> None:
        current_size = 0
        if self.active_log_file.exists():
            current_size = int(self.active_log_file.stat().st_size)
        if current_size + int(incoming_size) <= self._max_file_bytes:
            return
        self._rotate_locked()

    def _rotate_locked(self) -> None:
        oldest = self._rotated_file(self._max_files)
        oldest.unlink(missing_ok=True)

        for index in range(self._max_files - 1, 0, -1):
            src = self._rotated_file(index)
            dst = self._rotated_file(index + 1)
            if not src.exists():
                continue
            src.replace(dst)

        if self.active_log_file.exists():
            self.active_log_file.replace(self._rotated_file(1))

    def _rotated_file(self, index: int) -> Path:
        return Path("{0}.{1}".format(self.active_log_file, index))

    def _redact_payload(self, value: Any) -> Any:
        if isinstance(value, dict):
            out: Dict[str, Any] = {}
            for key, item in value.items():
                key_text = str(key)
                if key_text not in _SAFE_KEYS and _SENSITIVE_KEY_RE.search(key_text):
                    out[key] = _REDACTED
                else:
                    out[key] = self._redact_payload(item)
            return out
        if isinstance(value, list):
            return [self._redact_payload(item) for item in value]
        if isinstance(value, str):
            return self._redact_text(value)
        return value

    def _strict_redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            out: Dict[str, Any] = {}
            for key, item in value.items():
                key_text = str(key)
                if key_text not in _SAFE_KEYS and _SENSITIVE_KEY_RE.search(key_text):
                    out[key] = _REDACTED
                    continue
                if isinstance(item, (dict, list)):
                    out[key] = self._strict_redact(item)
                    continue
                if isinstance(item, (int, float, bool)) or item is None:
                    out[key] = item
                    continue
                out[key] = _REDACTED
            return out
        if isinstance(value, list):
            return [self._strict_redact(item) for item in value]
        return _REDACTED

    @staticmethod
    def _redact_text(text: str) -> str:
        if not text:
            return text
        masked = _BEARER_RE.sub("Bearer {0}".format(_REDACTED), text)
        masked = _KEY_VALUE_RE.sub(
            lambda m: "{0}={1}".format(m.group(1), _REDACTED),
            masked,
        )
        masked = _SK_KEY_RE.sub(_REDACTED, masked)
        return masked
