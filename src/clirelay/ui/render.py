"""Presentation helpers for clirelay CLI output."""

from __future__ import annotations

import io
from typing import Any, Dict, Iterable, Optional, TextIO

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from clirelay.kernel.types import AggregatedResponse


_NOTICE_PREFIX = {
    "info": "Info",
    "warn": "Warning",
    "error": "Error",
    "success": "Success",
}


def render_notice(level: str, message: str) -> str:
    prefix = _NOTICE_PREFIX.get(level, _NOTICE_PREFIX["info"])
    return "{0}: {1}".format(prefix, message)


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False


def render_assistant_panel(
    text: str,
    stream: TextIO,
    is_tty: Optional[bool] = None,
    title: str = "Assistant",
) -> None:
    tty = _is_tty(stream, is_tty)
    normalized = text if text is not None else ""

    if tty:
        console = Console(file=stream, highlight=False, soft_wrap=True)
        console.print(Panel(normalized, title=title, border_style="cyan", box=box.ROUNDED))
        return

    stream.write(normalized + "\n")
    stream.flush()


def _usage_lines(response: AggregatedResponse) -> Iterable[str]:
    yield "id={0} model={1} stop_reason={2}".format(
        response.completion_id,
        response.model,
        response.stop_reason,
    )
    yield "input_tokens={0} output_tokens={1} total_tokens={2}".format(
        response.input_tokens,
        response.output_tokens,
        response.total_tokens,
    )


def render_usage(response: AggregatedResponse, stream: TextIO, is_tty: Optional[bool] = None) -> None:
    tty = _is_tty(stream, is_tty)
    lines = list(_usage_lines(response))

    if tty:
        console = Console(file=stream, highlight=False, soft_wrap=True)
        for line in lines:
            console.print(Text(line, style="dim"))
        return

    for line in lines:
        stream.write(line + "\n")
    stream.flush()


def preview_rendered_usage(response: AggregatedResponse) -> str:
    """Deterministic text snapshot of ``render_usage`` for tests."""

    stream = io.StringIO()
    render_usage(response, stream=stream, is_tty=False)
    return stream.getvalue()


def render_doctor_text(report: Dict[str, Any]) -> str:
    backend = report.get("backend") if isinstance(report.get("backend"), dict) else {}
    server = report.get("server") if isinstance(report.get("server"), dict) else {}
    logs = report.get("logs") if isinstance(report.get("logs"), dict) else {}

    lines = [
        "Doctor Report",
        "project_root={0}".format(report.get("project_root", "")),
        "config_file={0} exists={1}".format(report.get("config_file", ""), bool(report.get("config_exists"))),
        "",
        "Backend",
        "command={0}".format(backend.get("command", "")),
        "resolved_path={0}".format(backend.get("resolved_path") or "missing"),
        "default_model={0} timeout_ms={1} kill_grace_ms={2}".format(
            backend.get("default_model", ""),
            int(backend.get("timeout_ms") or 0),
            int(backend.get("kill_grace_ms") or 0),
        ),
        "input_formats={0}".format(",".join(backend.get("allowed_input_formats") or [])),
        "output_formats={0}".format(",".join(backend.get("allowed_output_formats") or [])),
        "",
        "Server",
        "listen={0}:{1}".format(server.get("host", ""), server.get("port", "")),
        "auth_enabled={0} rate_limit_enabled={1}".format(
            bool(server.get("auth_enabled")),
            bool(server.get("rate_limit_enabled")),
        ),
        "",
        "Logs",
        "logs_enabled={0}".format(bool(logs.get("logs_enabled"))),
        "logs_active_size_bytes={0}".format(int(logs.get("logs_active_size_bytes") or 0)),
        "logs_max_file_bytes={0} logs_max_files={1}".format(
            int(logs.get("logs_max_file_bytes") or 0),
            int(logs.get("logs_max_files") or 0),
        ),
        "logs_write_errors={0}".format(int(logs.get("logs_write_errors") or 0)),
    ]
    logs_dir = logs.get("logs_dir")
    if logs_dir:
        lines.append("logs_dir={0}".format(logs_dir))
    rotated = logs.get("logs_rotated_files")
    if isinstance(rotated, list):
        lines.append("logs_rotated_files={0}".format(len(rotated)))
    return "\n".join(lines)
