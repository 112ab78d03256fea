"""Typer CLI entrypoints for clirelay."""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from typing import Any, Dict, List, Optional

import typer

from clirelay import __version__
from clirelay.backend.errors import ExecutionError, InvalidRequestError, error_summary
from clirelay.backend.stream_bridge import DONE_FRAME
from clirelay.config import (
    ProjectConfigError,
    Settings,
    initialize_project_config,
    load_settings,
    project_config_exists,
)
from clirelay.kernel.debug_log import DebugLogWriter
from clirelay.kernel.types import (
    INPUT_MODE_TEXT,
    OUTPUT_MODE_JSON,
    OUTPUT_MODE_STREAM,
    ROLE_SYSTEM,
    ROLE_USER,
    ChatRequest,
)
from clirelay.service.executor import ChatExecutor
from clirelay.ui.render import (
    render_assistant_panel,
    render_doctor_text,
    render_notice,
    render_usage,
)


app = typer.Typer(
    no_args_is_help=True,
    help="HTTP relay for a command-line model backend",
)


def _load_settings_or_exit(**overrides: Any) -> Settings:
    try:
        return load_settings(**overrides)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)


def _doctor_report(settings: Settings) -> Dict[str, Any]:
    writer = DebugLogWriter.from_settings(settings, mirror=False)
    return {
        "version": __version__,
        "project_root": str(settings.project_root),
        "config_file": str(settings.config_file),
        "config_exists": project_config_exists(settings.project_root),
        "backend": {
            "command": settings.backend_command,
            "extra_args": list(settings.backend_extra_args),
            "resolved_path": shutil.which(settings.backend_command),
            "default_model": settings.default_model,
            "default_max_tokens": settings.default_max_tokens,
            "default_temperature": settings.default_temperature,
            "timeout_ms": settings.timeout_ms,
            "kill_grace_ms": settings.kill_grace_ms,
            "allowed_input_formats": list(settings.allowed_input_formats),
            "allowed_output_formats": list(settings.allowed_output_formats),
        },
        "server": {
            "host": settings.server_host,
            "port": settings.server_port,
            "auth_enabled": settings.auth_enabled,
            "auth_header_name": settings.auth_header_name,
            "rate_limit_enabled": settings.rate_limit_enabled,
            "rate_limit_window_ms": settings.rate_limit_window_ms,
            "rate_limit_max_requests": settings.rate_limit_max_requests,
        },
        "logs": writer.status(),
    }


async def _stream_to_stdout(executor: ChatExecutor, request: ChatRequest) -> int:
    failures: List[str] = []

    async def write_frame(frame: str) -> None:
        if frame == DONE_FRAME:
            sys.stdout.write("\n")
            sys.stdout.flush()
            return
        payload = json.loads(frame[len("data: "):].strip())
        error = payload.get("error")
        if isinstance(error, dict):
            failures.append("{0} ({1})".format(error.get("message", ""), error.get("code", "")))
            return
        for choice in payload.get("choices") or []:
            delta = choice.get("delta") or {}
            sys.stdout.write(str(delta.get("content") or ""))
        sys.stdout.flush()

    bridge = executor.stream(request)
    await bridge.pump(write_frame)
    for failure in failures:
        typer.echo(render_notice("error", "Backend stream failed: {0}".format(failure)), err=True)
    return 1 if failures else 0


@app.command("init")
def init_cmd(
    force: bool = typer.Option(
        False,
        "--force",
        help="Recreate .clirelay (removes the existing directory first)",
    ),
) -> None:
    """Write the default project configuration."""
    try:
        config_root = initialize_project_config(force=force)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    typer.echo(render_notice("success", "Initialized project config at: {0}".format(config_root)))


@app.command("serve")
def serve_cmd(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default from config)"),
) -> None:
    """Run the HTTP service."""
    from clirelay.service.app import serve

    settings = _load_settings_or_exit()
    serve(settings, host=host, port=port)


@app.command("doctor")
def doctor_cmd(
    output_format: str = typer.Option(
        "json",
        "--format",
        help="Output format: json|text",
    ),
) -> None:
    """Show resolved settings, backend availability and log status."""
    normalized_format = output_format.strip().lower()
    if normalized_format not in {"json", "text"}:
        typer.echo(render_notice("error", "Unsupported format: {0}".format(output_format)), err=True)
        raise typer.Exit(code=2)

    settings = _load_settings_or_exit()
    report = _doctor_report(settings)
    if normalized_format == "json":
        typer.echo(json.dumps(report, ensure_ascii=True, indent=2))
        return
    typer.echo(render_doctor_text(report))


@app.command("ask")
def ask_cmd(
    prompt_parts: List[str] = typer.Argument(..., help="Prompt text"),
    model: Optional[str] = typer.Option(None, "--model", help="Model name (default from config)"),
    system: Optional[str] = typer.Option(None, "--system", help="Optional system prompt"),
    stream: bool = typer.Option(False, "--stream", help="Print content deltas as they arrive"),
    input_format: str = typer.Option(INPUT_MODE_TEXT, "--input-format", help="text|stream-json"),
    output_format: str = typer.Option(OUTPUT_MODE_JSON, "--output-format", help="text|json|stream-json"),
) -> None:
    """Run one backend invocation from the terminal."""
    text = " ".join(prompt_parts).strip()
    if not text:
        typer.echo(render_notice("error", "Prompt text is required."), err=True)
        raise typer.Exit(code=2)

    settings = _load_settings_or_exit()
    writer = DebugLogWriter.from_settings(settings, mirror=False)
    executor = ChatExecutor(settings, event_sink=writer.sink("cli"))

    messages = []
    if system:
        messages.append({"role": ROLE_SYSTEM, "content": system})
    messages.append({"role": ROLE_USER, "content": text})
    request = ChatRequest.from_messages(
        messages,
        model=model,
        input_mode=input_format,
        output_mode=OUTPUT_MODE_STREAM if stream else output_format,
    )

    try:
        if stream or request.output_mode == OUTPUT_MODE_STREAM:
            raise typer.Exit(code=asyncio.run(_stream_to_stdout(executor, request)))
        response = asyncio.run(executor.execute(request))
    except InvalidRequestError as exc:
        typer.echo(render_notice("error", error_summary(exc)), err=True)
        raise typer.Exit(code=2)
    except ExecutionError as exc:
        typer.echo(render_notice("error", "Backend error: {0}".format(error_summary(exc))), err=True)
        typer.echo(
            render_notice("info", "Run `clirelay doctor --format text` to check the backend command."),
            err=True,
        )
        raise typer.Exit(code=1)

    render_assistant_panel(response.content, stream=sys.stdout)
    render_usage(response, stream=sys.stdout)


@app.command("version")
def version_cmd() -> None:
    typer.echo(__version__)


if __name__ == "__main__":
    app()
