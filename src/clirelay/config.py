"""Configuration loading and directory resolution for clirelay."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

CONFIG_DIR_NAME = ".clirelay"
CONFIG_FILE_NAME = "config.toml"
LOGS_DIR_NAME = "logs"
ENV_PREFIX = "CLIRELAY_"

DEFAULT_BACKEND_COMMAND = "claude"
DEFAULT_MODEL = "sonnet"
DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.3
DEFAULT_TIMEOUT_MS = 600000
DEFAULT_KILL_GRACE_MS = 5000
DEFAULT_INPUT_FORMATS = ("text", "stream-json")
DEFAULT_OUTPUT_FORMATS = ("text", "json", "stream-json")

DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 3001
DEFAULT_SHUTDOWN_TIMEOUT_MS = 30000
DEFAULT_REQUEST_SIZE_LIMIT_BYTES = 100 * 1024

DEFAULT_AUTH_ENABLED = False
DEFAULT_AUTH_HEADER_NAME = "X-API-Key"

DEFAULT_RATE_LIMIT_ENABLED = True
DEFAULT_RATE_LIMIT_WINDOW_MS = 60000
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 10

DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
DEFAULT_LOGS_CONSOLE = True
DEFAULT_LOGS_LEVEL = "info"
DEFAULT_REQUEST_LOGGING = True
DEFAULT_RESPONSE_LOGGING = True
ALLOWED_LOG_REDACTION = ("default", "none", "strict")
ALLOWED_LOG_LEVELS = ("debug", "info", "warn", "error")


class ProjectConfigError(RuntimeError):
    """Raised when project configuration is missing or invalid."""


@dataclass
class Settings:
    """Resolved runtime settings for one process."""

    project_root: Path = field(default_factory=Path.cwd)
    config_root: Path = field(default_factory=lambda: Path.cwd() / CONFIG_DIR_NAME)

    backend_command: str = DEFAULT_BACKEND_COMMAND
    backend_extra_args: List[str] = field(default_factory=list)
    default_model: str = DEFAULT_MODEL
    default_max_tokens: int = DEFAULT_MAX_TOKENS
    default_temperature: float = DEFAULT_TEMPERATURE
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS
    allowed_input_formats: List[str] = field(default_factory=lambda: list(DEFAULT_INPUT_FORMATS))
    allowed_output_formats: List[str] = field(default_factory=lambda: list(DEFAULT_OUTPUT_FORMATS))

    server_host: str = DEFAULT_SERVER_HOST
    server_port: int = DEFAULT_SERVER_PORT
    shutdown_timeout_ms: int = DEFAULT_SHUTDOWN_TIMEOUT_MS
    request_size_limit_bytes: int = DEFAULT_REQUEST_SIZE_LIMIT_BYTES

    auth_enabled: bool = DEFAULT_AUTH_ENABLED
    auth_api_key: str = ""
    auth_header_name: str = DEFAULT_AUTH_HEADER_NAME

    rate_limit_enabled: bool = DEFAULT_RATE_LIMIT_ENABLED
    rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    rate_limit_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS

    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_dir: Optional[Path] = None
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION
    logs_console: bool = DEFAULT_LOGS_CONSOLE
    logs_level: str = DEFAULT_LOGS_LEVEL
    request_logging: bool = DEFAULT_REQUEST_LOGGING
    response_logging: bool = DEFAULT_RESPONSE_LOGGING

    @property
    def config_file(self) -> Path:
        return self.config_root / CONFIG_FILE_NAME

    @property
    def resolved_logs_dir(self) -> Path:
        if self.logs_dir is not None:
            return Path(self.logs_dir)
        return self.config_root / LOGS_DIR_NAME


def resolve_project_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve()


def resolve_project_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return resolve_project_root(workspace_dir) / CONFIG_DIR_NAME


def project_config_exists(workspace_dir: Optional[Path] = None) -> bool:
    config_root = resolve_project_config_root(workspace_dir)
    return config_root.is_dir() and (config_root / CONFIG_FILE_NAME).is_file()


def _safe_positive_int(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_port(value: object, default: int) -> int:
    converted = _safe_positive_int(value, default)
    if converted > 65535:
        return default
    return converted


def _safe_temperature(value: object, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        converted = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted < 0 or converted > 2:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_text(value: object, default: str) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        return default
    return text


def _safe_choice(value: object, allowed: Sequence[str], default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in allowed:
        return default
    return normalized


def _safe_string_list(value: object, default: Sequence[str]) -> List[str]:
    if isinstance(value, str):
        value = [item for item in value.split(",")]
    if not isinstance(value, list):
        return list(default)
    result: List[str] = []
    for item in value:
        text = str(item or "").strip()
        if not text:
            continue
        result.append(text)
    return result


def _safe_format_list(value: object, allowed: Sequence[str], default: Sequence[str]) -> List[str]:
    parsed = [item for item in _safe_string_list(value, default) if item in allowed]
    if not parsed:
        return list(default)
    return parsed


def _section(data: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name)
    return dict(value) if isinstance(value, dict) else {}


def _apply_config_data(settings: Settings, data: Mapping[str, Any]) -> Settings:
    backend = _section(data, "backend")
    server = _section(data, "server")
    auth = _section(data, "auth")
    rate_limit = _section(data, "rate_limit")
    logs = _section(data, "logs")

    logs_dir_text = str(logs.get("dir") or "").strip()
    logs_dir: Optional[Path] = settings.logs_dir
    if logs_dir_text:
        candidate = Path(logs_dir_text).expanduser()
        logs_dir = candidate if candidate.is_absolute() else settings.project_root / candidate

    return replace(
        settings,
        backend_command=_safe_text(backend.get("command"), settings.backend_command),
        backend_extra_args=_safe_string_list(backend.get("extra_args"), settings.backend_extra_args),
        default_model=_safe_text(backend.get("default_model"), settings.default_model),
        default_max_tokens=_safe_positive_int(backend.get("default_max_tokens"), settings.default_max_tokens),
        default_temperature=_safe_temperature(backend.get("default_temperature"), settings.default_temperature),
        timeout_ms=_safe_positive_int(backend.get("timeout_ms"), settings.timeout_ms),
        kill_grace_ms=_safe_positive_int(backend.get("kill_grace_ms"), settings.kill_grace_ms),
        allowed_input_formats=_safe_format_list(
            backend.get("allowed_input_formats"),
            DEFAULT_INPUT_FORMATS,
            settings.allowed_input_formats,
        ),
        allowed_output_formats=_safe_format_list(
            backend.get("allowed_output_formats"),
            DEFAULT_OUTPUT_FORMATS,
            settings.allowed_output_formats,
        ),
        server_host=_safe_text(server.get("host"), settings.server_host),
        server_port=_safe_port(server.get("port"), settings.server_port),
        shutdown_timeout_ms=_safe_positive_int(server.get("shutdown_timeout_ms"), settings.shutdown_timeout_ms),
        request_size_limit_bytes=_safe_positive_int(
            server.get("request_size_limit_bytes"),
            settings.request_size_limit_bytes,
        ),
        auth_enabled=_safe_bool(auth.get("enabled"), settings.auth_enabled),
        auth_api_key=str(auth.get("api_key") or settings.auth_api_key),
        auth_header_name=_safe_text(auth.get("header_name"), settings.auth_header_name),
        rate_limit_enabled=_safe_bool(rate_limit.get("enabled"), settings.rate_limit_enabled),
        rate_limit_window_ms=_safe_positive_int(rate_limit.get("window_ms"), settings.rate_limit_window_ms),
        rate_limit_max_requests=_safe_positive_int(
            rate_limit.get("max_requests"),
            settings.rate_limit_max_requests,
        ),
        logs_enabled=_safe_bool(logs.get("enabled"), settings.logs_enabled),
        logs_dir=logs_dir,
        logs_max_file_bytes=_safe_positive_int(logs.get("max_file_bytes"), settings.logs_max_file_bytes),
        logs_max_files=_safe_positive_int(logs.get("max_files"), settings.logs_max_files),
        logs_redaction=_safe_choice(logs.get("redaction"), ALLOWED_LOG_REDACTION, settings.logs_redaction),
        logs_console=_safe_bool(logs.get("console"), settings.logs_console),
        logs_level=_safe_choice(logs.get("level"), ALLOWED_LOG_LEVELS, settings.logs_level),
        request_logging=_safe_bool(logs.get("requests"), settings.request_logging),
        response_logging=_safe_bool(logs.get("responses"), settings.response_logging),
    )


# Environment variable -> (section, key) in the TOML layout.
ENV_OVERRIDES = {
    "CLI_PATH": ("backend", "command"),
    "DEFAULT_MODEL": ("backend", "default_model"),
    "DEFAULT_MAX_TOKENS": ("backend", "default_max_tokens"),
    "DEFAULT_TEMPERATURE": ("backend", "default_temperature"),
    "TIMEOUT_MS": ("backend", "timeout_ms"),
    "KILL_GRACE_MS": ("backend", "kill_grace_ms"),
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "SHUTDOWN_TIMEOUT_MS": ("server", "shutdown_timeout_ms"),
    "API_KEY_AUTH_ENABLED": ("auth", "enabled"),
    "API_KEY": ("auth", "api_key"),
    "API_KEY_HEADER": ("auth", "header_name"),
    "RATE_LIMIT_ENABLED": ("rate_limit", "enabled"),
    "RATE_LIMIT_WINDOW_MS": ("rate_limit", "window_ms"),
    "RATE_LIMIT_MAX": ("rate_limit", "max_requests"),
    "LOGS_ENABLED": ("logs", "enabled"),
    "LOGS_DIR": ("logs", "dir"),
    "LOG_LEVEL": ("logs", "level"),
    "LOG_CONSOLE": ("logs", "console"),
    "LOG_REQUESTS": ("logs", "requests"),
    "LOG_RESPONSES": ("logs", "responses"),
}


def _env_config_data(environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    data: Dict[str, Dict[str, Any]] = {}
    for suffix, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is None or not str(value).strip():
            continue
        data.setdefault(section, {})[key] = value
    return data


def _render_project_config(settings: Settings) -> str:
    def _toml_string(value: str) -> str:
        return '"{0}"'.format(str(value or "").replace("\\", "\\\\").replace('"', '\\"'))

    def _toml_array(values: Sequence[str]) -> str:
        return "[{0}]".format(", ".join(_toml_string(item) for item in values))

    def _toml_bool(value: bool) -> str:
        return str(bool(value)).lower()

    lines: List[str] = [
        "[backend]",
        "command = {0}".format(_toml_string(settings.backend_command)),
        "extra_args = {0}".format(_toml_array(settings.backend_extra_args)),
        "default_model = {0}".format(_toml_string(settings.default_model)),
        "default_max_tokens = {0}".format(settings.default_max_tokens),
        "default_temperature = {0}".format(settings.default_temperature),
        "timeout_ms = {0}".format(settings.timeout_ms),
        "kill_grace_ms = {0}".format(settings.kill_grace_ms),
        "allowed_input_formats = {0}".format(_toml_array(settings.allowed_input_formats)),
        "allowed_output_formats = {0}".format(_toml_array(settings.allowed_output_formats)),
        "",
        "[server]",
        "host = {0}".format(_toml_string(settings.server_host)),
        "port = {0}".format(settings.server_port),
        "shutdown_timeout_ms = {0}".format(settings.shutdown_timeout_ms),
        "request_size_limit_bytes = {0}".format(settings.request_size_limit_bytes),
        "",
        "[auth]",
        "enabled = {0}".format(_toml_bool(settings.auth_enabled)),
        'api_key = ""',
        "header_name = {0}".format(_toml_string(settings.auth_header_name)),
        "",
        "[rate_limit]",
        "enabled = {0}".format(_toml_bool(settings.rate_limit_enabled)),
        "window_ms = {0}".format(settings.rate_limit_window_ms),
        "max_requests = {0}".format(settings.rate_limit_max_requests),
        "",
        "[logs]",
        "enabled = {0}".format(_toml_bool(settings.logs_enabled)),
        "max_file_bytes = {0}".format(settings.logs_max_file_bytes),
        "max_files = {0}".format(settings.logs_max_files),
        "redaction = {0}".format(_toml_string(settings.logs_redaction)),
        "console = {0}".format(_toml_bool(settings.logs_console)),
        "level = {0}".format(_toml_string(settings.logs_level)),
        "requests = {0}".format(_toml_bool(settings.request_logging)),
        "responses = {0}".format(_toml_bool(settings.response_logging)),
        "",
    ]
    return "\n".join(lines)


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)

    if config_root.exists():
        if not force:
            raise ProjectConfigError(
                "configuration directory already exists: {0}".format(config_root)
            )
        shutil.rmtree(config_root)

    (config_root / LOGS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    defaults = Settings(project_root=project_root, config_root=config_root)
    (config_root / CONFIG_FILE_NAME).write_text(_render_project_config(defaults), encoding="utf-8")
    return config_root


def load_project_config(config_root: Optional[Path] = None, workspace_dir: Optional[Path] = None) -> Dict[str, Any]:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not resolved_root.is_dir() or not config_file.is_file():
        raise ProjectConfigError(
            "missing project config directory: {0}; run `clirelay init` first".format(resolved_root)
        )

    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ProjectConfigError("invalid config file: {0}".format(config_file)) from exc

    if not isinstance(parsed, dict):
        raise ProjectConfigError("invalid config file: {0}".format(config_file))
    return parsed


def load_settings(
    workspace_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> Settings:
    """Resolve settings from defaults, the project config file, env, then explicit overrides."""

    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    settings = Settings(project_root=project_root, config_root=config_root)

    if project_config_exists(project_root):
        settings = _apply_config_data(settings, load_project_config(config_root=config_root))

    env_data = _env_config_data(os.environ if environ is None else environ)
    if env_data:
        settings = _apply_config_data(settings, env_data)

    known = {item.name for item in fields(Settings)}
    explicit = {key: value for key, value in overrides.items() if key in known and value is not None}
    if explicit:
        settings = replace(settings, **explicit)
    return settings
