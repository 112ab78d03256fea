from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

from clirelay.config import Settings, initialize_project_config, resolve_project_config_root


FAKE_BACKEND = Path(__file__).resolve().parent / "fake_backend.py"


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True, exist_ok=True)

    monkeypatch.chdir(workspace)
    for name in list(os.environ):
        if name.startswith("CLIRELAY_"):
            monkeypatch.delenv(name, raising=False)
    initialize_project_config(workspace_dir=workspace)

    return {
        "workspace": workspace,
        "config_root": resolve_project_config_root(workspace),
    }


@pytest.fixture
def fake_argv():
    """argv prefix that runs the fake backend under the current interpreter."""

    def _make(scenario: str, *extra: str) -> List[str]:
        return [sys.executable, str(FAKE_BACKEND), scenario, *extra]

    return _make


@pytest.fixture
def backend_settings(tmp_path: Path):
    def _make(scenario: str, *extra: str, **overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "project_root": tmp_path,
            "config_root": tmp_path / ".clirelay",
            "backend_command": sys.executable,
            "backend_extra_args": [str(FAKE_BACKEND), scenario, *extra],
            "timeout_ms": 10000,
            "kill_grace_ms": 500,
            "logs_enabled": False,
            "logs_console": False,
            "rate_limit_enabled": False,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def __call__(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append({"event_type": event_type, "payload": dict(payload)})

    def types(self) -> List[str]:
        return [item["event_type"] for item in self.events]

    def first(self, event_type: str) -> Dict[str, Any]:
        for item in self.events:
            if item["event_type"] == event_type:
                return item["payload"]
        raise AssertionError("event not recorded: {0}".format(event_type))


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
