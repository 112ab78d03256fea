from __future__ import annotations

import json
import sys
from pathlib import Path

from typer.testing import CliRunner

import clirelay.cli


def _combined_output(result) -> str:
    try:
        return result.stdout + result.stderr
    except Exception:
        return result.stdout


def _use_fake_backend(workspace: Path, scenario: str) -> None:
    fake_backend = Path(__file__).resolve().parent / "fake_backend.py"
    config_file = workspace / ".clirelay" / "config.toml"
    config_file.write_text(
        "\n".join(
            [
                "[backend]",
                "command = {0}".format(json.dumps(sys.executable)),
                "extra_args = [{0}, {1}]".format(json.dumps(str(fake_backend)), json.dumps(scenario)),
                "timeout_ms = 10000",
                "kill_grace_ms = 500",
                "",
                "[logs]",
                "console = false",
                "",
            ]
        ),
        encoding="utf-8",
    )


def test_help_and_init_work_without_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    help_result = runner.invoke(clirelay.cli.app, ["--help"])
    assert help_result.exit_code == 0
    for name in ("init", "serve", "doctor", "ask"):
        assert name in help_result.stdout

    init_result = runner.invoke(clirelay.cli.app, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / ".clirelay" / "config.toml").is_file()
    assert (tmp_path / ".clirelay" / "logs").is_dir()


def test_init_fails_when_config_exists_without_force(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    assert runner.invoke(clirelay.cli.app, ["init"]).exit_code == 0

    second = runner.invoke(clirelay.cli.app, ["init"])
    assert second.exit_code == 2
    assert "already exists" in _combined_output(second)

    rebuilt = runner.invoke(clirelay.cli.app, ["init", "--force"])
    assert rebuilt.exit_code == 0


def test_doctor_json_format(isolated_env):
    runner = CliRunner()

    result = runner.invoke(clirelay.cli.app, ["doctor", "--format", "json"])

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["config_exists"] is True
    assert parsed["backend"]["command"] == "claude"
    assert parsed["backend"]["kill_grace_ms"] == 5000
    assert "resolved_path" in parsed["backend"]
    assert parsed["logs"]["logs_enabled"] is True


def test_doctor_text_format_and_bad_format(isolated_env):
    runner = CliRunner()

    text = runner.invoke(clirelay.cli.app, ["doctor", "--format", "text"])
    assert text.exit_code == 0
    assert "Doctor Report" in text.stdout
    assert "Backend" in text.stdout
    assert "Logs" in text.stdout

    bad = runner.invoke(clirelay.cli.app, ["doctor", "--format", "yaml"])
    assert bad.exit_code == 2


def test_ask_renders_response_and_usage(isolated_env):
    _use_fake_backend(isolated_env["workspace"], "result")
    runner = CliRunner()

    result = runner.invoke(clirelay.cli.app, ["ask", "2+2?"])

    assert result.exit_code == 0, _combined_output(result)
    assert "4" in result.stdout
    assert "input_tokens=5 output_tokens=1 total_tokens=6" in result.stdout


def test_ask_stream_writes_deltas(isolated_env):
    _use_fake_backend(isolated_env["workspace"], "stream")
    runner = CliRunner()

    result = runner.invoke(clirelay.cli.app, ["ask", "--stream", "hi"])

    assert result.exit_code == 0, _combined_output(result)
    assert "Hello" in result.stdout


def test_ask_reports_backend_failure(isolated_env):
    _use_fake_backend(isolated_env["workspace"], "fail")
    runner = CliRunner()

    result = runner.invoke(clirelay.cli.app, ["ask", "hi"])

    assert result.exit_code == 1
    output = _combined_output(result)
    assert "rate limited" in output
    assert "clirelay doctor" in output


def test_ask_rejects_unknown_output_format(isolated_env):
    _use_fake_backend(isolated_env["workspace"], "result")
    runner = CliRunner()

    result = runner.invoke(clirelay.cli.app, ["ask", "--output-format", "xml", "hi"])

    assert result.exit_code == 2
    assert "output_format" in _combined_output(result)
