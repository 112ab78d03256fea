from __future__ import annotations

import json

from clirelay.backend.runner import build_command
from clirelay.kernel.types import ChatRequest


def _request(**options):
    return ChatRequest.from_messages([{"role": "user", "content": "hi"}], **options)


def test_build_command_minimal_json_output():
    argv = build_command("claude", _request(), default_model="sonnet")

    assert argv == [
        "claude",
        "--print",
        "--dangerously-skip-permissions",
        "--output-format",
        "json",
        "--model",
        "sonnet",
    ]


def test_build_command_stream_output_requires_verbose():
    argv = build_command("claude", _request(output_mode="stream-json"), default_model="sonnet")

    assert argv[argv.index("--output-format") + 1] == "stream-json"
    assert "--verbose" in argv
    assert "--verbose" not in build_command("claude", _request(output_mode="text"), default_model="sonnet")


def test_build_command_input_format_only_for_line_protocol():
    text_argv = build_command("claude", _request(), default_model="sonnet")
    line_argv = build_command("claude", _request(input_mode="stream-json"), default_model="sonnet")

    assert "--input-format" not in text_argv
    assert line_argv[line_argv.index("--input-format") + 1] == "stream-json"


def test_build_command_settings_blob_only_when_set():
    assert "--settings" not in build_command("claude", _request(), default_model="sonnet")

    both = build_command("claude", _request(max_tokens=256, temperature=0.0), default_model="sonnet")
    assert json.loads(both[both.index("--settings") + 1]) == {"maxTokens": 256, "temperature": 0.0}

    only_temperature = build_command("claude", _request(temperature=0.7), default_model="sonnet")
    assert json.loads(only_temperature[-1]) == {"temperature": 0.7}


def test_build_command_prefers_request_model_and_keeps_extra_args_first():
    argv = build_command(
        "/usr/bin/python3",
        _request(model="claude-opus"),
        default_model="sonnet",
        extra_args=["backend.py", "scenario"],
    )

    assert argv[:4] == ["/usr/bin/python3", "backend.py", "scenario", "--print"]
    assert argv[argv.index("--model") + 1] == "claude-opus"


def test_build_command_is_deterministic():
    request = _request(model="m", max_tokens=10, temperature=0.5, input_mode="stream-json", output_mode="stream-json")

    assert build_command("claude", request, default_model="x") == build_command("claude", request, default_model="x")
