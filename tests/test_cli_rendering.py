from __future__ import annotations

from io import StringIO

from clirelay.kernel.types import AggregatedResponse
from clirelay.ui.render import (
    preview_rendered_usage,
    render_assistant_panel,
    render_doctor_text,
    render_notice,
)


def _response() -> AggregatedResponse:
    return AggregatedResponse(
        content="line one\nline two",
        stop_reason="stop",
        input_tokens=10,
        output_tokens=4,
        model="sonnet",
        request_id="abc",
        created=1,
    )


def test_assistant_panel_non_tty_is_plain_text():
    stream = StringIO()
    render_assistant_panel("line one\nline two", stream=stream, is_tty=False)

    assert stream.getvalue() == "line one\nline two\n"


def test_assistant_panel_tty_uses_rich_panel():
    stream = StringIO()
    render_assistant_panel("hello panel", stream=stream, is_tty=True)
    text = stream.getvalue()

    assert "Assistant" in text
    assert "hello panel" in text
    assert "╭" in text


def test_usage_lines_present():
    rendered = preview_rendered_usage(_response())

    assert "id=chatcmpl-abc model=sonnet stop_reason=stop" in rendered
    assert "input_tokens=10 output_tokens=4 total_tokens=14" in rendered


def test_notice_and_doctor_text():
    assert render_notice("error", "boom") == "Error: boom"
    assert render_notice("other", "x") == "Info: x"

    text = render_doctor_text({"backend": {"command": "claude"}, "logs": {"logs_rotated_files": []}})
    assert "command=claude" in text
    assert "resolved_path=missing" in text
    assert "logs_rotated_files=0" in text
