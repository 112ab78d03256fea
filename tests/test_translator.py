from __future__ import annotations

import json

import pytest

from clirelay.backend.errors import InvalidRequestError, ResponseParseError
from clirelay.backend.translator import (
    anthropic_stop_reason,
    extract_content,
    openai_stop_from_anthropic,
    parse_backend_event,
    read_buffered_output,
    read_line_protocol,
    to_aggregated_response,
    to_anthropic_response,
    to_backend_input,
    to_openai_chunk,
    to_openai_response,
    to_stream_chunk,
)
from clirelay.kernel.types import AggregatedResponse, ChatRequest, Turn


def _request(*pairs):
    return ChatRequest.from_messages([{"role": role, "content": content} for role, content in pairs])


def test_text_input_labels_system_and_assistant_turns():
    request = _request(
        ("system", "be terse"),
        ("user", "2+2?"),
        ("assistant", "4"),
        ("user", "and 3+3?"),
    )

    text = to_backend_input(request, "text")

    assert text == "System: be terse\n\n2+2?\n\nAssistant: 4\n\nand 3+3?"


def test_line_protocol_tags_user_turns_apart_from_others():
    request = _request(("system", "rules"), ("user", "hi"), ("assistant", "hello"))

    lines = [json.loads(line) for line in to_backend_input(request, "stream-json").splitlines()]

    assert [line["type"] for line in lines] == ["control", "user", "control"]
    assert [line["role"] for line in lines] == ["system", "user", "assistant"]


def test_line_protocol_round_trip_preserves_order_and_content():
    request = _request(
        ("system", "multi\nline system"),
        ("user", 'quotes " and unicode ✓'),
        ("assistant", "{\"json\": true}"),
        ("user", "last"),
    )

    turns = read_line_protocol(to_backend_input(request, "stream-json"))

    assert turns == request.turns
    assert all(isinstance(turn, Turn) for turn in turns)


def test_empty_turns_rejected_in_every_mode():
    for mode in ("text", "stream-json"):
        with pytest.raises(InvalidRequestError) as exc_info:
            to_backend_input(ChatRequest(turns=[]), mode)
        assert exc_info.value.code == "invalid_messages"
        assert exc_info.value.http_status == 400


def test_unknown_input_mode_rejected():
    with pytest.raises(InvalidRequestError) as exc_info:
        to_backend_input(_request(("user", "hi")), "xml")
    assert exc_info.value.code == "invalid_input_format"


def test_extract_content_follows_priority_order():
    assert extract_content({"result": "r", "content": "c", "text": "t"}) == "r"
    assert extract_content({"content": "c", "text": "t"}) == "c"
    assert extract_content({"text": "t", "message": {"content": "m"}}) == "t"
    assert extract_content({"message": {"content": "m"}}) == "m"
    assert extract_content({"usage": {}}) == ""
    assert extract_content("bare string") == "bare string"
    assert extract_content(None) == ""


def test_extract_content_joins_only_text_blocks():
    payload = {
        "content": [
            {"type": "text", "text": "first"},
            {"type": "tool_use", "name": "grep"},
            {"type": "text", "text": "second"},
        ]
    }
    assert extract_content(payload) == "first\nsecond"

    nested = {"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}
    assert extract_content(nested) == "ab"


def test_aggregated_response_scenario_with_usage():
    raw = {"result": "4", "usage": {"input_tokens": 5, "output_tokens": 1}}

    response = to_aggregated_response(raw, model="sonnet", request_id="abc", created=100)

    assert response.content == "4"
    assert response.stop_reason == "stop"
    assert (response.input_tokens, response.output_tokens, response.total_tokens) == (5, 1, 6)
    assert response.completion_id == "chatcmpl-abc"


def test_aggregated_response_defaults_missing_fields():
    response = to_aggregated_response({}, model="sonnet", request_id="r1")

    assert response.content == ""
    assert response.stop_reason == "stop"
    assert response.input_tokens == 0
    assert response.output_tokens == 0


def test_aggregated_response_is_idempotent():
    raw = {
        "result": "same",
        "stop_reason": "max_tokens",
        "usage": {"input_tokens": "7", "output_tokens": None},
    }

    first = to_aggregated_response(raw, model="m", request_id="r", created=5)
    second = to_aggregated_response(raw, model="m", request_id="r", created=5)

    assert first == second
    assert json.dumps(to_openai_response(first)) == json.dumps(to_openai_response(second))
    assert first.input_tokens == 7


def test_projections_agree_on_content_and_stop_reason():
    for stop_reason in ("stop", "max_tokens", "length"):
        response = AggregatedResponse(
            content="shared text",
            stop_reason=stop_reason,
            input_tokens=3,
            output_tokens=4,
            model="sonnet",
            request_id="rid",
            created=42,
        )
        openai = to_openai_response(response)
        anthropic = to_anthropic_response(response)

        assert openai["choices"][0]["message"]["content"] == anthropic["content"][0]["text"]
        assert anthropic["usage"] == {"input_tokens": 3, "output_tokens": 4}
        assert openai["usage"]["total_tokens"] == 7
        assert anthropic["id"] == "msg-" + openai["id"]
        finish = openai["choices"][0]["finish_reason"]
        assert (finish == "stop") == (anthropic["stop_reason"] == "end_turn")


def test_stop_reason_mapping_holds_in_both_directions():
    assert anthropic_stop_reason("stop") == "end_turn"
    assert anthropic_stop_reason("length") == "max_tokens"
    assert openai_stop_from_anthropic("end_turn") == "stop"
    assert openai_stop_from_anthropic("max_tokens") == "length"
    assert openai_stop_from_anthropic(anthropic_stop_reason("stop")) == "stop"


def test_read_buffered_output_by_mode():
    assert read_buffered_output("  hi there \n", "text") == "hi there"
    assert read_buffered_output('{"result": "x"}', "json") == {"result": "x"}

    stream_stdout = "\n".join(
        [
            json.dumps({"type": "system", "subtype": "init"}),
            "garbage",
            json.dumps({"type": "result", "result": "final"}),
            json.dumps({"type": "assistant", "message": {"content": []}}),
        ]
    )
    assert read_buffered_output(stream_stdout, "stream-json")["result"] == "final"


def test_read_buffered_output_reports_parse_failures():
    with pytest.raises(ResponseParseError) as exc_info:
        read_buffered_output("x" * 800, "json")
    assert exc_info.value.raw_prefix == "x" * 500
    assert exc_info.value.http_status == 502

    with pytest.raises(ResponseParseError):
        read_buffered_output("no events here\n", "stream-json")

    with pytest.raises(InvalidRequestError) as exc_info:
        read_buffered_output("{}", "yaml")
    assert exc_info.value.code == "invalid_output_format"


def test_parse_backend_event_variants():
    assistant = parse_backend_event(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Hel"},
                    {"type": "tool_use", "name": "x"},
                    {"type": "text", "text": "lo"},
                ],
                "stop_reason": "end_turn",
            },
        }
    )
    assert assistant.kind == "assistant"
    assert assistant.content == "Hello"
    assert assistant.stop_reason == "end_turn"

    control = parse_backend_event({"type": "system", "subtype": "init"})
    assert control.kind == "system"
    assert control.subtype == "init"

    assert parse_backend_event({"type": "result"}).kind == "system"
    assert parse_backend_event({"type": "user"}).kind == "unrecognized"
    assert parse_backend_event([1, 2]).kind == "unrecognized"


def test_stream_chunk_projection():
    event = parse_backend_event({"type": "assistant", "message": {"content": [{"type": "text", "text": "d"}]}})
    chunk = to_stream_chunk(event, model="sonnet", request_id="abc", created=9)

    payload = to_openai_chunk(chunk)

    assert payload["id"] == "chatcmpl-abc"
    assert payload["object"] == "chat.completion.chunk"
    assert payload["choices"][0]["delta"] == {"content": "d"}
    assert payload["choices"][0]["finish_reason"] is None
