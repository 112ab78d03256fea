"""Request/response translation between chat dialects and the backend protocol."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from clirelay.backend.errors import InvalidRequestError, ResponseParseError
from clirelay.kernel.types import (
    EVENT_ASSISTANT,
    EVENT_SYSTEM,
    EVENT_UNRECOGNIZED,
    INPUT_MODE_LINE_PROTOCOL,
    INPUT_MODE_TEXT,
    OUTPUT_MODE_JSON,
    OUTPUT_MODE_STREAM,
    OUTPUT_MODE_TEXT,
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_USER,
    STOP_REASON_DEFAULT,
    AggregatedResponse,
    BackendEvent,
    ChatRequest,
    StreamChunk,
    Turn,
)


SYSTEM_LABEL = "System: "
ASSISTANT_LABEL = "Assistant: "
TURN_SEPARATOR = "\n\n"

LINE_TYPE_USER = "user"
LINE_TYPE_CONTROL = "control"

ANTHROPIC_END_TURN = "end_turn"
ANTHROPIC_MAX_TOKENS = "max_tokens"

CONTROL_EVENT_TYPES = ("system", "result")


# -- request phase -----------------------------------------------------------


def to_backend_input(request: ChatRequest, input_mode: str) -> str:
    if not request.turns:
        raise InvalidRequestError(
            "messages field is required and must be a non-empty array",
            code="invalid_messages",
        )

    if input_mode == INPUT_MODE_TEXT:
        parts: List[str] = []
        for turn in request.turns:
            if turn.role == ROLE_SYSTEM:
                parts.append(SYSTEM_LABEL + turn.content)
            elif turn.role == ROLE_ASSISTANT:
                parts.append(ASSISTANT_LABEL + turn.content)
            else:
                parts.append(turn.content)
        return TURN_SEPARATOR.join(parts)

    if input_mode == INPUT_MODE_LINE_PROTOCOL:
        lines: List[str] = []
        for turn in request.turns:
            line_type = LINE_TYPE_USER if turn.role == ROLE_USER else LINE_TYPE_CONTROL
            lines.append(
                json.dumps(
                    {"type": line_type, "role": turn.role, "content": turn.content},
                    ensure_ascii=False,
                )
            )
        return "\n".join(lines)

    raise InvalidRequestError(
        "Invalid input_format: {0}".format(input_mode),
        code="invalid_input_format",
    )


def read_line_protocol(payload: str) -> List[Turn]:
    """Recover the ordered turns from line-protocol input."""

    turns: List[Turn] = []
    for line in payload.splitlines():
        if not line.strip():
            continue
        item = json.loads(line)
        if not isinstance(item, dict):
            continue
        turns.append(Turn(role=str(item.get("role") or ""), content=str(item.get("content") or "")))
    return turns


# -- response phase ----------------------------------------------------------


def _join_text_blocks(blocks: List[Any], separator: str) -> str:
    parts: List[str] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if str(block.get("type") or "") != "text":
            continue
        text = block.get("text")
        if isinstance(text, str):
            parts.append(text)
    return separator.join(parts)


def _content_from_result(payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("result")
    if isinstance(value, str) and value:
        return value
    return None


def _content_from_content(payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("content")
    if isinstance(value, str) and value:
        return value
    if isinstance(value, list):
        return _join_text_blocks(value, "\n")
    return None


def _content_from_text(payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("text")
    if isinstance(value, str) and value:
        return value
    return None


def _content_from_message(payload: Dict[str, Any]) -> Optional[str]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    value = message.get("content")
    if isinstance(value, str) and value:
        return value
    if isinstance(value, list) and value:
        return _join_text_blocks(value, "")
    return None


# Ordered: the first extractor that yields a value wins.
CONTENT_EXTRACTORS = (
    ("result", _content_from_result),
    ("content", _content_from_content),
    ("text", _content_from_text),
    ("message.content", _content_from_message),
)


def extract_content(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return ""
    for _name, extractor in CONTENT_EXTRACTORS:
        found = extractor(payload)
        if found is not None:
            return found
    return ""


def _safe_token_count(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _created_of(payload: Dict[str, Any], fallback: int) -> int:
    value = payload.get("created")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return int(fallback or 0)


def to_aggregated_response(
    raw: Any,
    model: str,
    request_id: str,
    created: int = 0,
) -> AggregatedResponse:
    payload = raw if isinstance(raw, dict) else {}
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    stop_reason = payload.get("stop_reason")
    if not isinstance(stop_reason, str) or not stop_reason.strip():
        stop_reason = STOP_REASON_DEFAULT
    return AggregatedResponse(
        content=extract_content(raw),
        stop_reason=stop_reason,
        input_tokens=_safe_token_count(usage.get("input_tokens")),
        output_tokens=_safe_token_count(usage.get("output_tokens")),
        model=str(model or ""),
        request_id=str(request_id or ""),
        created=_created_of(payload, created),
    )


def read_buffered_output(stdout: str, output_mode: str) -> Any:
    """Decode a completed stdout buffer into the backend's terminal value."""

    if output_mode == OUTPUT_MODE_TEXT:
        return stdout.strip()

    if output_mode == OUTPUT_MODE_STREAM:
        events: List[Dict[str, Any]] = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                events.append(value)
        for event in reversed(events):
            if event.get("type") == "result":
                return event
        if events:
            return events[-1]
        raise ResponseParseError("backend emitted no JSON events", raw_output=stdout)

    if output_mode != OUTPUT_MODE_JSON:
        raise InvalidRequestError(
            "Invalid output_format: {0}".format(output_mode),
            code="invalid_output_format",
        )
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(
            "Failed to parse backend response: {0}".format(exc),
            raw_output=stdout,
        ) from exc


# -- outward projections -----------------------------------------------------


def to_openai_response(response: AggregatedResponse) -> Dict[str, Any]:
    return {
        "id": response.completion_id,
        "object": "chat.completion",
        "created": response.created,
        "model": response.model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": response.content},
                "finish_reason": response.stop_reason,
            }
        ],
        "usage": {
            "prompt_tokens": response.input_tokens,
            "completion_tokens": response.output_tokens,
            "total_tokens": response.total_tokens,
        },
    }


def anthropic_stop_reason(stop_reason: str) -> str:
    if stop_reason == STOP_REASON_DEFAULT:
        return ANTHROPIC_END_TURN
    return ANTHROPIC_MAX_TOKENS


def openai_stop_from_anthropic(stop_reason: str) -> str:
    if stop_reason == ANTHROPIC_END_TURN:
        return STOP_REASON_DEFAULT
    return "length"


def to_anthropic_response(response: AggregatedResponse) -> Dict[str, Any]:
    return {
        "id": "msg-{0}".format(response.completion_id),
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": response.content}],
        "model": response.model,
        "stop_reason": anthropic_stop_reason(response.stop_reason),
        "stop_sequence": None,
        "usage": {
            "input_tokens": response.input_tokens,
            "output_tokens": response.output_tokens,
        },
    }


def to_rca_response(response: AggregatedResponse) -> Dict[str, Any]:
    return {
        "id": response.completion_id,
        "analysis": response.content,
        "model": response.model,
        "created": response.created,
        "usage": {
            "prompt_tokens": response.input_tokens,
            "completion_tokens": response.output_tokens,
            "total_tokens": response.total_tokens,
        },
    }


# -- stream events -----------------------------------------------------------


def parse_backend_event(value: Any) -> BackendEvent:
    if not isinstance(value, dict):
        return BackendEvent(kind=EVENT_UNRECOGNIZED, raw={"value": value})

    event_type = str(value.get("type") or "")
    if event_type == "assistant" and isinstance(value.get("message"), dict):
        message = value["message"]
        blocks = message.get("content")
        content = _join_text_blocks(blocks, "") if isinstance(blocks, list) else ""
        stop_reason = message.get("stop_reason")
        return BackendEvent(
            kind=EVENT_ASSISTANT,
            content=content,
            stop_reason=stop_reason if isinstance(stop_reason, str) and stop_reason else None,
            raw=value,
        )
    if event_type in CONTROL_EVENT_TYPES:
        return BackendEvent(kind=EVENT_SYSTEM, subtype=str(value.get("subtype") or ""), raw=value)
    return BackendEvent(kind=EVENT_UNRECOGNIZED, raw=value)


def to_stream_chunk(event: BackendEvent, model: str, request_id: str, created: int) -> StreamChunk:
    return StreamChunk(
        chunk_id="chatcmpl-{0}".format(request_id),
        model=model,
        created=created,
        content=event.content,
        stop_reason=event.stop_reason,
    )


def to_openai_chunk(chunk: StreamChunk) -> Dict[str, Any]:
    return {
        "id": chunk.chunk_id,
        "object": "chat.completion.chunk",
        "created": chunk.created,
        "model": chunk.model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": chunk.content},
                "finish_reason": chunk.stop_reason,
            }
        ],
    }
