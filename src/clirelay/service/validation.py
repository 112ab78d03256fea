"""Inbound request body validation for the HTTP dialects."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from clirelay.backend.errors import InvalidRequestError
from clirelay.kernel.debug_log import EventSink
from clirelay.kernel.types import (
    ALLOWED_ROLES,
    INPUT_MODE_TEXT,
    OUTPUT_MODE_JSON,
    OUTPUT_MODE_STREAM,
    ROLE_USER,
    ChatRequest,
)


def validate_messages(messages: Any, *, code: str = "invalid_messages", message: str = "") -> List[Dict[str, str]]:
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError(
            message or "messages field is required and must be a non-empty array",
            code=code,
        )

    out: List[Dict[str, str]] = []
    for index, item in enumerate(messages):
        role = item.get("role") if isinstance(item, dict) else None
        content = item.get("content") if isinstance(item, dict) else None
        text = _content_text(content) if content else ""
        if not role or not text:
            raise InvalidRequestError(
                "Message at index {0} missing required fields 'role' or 'content'".format(index),
                code="invalid_message_format",
            )
        if role not in ALLOWED_ROLES:
            raise InvalidRequestError(
                "Message at index {0} has invalid role '{1}'. Must be 'system', 'user', or 'assistant'".format(
                    index, role
                ),
                code="invalid_role",
            )
        out.append({"role": str(role), "content": text})
    return out


def _content_text(content: Any) -> str:
    # Anthropic-style block lists carry text in typed blocks.
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "\n".join(parts)
    return str(content)


def resolve_formats(
    body: Mapping[str, Any],
    allowed_input: Sequence[str],
    allowed_output: Sequence[str],
) -> Dict[str, str]:
    input_format = body.get("input_format") or INPUT_MODE_TEXT
    output_format = body.get("output_format") or (OUTPUT_MODE_STREAM if body.get("stream") else OUTPUT_MODE_JSON)

    if input_format not in allowed_input:
        raise InvalidRequestError(
            "Invalid input_format. Must be one of: {0}".format(", ".join(allowed_input)),
            code="invalid_input_format",
        )
    if output_format not in allowed_output:
        raise InvalidRequestError(
            "Invalid output_format. Must be one of: {0}".format(", ".join(allowed_output)),
            code="invalid_output_format",
        )
    return {"input_format": str(input_format), "output_format": str(output_format)}


def _optional_int(body: Mapping[str, Any], key: str) -> Optional[int]:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) <= 0:
        raise InvalidRequestError("{0} must be a positive integer".format(key), code="invalid_{0}".format(key))
    return int(value)


def _optional_float(body: Mapping[str, Any], key: str) -> Optional[float]:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequestError("{0} must be a number".format(key), code="invalid_{0}".format(key))
    return float(value)


def warn_on_model(model: Any, request_id: str, event_sink: Optional[EventSink]) -> None:
    if not model or "claude" in str(model) or event_sink is None:
        return
    event_sink("request.model.warning", {"request_id": request_id, "model": str(model)})


def parse_chat_completion(
    body: Mapping[str, Any],
    allowed_input: Sequence[str],
    allowed_output: Sequence[str],
) -> ChatRequest:
    messages = validate_messages(body.get("messages"))
    formats = resolve_formats(body, allowed_input, allowed_output)
    return ChatRequest.from_messages(
        messages,
        model=body.get("model") or None,
        max_tokens=_optional_int(body, "max_tokens"),
        temperature=_optional_float(body, "temperature"),
        input_mode=formats["input_format"],
        output_mode=formats["output_format"],
    )


def parse_anthropic_messages(
    body: Mapping[str, Any],
    default_max_tokens: int,
    default_temperature: float,
) -> ChatRequest:
    messages = validate_messages(
        body.get("messages"),
        code="missing_messages",
        message="messages array is required",
    )
    # The top-level system prompt becomes a leading system turn.
    system = body.get("system")
    if isinstance(system, (str, list)) and system:
        messages.insert(0, {"role": "system", "content": _content_text(system)})
    temperature = _optional_float(body, "temperature")
    return ChatRequest.from_messages(
        messages,
        model=body.get("model") or None,
        max_tokens=_optional_int(body, "max_tokens") or default_max_tokens,
        temperature=default_temperature if temperature is None else temperature,
        input_mode=INPUT_MODE_TEXT,
        output_mode=OUTPUT_MODE_JSON,
    )


def parse_rca(
    body: Mapping[str, Any],
    default_max_tokens: int,
    default_temperature: float,
) -> ChatRequest:
    prompt = body.get("prompt")
    if not isinstance(prompt, str) or not prompt:
        raise InvalidRequestError("prompt field is required", code="missing_prompt")
    temperature = _optional_float(body, "temperature")
    return ChatRequest.from_messages(
        [{"role": ROLE_USER, "content": prompt}],
        model=body.get("model") or None,
        max_tokens=_optional_int(body, "max_tokens") or default_max_tokens,
        temperature=default_temperature if temperature is None else temperature,
        input_mode=INPUT_MODE_TEXT,
        output_mode=OUTPUT_MODE_JSON,
    )
