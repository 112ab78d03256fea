"""Core typed contracts shared by the translator, runner, bridge, and service."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional


ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ALLOWED_ROLES = (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT)

INPUT_MODE_TEXT = "text"
INPUT_MODE_LINE_PROTOCOL = "stream-json"
OUTPUT_MODE_TEXT = "text"
OUTPUT_MODE_JSON = "json"
OUTPUT_MODE_STREAM = "stream-json"

STOP_REASON_DEFAULT = "stop"

EVENT_ASSISTANT = "assistant"
EVENT_SYSTEM = "system"
EVENT_UNRECOGNIZED = "unrecognized"


class TerminationState:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"
    SPAWN_FAILED = "spawn_failed"


def now_ms() -> int:
    return int(time.time() * 1000)


def now_s() -> int:
    return int(time.time())


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Turn:
    role: str
    content: str


@dataclass
class ChatRequest:
    """One inbound chat request, independent of the HTTP dialect it came from."""

    turns: List[Turn]
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    input_mode: str = INPUT_MODE_TEXT
    output_mode: str = OUTPUT_MODE_JSON

    @classmethod
    def from_messages(
        cls,
        messages: Iterable[Mapping[str, Any]],
        **options: Any,
    ) -> "ChatRequest":
        turns = [
            Turn(role=str(item.get("role") or ""), content=str(item.get("content") or ""))
            for item in messages
        ]
        return cls(turns=turns, **options)


@dataclass
class AggregatedResponse:
    content: str
    stop_reason: str = STOP_REASON_DEFAULT
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    request_id: str = ""
    created: int = 0

    @property
    def total_tokens(self) -> int:
        return int(self.input_tokens) + int(self.output_tokens)

    @property
    def completion_id(self) -> str:
        return "chatcmpl-{0}".format(self.request_id)


@dataclass
class StreamChunk:
    chunk_id: str
    model: str
    created: int
    content: str
    stop_reason: Optional[str] = None


@dataclass
class BackendEvent:
    """One decoded line of the backend's line-delimited output."""

    kind: str
    content: str = ""
    stop_reason: Optional[str] = None
    subtype: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)
