"""Relay a backend's line-delimited JSON output as server-sent event frames."""

from __future__ import annotations

import asyncio
import codecs
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from clirelay.backend.errors import ExecutionError, error_envelope
from clirelay.backend.runner import OutputChannel, ProcessRunner
from clirelay.backend.translator import parse_backend_event, to_openai_chunk, to_stream_chunk
from clirelay.kernel.debug_log import EventSink
from clirelay.kernel.types import EVENT_ASSISTANT, EVENT_SYSTEM, now_s


DONE_FRAME = "data: [DONE]\n\n"

FrameSink = Callable[[str], Awaitable[None]]


def encode_frame(payload: Dict[str, Any]) -> str:
    return "data: {0}\n\n".format(json.dumps(payload, ensure_ascii=False))


class LineSplitter:
    """Incremental bytes-to-lines splitter.

    A trailing partial line, including a multi-byte character split across
    chunks, is held until the next chunk completes it.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> List[str]:
        text = self._pending + self._decoder.decode(data)
        lines = text.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


class StreamingBridge:
    def __init__(
        self,
        runner: ProcessRunner,
        argv: Sequence[str],
        stdin_payload: str,
        timeout_ms: int,
        *,
        request_id: str,
        model: str,
        event_sink: Optional[EventSink] = None,
        created: Optional[int] = None,
    ) -> None:
        self._runner = runner
        self._argv = list(argv)
        self._stdin_payload = stdin_payload
        self._timeout_ms = int(timeout_ms)
        self._request_id = request_id
        self._model = model
        self._event_sink = event_sink
        self._created = int(created if created is not None else now_s())
        self._chunk_count = 0
        self._invalid_lines = 0

    @property
    def request_id(self) -> str:
        return self._request_id

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    async def frames(self) -> AsyncIterator[str]:
        """Yield wire frames; always ends with DONE_FRAME unless the consumer stops first."""

        try:
            channel = await self._runner.open_channel(
                self._argv,
                self._stdin_payload,
                self._timeout_ms,
                request_id=self._request_id,
            )
        except ExecutionError as exc:
            self._emit("stream.failed", {"error": str(exc), "code": exc.code})
            yield encode_frame(error_envelope(exc))
            yield DONE_FRAME
            return

        failure: Optional[ExecutionError] = None
        drained = False
        try:
            splitter = LineSplitter()
            async for chunk in channel:
                for line in splitter.feed(chunk):
                    frame = self._frame_for_line(line)
                    if frame is not None:
                        yield frame
            for line in splitter.flush():
                frame = self._frame_for_line(line)
                if frame is not None:
                    yield frame
            try:
                await channel.wait()
            except ExecutionError as exc:
                failure = exc
            drained = True
        finally:
            if not drained:
                self._stop_early(channel)
            await asyncio.shield(channel.close())

        if failure is not None:
            self._emit("stream.failed", {"error": str(failure), "code": failure.code})
            yield encode_frame(error_envelope(failure))
        else:
            self._emit(
                "stream.completed",
                {"chunks": self._chunk_count, "invalid_lines": self._invalid_lines},
            )
        yield DONE_FRAME

    async def pump(self, sink: FrameSink) -> int:
        """Write every frame to ``sink``; returns the number of frames written."""

        written = 0
        frames = self.frames()
        try:
            async for frame in frames:
                await sink(frame)
                written += 1
        finally:
            await frames.aclose()
        return written

    def _stop_early(self, channel: OutputChannel) -> None:
        if channel.terminate("client_disconnected"):
            self._emit("stream.client.disconnected", {"chunks": self._chunk_count})

    def _frame_for_line(self, line: str) -> Optional[str]:
        if not line.strip():
            return None
        try:
            value = json.loads(line)
        except json.JSONDecodeError as exc:
            self._invalid_lines += 1
            self._emit("stream.line.invalid", {"error": str(exc), "line_prefix": line[:200]})
            return None

        event = parse_backend_event(value)
        if event.kind == EVENT_ASSISTANT:
            self._chunk_count += 1
            chunk = to_stream_chunk(event, self._model, self._request_id, self._created)
            return encode_frame(to_openai_chunk(chunk))
        if event.kind == EVENT_SYSTEM:
            self._emit("stream.control", {"subtype": event.subtype, "type": event.raw.get("type")})
        return None

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        data = dict(payload)
        data["request_id"] = self._request_id
        try:
            self._event_sink(event_type, data)
        except Exception:
            return
