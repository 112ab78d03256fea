"""Backend subprocess runner: argv, stdio wiring, timeout escalation, exit classification.

Each invocation owns exactly one subprocess. The runner never retries; every
failure is classified once into the ``clirelay.backend.errors`` taxonomy.

Termination is shared by two triggers, the wall-clock timeout and an early
consumer stop (client disconnect). Both call ``_begin_termination``, which
settles the handle state once, sends a graceful signal, and arms a short
escalation timer that sends a forceful kill if the process is still alive.
"""

from __future__ import annotations

import asyncio
import json
import signal
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from clirelay.backend.errors import (
    BackendExecutionError,
    BackendUnavailableError,
    ExecutionTimeoutError,
    InputWriteError,
    ResponseParseError,
)
from clirelay.backend.translator import read_buffered_output, to_aggregated_response
from clirelay.kernel.debug_log import EventSink
from clirelay.kernel.types import (
    INPUT_MODE_TEXT,
    OUTPUT_MODE_JSON,
    OUTPUT_MODE_STREAM,
    AggregatedResponse,
    ChatRequest,
    TerminationState,
    now_ms,
    now_s,
)


READ_CHUNK_BYTES = 64 * 1024
DEFAULT_KILL_GRACE_MS = 5000


def build_command(
    command: str,
    request: ChatRequest,
    *,
    default_model: str,
    extra_args: Sequence[str] = (),
) -> List[str]:
    argv = [command] + list(extra_args) + ["--print", "--dangerously-skip-permissions"]

    if request.input_mode != INPUT_MODE_TEXT:
        argv.extend(["--input-format", request.input_mode])

    argv.extend(["--output-format", request.output_mode])
    # Line-delimited output is only emitted in verbose mode.
    if request.output_mode == OUTPUT_MODE_STREAM:
        argv.append("--verbose")

    argv.extend(["--model", request.model or default_model])

    settings: Dict[str, Any] = {}
    if request.max_tokens:
        settings["maxTokens"] = request.max_tokens
    if request.temperature is not None:
        settings["temperature"] = request.temperature
    if settings:
        argv.extend(["--settings", json.dumps(settings, separators=(",", ":"))])
    return argv


def _describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


@dataclass
class ExecutionHandle:
    """State of one subprocess invocation, owned by the runner call that created it."""

    request_id: str
    argv: List[str]
    timeout_ms: int
    started_ms: int = field(default_factory=now_ms)
    process: Optional[asyncio.subprocess.Process] = None
    stdout: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)
    state: str = TerminationState.RUNNING
    write_error: Optional[BaseException] = None
    timers: List[asyncio.TimerHandle] = field(default_factory=list)

    def settle(self, state: str) -> bool:
        """Set the terminal state once; later calls lose and return False."""

        if self.state != TerminationState.RUNNING:
            return False
        self.state = state
        return True

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def duration_ms(self) -> int:
        return now_ms() - self.started_ms

    def send_signal(self, sig: int) -> bool:
        if not self.is_alive:
            return False
        try:
            self.process.send_signal(sig)  # type: ignore[union-attr]
        except ProcessLookupError:
            # Already reaped between the check and the signal.
            return False
        return True

    def cancel_timers(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers = []

    def stdout_text(self) -> str:
        return bytes(self.stdout).decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return bytes(self.stderr).decode("utf-8", errors="replace")


class ProcessRunner:
    def __init__(
        self,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._kill_grace_ms = max(1, int(kill_grace_ms))
        self._event_sink = event_sink

    @property
    def kill_grace_ms(self) -> int:
        return self._kill_grace_ms

    async def run(
        self,
        argv: Sequence[str],
        stdin_payload: str,
        timeout_ms: int,
        *,
        request_id: str,
        output_mode: str = OUTPUT_MODE_JSON,
        model: str = "",
    ) -> AggregatedResponse:
        """Run to completion and return the aggregated response (buffered mode)."""

        handle = await self._spawn(argv, timeout_ms, request_id)
        process = handle.process
        assert process is not None and process.stdout is not None and process.stderr is not None
        try:
            await asyncio.gather(
                self._write_stdin(handle, stdin_payload),
                self._drain(handle, process.stdout, handle.stdout, "backend.stdout.chunk"),
                self._drain(handle, process.stderr, handle.stderr, "backend.stderr.chunk"),
            )
            returncode = await process.wait()
        finally:
            await self._reap(handle)

        self._classify_exit(handle, returncode)
        stdout = handle.stdout_text()
        try:
            raw = read_buffered_output(stdout, output_mode)
        except ResponseParseError:
            self._emit(
                "backend.parse_failed",
                {"request_id": request_id, "stdout_prefix": stdout[:500], "output_mode": output_mode},
            )
            raise
        return to_aggregated_response(raw, model=model, request_id=request_id, created=now_s())

    async def open_channel(
        self,
        argv: Sequence[str],
        stdin_payload: str,
        timeout_ms: int,
        *,
        request_id: str,
    ) -> "OutputChannel":
        """Spawn and expose stdout as a live channel (streaming mode)."""

        handle = await self._spawn(argv, timeout_ms, request_id)
        process = handle.process
        assert process is not None and process.stderr is not None
        background = [
            asyncio.ensure_future(self._write_stdin(handle, stdin_payload)),
            asyncio.ensure_future(
                self._drain(handle, process.stderr, handle.stderr, "backend.stderr.chunk")
            ),
        ]
        return OutputChannel(self, handle, background)

    async def _spawn(self, argv: Sequence[str], timeout_ms: int, request_id: str) -> ExecutionHandle:
        handle = ExecutionHandle(request_id=request_id, argv=list(argv), timeout_ms=int(timeout_ms))
        self._emit("backend.args", {"request_id": request_id, "argv": list(argv)})
        try:
            handle.process = await asyncio.create_subprocess_exec(
                *handle.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            # Missing executable, permission denied, exec format errors.
            handle.settle(TerminationState.SPAWN_FAILED)
            self._emit("backend.spawn_failed", {"request_id": request_id, "error": str(exc)})
            raise BackendUnavailableError(
                "Failed to spawn backend process: {0}".format(exc),
                request_id=request_id,
                command=handle.argv[0] if handle.argv else "",
            ) from exc

        loop = asyncio.get_running_loop()
        handle.timers.append(loop.call_later(handle.timeout_ms / 1000.0, self._on_timeout, handle))
        self._emit(
            "backend.spawned",
            {"request_id": request_id, "pid": handle.process.pid, "timeout_ms": handle.timeout_ms},
        )
        return handle

    async def _write_stdin(self, handle: ExecutionHandle, payload: str) -> None:
        process = handle.process
        if process is None or process.stdin is None:
            return
        data = payload.encode("utf-8")
        try:
            if data:
                process.stdin.write(data)
                await process.stdin.drain()
            process.stdin.close()
            await process.stdin.wait_closed()
        except OSError as exc:
            self._fail_stdin(handle, exc)
            return
        self._emit("backend.stdin.written", {"request_id": handle.request_id, "length": len(data)})

    def _fail_stdin(self, handle: ExecutionHandle, exc: BaseException) -> None:
        handle.write_error = exc
        self._emit(
            "backend.stdin.failed",
            {"request_id": handle.request_id, "error": _describe_error(exc)},
        )
        self._begin_termination(handle, TerminationState.FAILED, reason="stdin_failed")

    async def _drain(
        self,
        handle: ExecutionHandle,
        stream: asyncio.StreamReader,
        buffer: bytearray,
        event_type: str,
    ) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            buffer.extend(chunk)
            self._emit(event_type, {"request_id": handle.request_id, "size": len(chunk)})

    def _on_timeout(self, handle: ExecutionHandle) -> None:
        if not handle.is_alive:
            return
        self._emit(
            "backend.timeout",
            {"request_id": handle.request_id, "timeout_ms": handle.timeout_ms},
        )
        self._begin_termination(handle, TerminationState.TIMED_OUT, reason="timeout")

    def _begin_termination(self, handle: ExecutionHandle, state: str, reason: str) -> bool:
        if not handle.settle(state):
            return False
        if handle.send_signal(signal.SIGTERM):
            self._emit(
                "backend.terminate",
                {"request_id": handle.request_id, "reason": reason, "signal": "SIGTERM"},
            )
        loop = asyncio.get_running_loop()
        handle.timers.append(loop.call_later(self._kill_grace_ms / 1000.0, self._escalate, handle))
        return True

    def _escalate(self, handle: ExecutionHandle) -> None:
        if handle.send_signal(signal.SIGKILL):
            self._emit("backend.kill", {"request_id": handle.request_id, "signal": "SIGKILL"})

    async def _reap(self, handle: ExecutionHandle) -> None:
        """Make sure the process is gone and every timer is cancelled."""

        process = handle.process
        if process is not None and process.returncode is None:
            self._begin_termination(handle, TerminationState.KILLED, reason="abandoned")
            try:
                await asyncio.wait_for(process.wait(), timeout=self._kill_grace_ms / 1000.0)
            except asyncio.TimeoutError:
                handle.send_signal(signal.SIGKILL)
                await process.wait()
        handle.cancel_timers()

    def _classify_exit(self, handle: ExecutionHandle, returncode: Optional[int]) -> None:
        code = int(returncode if returncode is not None else -1)
        self._emit(
            "backend.exit",
            {
                "request_id": handle.request_id,
                "code": code,
                "state": handle.state,
                "duration_ms": handle.duration_ms,
                "stdout_length": len(handle.stdout),
            },
        )

        if handle.state == TerminationState.TIMED_OUT:
            raise ExecutionTimeoutError(
                "Backend process timeout after {0}ms".format(handle.timeout_ms),
                request_id=handle.request_id,
                timeout_ms=handle.timeout_ms,
            )
        # A positive code means the backend exited on its own; a signal death is negative.
        if handle.write_error is not None and code > 0:
            raise BackendExecutionError(
                code,
                handle.stderr_text().strip() or handle.stdout_text().strip(),
                request_id=handle.request_id,
                stdin_error=_describe_error(handle.write_error),
            )
        if handle.write_error is not None:
            raise InputWriteError(
                "Failed to write to backend stdin: {0}".format(_describe_error(handle.write_error)),
                request_id=handle.request_id,
                exit_code=code,
                stderr=handle.stderr_text()[:500] or None,
            )
        if handle.state == TerminationState.KILLED:
            raise BackendExecutionError(
                code,
                "backend process was terminated before completion",
                request_id=handle.request_id,
            )
        if code != 0:
            handle.settle(TerminationState.FAILED)
            raise BackendExecutionError(
                code,
                handle.stderr_text().strip() or handle.stdout_text().strip(),
                request_id=handle.request_id,
            )
        handle.settle(TerminationState.COMPLETED)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(str(event_type), dict(payload))
        except Exception:
            # Logging sink must not break the invocation path.
            return


class OutputChannel:
    """Live stdout of a streaming invocation.

    Iterate it for raw stdout chunks, then ``await wait()`` for the exit
    classification. ``close()`` must always run; it terminates and reaps the
    subprocess if the consumer stopped early.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        handle: ExecutionHandle,
        background: List["asyncio.Future[None]"],
    ) -> None:
        self._runner = runner
        self._handle = handle
        self._background = background
        self._closed = False

    @property
    def handle(self) -> ExecutionHandle:
        return self._handle

    @property
    def request_id(self) -> str:
        return self._handle.request_id

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        process = self._handle.process
        if process is None or process.stdout is None:
            return
        while True:
            chunk = await process.stdout.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            self._runner._emit(
                "backend.stdout.chunk",
                {"request_id": self._handle.request_id, "size": len(chunk)},
            )
            yield chunk

    async def wait(self) -> int:
        """Wait for exit and raise the classified ExecutionError on failure."""

        process = self._handle.process
        assert process is not None
        try:
            await asyncio.gather(*self._background)
            returncode = await process.wait()
        finally:
            await self.close()
        self._runner._classify_exit(self._handle, returncode)
        return int(returncode)

    def terminate(self, reason: str = "client_disconnected") -> bool:
        return self._runner._begin_termination(self._handle, TerminationState.KILLED, reason=reason)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._runner._reap(self._handle)
        for task in self._background:
            if not task.done():
                task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
