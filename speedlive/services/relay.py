from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from speedlive.common.logging_config import TRACE, TRACE_ENABLED, current_session
from speedlive.constants import HEARTBEAT_INTERVAL_S, SERVER_ID, STOP_GRACE_S
from speedlive.services.speedtest_runner import (
    SpeedtestProcessHandle,
    create_default_config,
    open_speedtest,
    resolve_speedtest_binary,
)
from speedlive.state import Phase, advance

BINARY_MISSING_MESSAGE = "speedtest binary not found on server. Live test unavailable."

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
HEARTBEAT_COMMENT = ": keep-alive\n\n"


def now_ms() -> int:
    return int(time.time() * 1000)


def bandwidth_to_mbps(bandwidth: float) -> float:
    """Convert a bytes/second rate into megabits/second."""
    return bandwidth * 8 / 1e6


# ------------------------ Events ------------------------


class Heartbeat:
    """Keep-alive marker; carries no event and never touches session state."""

    def __repr__(self) -> str:
        return "HEARTBEAT"


HEARTBEAT = Heartbeat()


@dataclass(frozen=True)
class StartEvent:
    server_id: str
    session_id: str
    t: int = field(default_factory=now_ms)
    type: str = field(default="start", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "serverId": self.server_id,
            "sessionId": self.session_id,
            "t": self.t,
        }


@dataclass(frozen=True)
class ProgressEvent:
    mbps: float
    phase: str = "download"
    t: int = field(default_factory=now_ms)
    type: str = field(default="progress", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "phase": self.phase, "mbps": self.mbps, "t": self.t}


@dataclass(frozen=True)
class FinalEvent:
    down_mbps: float | None
    up_mbps: float | None
    raw: dict[str, Any]
    t: int = field(default_factory=now_ms)
    type: str = field(default="final", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "downMbps": self.down_mbps,
            "upMbps": self.up_mbps,
            "json": self.raw,
            "t": self.t,
        }


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    type: str = field(default="error", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


@dataclass(frozen=True)
class AbortedEvent:
    type: str = field(default="aborted", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


RelayEvent = Union[StartEvent, ProgressEvent, FinalEvent, ErrorEvent, AbortedEvent]
TERMINAL_EVENTS = (FinalEvent, ErrorEvent, AbortedEvent)


def encode_sse(item: RelayEvent | Heartbeat) -> str:
    """Frame one relay item for a text/event-stream response."""
    if isinstance(item, Heartbeat):
        return HEARTBEAT_COMMENT
    return f"data: {json.dumps(item.to_dict())}\n\n"


# ------------------------ Parsing ------------------------


class LineBuffer:
    """Accumulates decoded output and hands back complete, stripped lines."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buf = ""

    @property
    def pending(self) -> str:
        return self._buf

    def feed(self, chunk: bytes) -> list[str]:
        self._buf += self._decoder.decode(chunk)
        lines: list[str] = []
        while True:
            idx = self._buf.find("\n")
            if idx < 0:
                break
            line = self._buf[:idx].strip()
            self._buf = self._buf[idx + 1 :]
            if line:
                lines.append(line)
        return lines

    def flush(self) -> list[str]:
        """Return the unterminated tail (if any) once the stream has ended."""
        self._buf += self._decoder.decode(b"", final=True)
        tail, self._buf = self._buf.strip(), ""
        return [tail] if tail else []


def parse_record(line: str) -> dict[str, Any] | None:
    """Decode one output line; anything but a JSON object yields None."""
    try:
        record = json.loads(line)
    except ValueError:
        return None
    return record if isinstance(record, dict) else None


def _bandwidth(record: dict[str, Any], key: str) -> float | None:
    section = record.get(key)
    if not isinstance(section, dict):
        return None
    bw = section.get("bandwidth")
    if isinstance(bw, bool) or not isinstance(bw, (int, float)):
        return None
    return bw


class PhaseTracker:
    """Turns speedtest records into relay events while tracking the session phase."""

    def __init__(self) -> None:
        self.phase = Phase.IDLE
        self.last_download_mbps: float | None = None
        self.last_upload_mbps: float | None = None

    def conclude(self, target: Phase) -> None:
        self.phase = advance(self.phase, target)

    def classify(self, record: dict[str, Any]) -> RelayEvent | None:
        if self.phase.terminal:
            return None
        kind = record.get("type")

        if kind == "download":
            bw = _bandwidth(record, "download")
            # Late download samples are dropped once the upload phase began
            if bw is None or self.phase is Phase.UPLOADING:
                return None
            self.phase = advance(self.phase, Phase.DOWNLOADING)
            mbps = bandwidth_to_mbps(bw)
            self.last_download_mbps = mbps
            return ProgressEvent(mbps=mbps)

        if kind == "upload":
            bw = _bandwidth(record, "upload")
            if bw is None:
                return None
            self.phase = advance(self.phase, Phase.UPLOADING)
            self.last_upload_mbps = bandwidth_to_mbps(bw)
            return None

        if kind == "result":
            down = _bandwidth(record, "download")
            up = _bandwidth(record, "upload")
            self.phase = advance(self.phase, Phase.FINISHED)
            return FinalEvent(
                down_mbps=bandwidth_to_mbps(down) if down is not None else self.last_download_mbps,
                up_mbps=bandwidth_to_mbps(up) if up is not None else self.last_upload_mbps,
                raw=record,
            )

        return None


# ------------------------ Session ------------------------


class RelaySession:
    """
    One live speedtest relayed as an ordered stream of events.

    ``events()`` spawns the CLI, yields a ``StartEvent`` followed by progress
    and exactly one terminal event (final, error or aborted). ``HEARTBEAT``
    markers are interleaved every ``heartbeat_interval`` seconds. Closing the
    iterator early, cancelling its consumer or calling ``abort()`` kills the
    child process.
    """

    def __init__(
        self,
        server_id: str | int | None = None,
        binary: str | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_S,
        stop_grace: float = STOP_GRACE_S,
    ) -> None:
        self.server_id = str(server_id if server_id is not None else SERVER_ID)
        self.binary = binary
        self.heartbeat_interval = heartbeat_interval
        self.stop_grace = stop_grace
        self.session_id = str(uuid.uuid4())
        self.created_at = time.time()

        self.tracker = PhaseTracker()
        self._buffer = LineBuffer()
        self._queue: asyncio.Queue[RelayEvent | Heartbeat] = asyncio.Queue()
        self._handle: SpeedtestProcessHandle | None = None
        self._consumed = False

    @property
    def phase(self) -> Phase:
        return self.tracker.phase

    @property
    def pid(self) -> int | None:
        return self._handle["proc"].pid if self._handle else None

    @property
    def returncode(self) -> int | None:
        return self._handle["proc"].returncode if self._handle else None

    async def events(self) -> AsyncIterator[RelayEvent | Heartbeat]:
        if self._consumed:
            raise RuntimeError("RelaySession.events() can only be consumed once")
        self._consumed = True
        # Tags this session's log records, including those of the tasks it spawns
        current_session.set(self.session_id)

        if self.phase.terminal:
            # Aborted before the process was ever started
            while not self._queue.empty():
                yield self._queue.get_nowait()
            return

        cfg = create_default_config(self.binary, self.server_id, "jsonl")
        if resolve_speedtest_binary(cfg["binary"]) is None:
            logging.error("speedtest binary %r not found", cfg["binary"])
            self.tracker.conclude(Phase.ERRORED)
            yield ErrorEvent(BINARY_MISSING_MESSAGE)
            return

        stack = contextlib.AsyncExitStack()
        try:
            self._handle = await stack.enter_async_context(
                open_speedtest(cfg, self._on_stdout, grace=self._grace)
            )
        except OSError as e:
            logging.error("speedtest spawn error: %s", e)
            self.tracker.conclude(Phase.ERRORED)
            yield ErrorEvent(str(e) or e.__class__.__name__)
            return

        async with stack:
            watcher = asyncio.create_task(self._watch_exit(self._handle))
            heartbeat = (
                asyncio.create_task(self._heartbeat())
                if self.heartbeat_interval > 0
                else None
            )
            try:
                yield StartEvent(
                    server_id=self.server_id,
                    session_id=self.session_id,
                    t=int(self.created_at * 1000),
                )
                while True:
                    item = await self._queue.get()
                    yield item
                    if isinstance(item, TERMINAL_EVENTS):
                        break
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                watcher.cancel()
                if not self.phase.terminal:
                    # Consumer went away without a terminal event
                    self.abort()

    def abort(self) -> None:
        """Queue an ``aborted`` event (best effort) and kill the child. Idempotent."""
        if not self.phase.terminal:
            logging.info(
                "Session %s aborted by client",
                self.session_id,
                extra={"session_id": self.session_id},
            )
            self.tracker.conclude(Phase.ABORTED)
            self._queue.put_nowait(AbortedEvent())
        if self._handle is not None and self._handle["proc"].returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._handle["proc"].kill()

    def _grace(self) -> float:
        return self.stop_grace if self.phase is Phase.FINISHED else 0.0

    def _on_stdout(self, chunk: bytes) -> None:
        for line in self._buffer.feed(chunk):
            self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        record = parse_record(line)
        if record is None:
            logging.debug("Ignoring non-JSON speedtest line: %.200s", line)
            return
        if TRACE_ENABLED:
            logging.log(TRACE, "speedtest record: %s", record.get("type"))
        event = self.tracker.classify(record)
        if event is not None:
            self._queue.put_nowait(event)

    def _fail(self, message: str) -> None:
        if self.phase.terminal:
            return
        self.tracker.conclude(Phase.ERRORED)
        self._queue.put_nowait(ErrorEvent(message))

    async def _watch_exit(self, handle: SpeedtestProcessHandle) -> None:
        stdout_task = handle["stdout_task"]
        # asyncio.wait keeps our own cancellation away from the pump task
        await asyncio.wait([stdout_task])
        if stdout_task.cancelled():
            return
        error = stdout_task.exception()
        if error is not None:
            logging.error("speedtest output error: %s", error)
            self._fail(f"speedtest output error: {error}")
            return

        for line in self._buffer.flush():
            self._handle_line(line)

        code = await handle["proc"].wait()
        logging.info("speedtest child closed, code=%s", code)
        self._fail(f"speedtest exited with code {code} before reporting a result")

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._queue.put_nowait(HEARTBEAT)
