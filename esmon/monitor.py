#!/usr/bin/env python3
"""
Monitor Session for the Embedded Serial Monitor.

One session streams one port: it takes the port lock, optionally
negotiates the baud rate, spawns the serial reader subprocess and feeds
every line to the ring buffer, the health classifier and the broadcaster
until a stop condition fires.

State machine:
    starting -> [baud_detecting] -> streaming -> stopping -> resolved

Everything that can change a session (a line, the child exiting, the time
limit, a stop request) is posted to one asyncio.Queue and applied by a
single consumer task, so transitions happen strictly in arrival order.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Pattern, Sequence, Union

from .baud import BaudNegotiator
from .broadcaster import EventBroadcaster
from .device_health import DeviceHealthMonitor
from .errors import InvalidPatternError, PortBusyError, SessionStartError
from .event_emitter import EventEmitter
from .implementations import RealClock
from .install_log import InstallLogStore, parse_registered_info
from .interfaces import ClockInterface
from .log_sanitize import sanitize_serial_bytes
from .port_buffer import PortBufferManager
from .port_lock import PortLockRegistry, PortState

logger = logging.getLogger(__name__)

MONITOR_OWNER = "monitor"
_READ_LIMIT = 1 << 20  # longest line accepted from the reader
_RAW_CHUNK = 4096


class SessionState(Enum):
    """Lifecycle of a monitor session."""
    STARTING = "starting"
    BAUD_DETECTING = "baud_detecting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    RESOLVED = "resolved"


class StopReason(Enum):
    """Why a session ended."""
    TIME_LIMIT = "time_limit"
    LINE_LIMIT = "line_limit"
    PATTERN_MATCH = "pattern_match"
    MANUAL = "manual"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class MonitorOptions:
    """What to monitor and when to stop. Zero limits mean unlimited."""
    port: str
    baud: int = 115200
    auto_baud: bool = True
    raw: bool = False
    max_seconds: float = 0
    max_lines: int = 0
    stop_pattern: Optional[str] = None
    detect_reboot: bool = True

    def validate(self) -> Optional[Pattern[str]]:
        """
        Check the options and compile the stop pattern.

        Raises:
            ValueError: for a missing port or negative limits.
            InvalidPatternError: when stop_pattern does not compile.
        """
        if not self.port:
            raise ValueError("port is required")
        if self.baud <= 0:
            raise ValueError(f"baud must be positive, got {self.baud}")
        if self.max_seconds < 0 or self.max_lines < 0:
            raise ValueError("max_seconds and max_lines must not be negative")
        if not self.stop_pattern:
            return None
        try:
            return re.compile(self.stop_pattern)
        except re.error as e:
            raise InvalidPatternError(self.stop_pattern, str(e)) from e


@dataclass
class MonitorSummary:
    """Terminal statistics of a session, shared by every stop() caller."""
    ok: bool
    token: str
    port: str
    baud: int
    lines: int
    elapsed_seconds: float
    reboot_detected: bool
    last_line: Optional[str]
    exit_code: Optional[int]
    reason: StopReason
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "token": self.token,
            "port": self.port,
            "baud": self.baud,
            "lines": self.lines,
            "elapsedSeconds": self.elapsed_seconds,
            "rebootDetected": self.reboot_detected,
            "lastLine": self.last_line,
            "exitCode": self.exit_code,
            "reason": self.reason.value,
            "error": self.error,
        }


# Session inputs. Only the consumer task reacts to these.

@dataclass(frozen=True)
class LineReceived:
    data: bytes
    stream: str = "stdout"


@dataclass(frozen=True)
class ProcessExited:
    code: Optional[int]


@dataclass(frozen=True)
class TimerFired:
    pass


@dataclass(frozen=True)
class StopRequested:
    reason: StopReason = StopReason.MANUAL


SessionInput = Union[LineReceived, ProcessExited, TimerFired, StopRequested]
ReaderCommand = Callable[[str, int, bool], Sequence[str]]


def default_reader_command(python: str = sys.executable) -> ReaderCommand:
    """argv for `python -m esmon.reader PORT BAUD [--raw]`."""

    def build(port: str, baud: int, raw: bool) -> list[str]:
        argv = [python, "-m", "esmon.reader", port, str(baud)]
        if raw:
            argv.append("--raw")
        return argv

    return build


class MonitorSession:
    """
    Streams one port until a stop condition fires.

    Usage:
        session = MonitorSession(options, token, locks=..., buffers=...,
                                 health=..., broadcaster=...)
        await session.start()
        summary = await session.wait()
    """

    def __init__(
        self,
        options: MonitorOptions,
        token: str,
        *,
        locks: PortLockRegistry,
        buffers: PortBufferManager,
        health: DeviceHealthMonitor,
        broadcaster: EventBroadcaster,
        negotiator: Optional[BaudNegotiator] = None,
        reader_command: Optional[ReaderCommand] = None,
        install_log: Optional[InstallLogStore] = None,
        emitter: Optional[EventEmitter] = None,
        clock: Optional[ClockInterface] = None,
        stop_grace: float = 1.0,
    ):
        self.options = options
        self.token = token
        self._locks = locks
        self._buffers = buffers
        self._health = health
        self._broadcaster = broadcaster
        self._negotiator = negotiator
        self._reader_command = reader_command or default_reader_command()
        self._install_log = install_log
        self._emitter = emitter
        self._clock = clock or RealClock()
        self._stop_grace = stop_grace

        self.state = SessionState.STARTING
        self.baud = options.baud
        self.lines = 0
        self.last_line: Optional[str] = None
        self.reboot_detected = False
        self.started_at: Optional[str] = None
        self.stop_reason: Optional[StopReason] = None

        self._stop_regex: Optional[Pattern[str]] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done: Optional[asyncio.Future] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: list[asyncio.Task] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._start_monotonic: Optional[float] = None
        self._last_stderr: Optional[str] = None

    @property
    def port(self) -> str:
        return self.options.port

    @property
    def done(self) -> "asyncio.Future[MonitorSummary]":
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
        return self._done

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Lock the port, negotiate the baud rate and spawn the reader.

        Raises:
            ValueError / InvalidPatternError: bad options; nothing allocated.
            PortBusyError: another owner holds the port.
            SessionStartError: the reader could not be spawned.
        """
        self._stop_regex = self.options.validate()
        done = self.done

        result = self._locks.try_lock(self.port, MONITOR_OWNER)
        if not result.success:
            raise PortBusyError(self.port, result.error or "Port busy", result.previous_owner)
        self._locks.set_state(self.port, PortState.MONITORING, {"token": self.token, "baud": self.baud})

        try:
            if self.options.auto_baud and self._negotiator is not None:
                await self._negotiate_baud()
            await self._spawn()
        except BaseException:
            self._release_lock()
            self.state = SessionState.RESOLVED
            done.cancel()
            raise

        self.state = SessionState.STREAMING
        self._start_monotonic = time.monotonic()
        self.started_at = self._clock.now().isoformat()
        loop = asyncio.get_running_loop()
        if self.options.max_seconds > 0:
            self._timer = loop.call_later(self.options.max_seconds, self._post, TimerFired())
        self._tasks.append(loop.create_task(self._run(), name=f"monitor-{self.token[:8]}"))

        logger.info("Monitoring %s @ %d (token %s)", self.port, self.baud, self.token)
        if self._emitter:
            self._emitter.emit("session_started", {"token": self.token, "port": self.port, "baud": self.baud})

    async def _negotiate_baud(self) -> None:
        self.state = SessionState.BAUD_DETECTING
        detection = await self._negotiator.detect(self.port, self.baud)
        if detection is not None:
            self.baud = detection.baud
            line = f"[monitor] auto-baud selected {detection.baud} (score {detection.score:.2f})"
            self._broadcast_line(line, line_number=0, preview=detection.preview)
        else:
            self._broadcast_line(f"[monitor] auto-baud fallback to {self.baud}", line_number=0)

    async def _spawn(self) -> None:
        argv = list(self._reader_command(self.port, self.baud, self.options.raw))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_READ_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to spawn reader for %s: %s", self.port, e)
            raise SessionStartError(f"Failed to start serial reader for {self.port}: {e}") from e

        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._watch_process(), name=f"reader-{self.token[:8]}"))

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _post(self, item: SessionInput) -> None:
        self._queue.put_nowait(item)

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        raw = self.options.raw and name == "stdout"
        while True:
            if raw:
                data = await stream.read(_RAW_CHUNK)
            else:
                try:
                    data = await stream.readline()
                except ValueError:
                    logger.warning("Dropping over-long line from %s reader", self.port)
                    continue
            if not data:
                return
            self._post(LineReceived(data, name))

    async def _watch_process(self) -> None:
        """Forward both pipes, then report the exit code after the last line."""
        proc = self._process
        await asyncio.gather(self._pump(proc.stdout, "stdout"), self._pump(proc.stderr, "stderr"))
        code = await proc.wait()
        self._post(ProcessExited(code))

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if isinstance(item, LineReceived):
                    if item.stream == "stderr":
                        self._handle_stderr(item.data)
                    elif self.options.raw:
                        self._handle_chunk(item.data)
                    else:
                        self._handle_line(item.data)
                elif isinstance(item, TimerFired):
                    self._begin_stop(StopReason.TIME_LIMIT)
                elif isinstance(item, StopRequested):
                    self._begin_stop(item.reason)
                elif isinstance(item, ProcessExited):
                    self._resolve(item.code)
                    return
        except Exception as e:
            logger.exception("Monitor session %s failed", self.token)
            self.stop_reason = self.stop_reason or StopReason.ERROR
            self._kill_now()
            self._resolve(None, error=str(e))

    def _handle_line(self, data: bytes) -> None:
        text = sanitize_serial_bytes(data)
        entry = self._buffers.add_line(self.port, text)
        classification = self._health.process_line(self.port, entry)

        # Once stopping, lines still reach the buffer and classifier but the
        # session's own counters stay as they were at the stop trigger.
        if self.state != SessionState.STREAMING:
            return

        self.lines += 1
        self.last_line = text
        if classification.is_reboot and self.options.detect_reboot:
            self.reboot_detected = True
        self._locks.touch(self.port)
        self._broadcast_line(text, line_number=self.lines)
        self._record_install_info(text)

        if self._stop_regex is not None and self._stop_regex.search(text):
            self._begin_stop(StopReason.PATTERN_MATCH)
        elif self.options.max_lines > 0 and self.lines >= self.options.max_lines:
            self._begin_stop(StopReason.LINE_LIMIT)

    def _handle_chunk(self, data: bytes) -> None:
        if self.state != SessionState.STREAMING:
            return
        self.lines += 1
        self._locks.touch(self.port)
        self._broadcaster.broadcast({
            "type": "serial",
            "token": self.token,
            "port": self.port,
            "line": base64.b64encode(data).decode("ascii"),
            "encoding": "base64",
            "raw": True,
            "lineNumber": self.lines,
            "baud": self.baud,
            "timestamp": self._clock.now().isoformat(),
        })
        if self.options.max_lines > 0 and self.lines >= self.options.max_lines:
            self._begin_stop(StopReason.LINE_LIMIT)

    def _handle_stderr(self, data: bytes) -> None:
        text = sanitize_serial_bytes(data)
        if not text:
            return
        self._last_stderr = text
        logger.debug("Reader stderr (%s): %s", self.port, text)
        self._broadcast_line(text, line_number=self.lines, stream="stderr")

    def _broadcast_line(self, line: str, line_number: int, stream: Optional[str] = None, **extra: Any) -> None:
        event = {
            "type": "serial",
            "token": self.token,
            "port": self.port,
            "line": line,
            "raw": False,
            "lineNumber": line_number,
            "baud": self.baud,
            "timestamp": self._clock.now().isoformat(),
        }
        if stream:
            event["stream"] = stream
        event.update(extra)
        self._broadcaster.broadcast(event)

    def _record_install_info(self, text: str) -> None:
        if self._install_log is None:
            return
        info = parse_registered_info(text)
        if not info:
            return
        try:
            key = self._install_log.add_entry(self.port, info)
        except OSError as e:
            logger.error("Failed to save install log for %s: %s", self.port, e)
            return
        self._broadcaster.broadcast({"type": "install_log", "port": self.port, "key": key, "entry": info})

    # ------------------------------------------------------------------
    # Stop / resolve
    # ------------------------------------------------------------------

    def _begin_stop(self, reason: StopReason) -> None:
        if self.state != SessionState.STREAMING:
            return
        self.stop_reason = reason
        self.state = SessionState.STOPPING
        self._cancel_timer()
        logger.info("Stopping %s (%s)", self.port, reason.value)

        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        self._kill_timer = asyncio.get_running_loop().call_later(self._stop_grace, self._kill_now)

    def _kill_now(self) -> None:
        proc = self._process
        if proc is not None and proc.returncode is None:
            logger.warning("Reader for %s ignored terminate; killing", self.port)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _elapsed(self) -> float:
        if self._start_monotonic is None:
            return 0.0
        return round(time.monotonic() - self._start_monotonic, 3)

    def _release_lock(self) -> bool:
        """Drop the port lock if this session still holds it.

        Returns False when another owner has taken the port since, e.g.
        after this session's lock expired; their entry is left untouched.
        """
        info = self._locks.get_state(self.port)
        if info.locked_by == MONITOR_OWNER and info.metadata.get("token") not in (None, self.token):
            logger.warning("Lock on %s now belongs to session %s", self.port, info.metadata.get("token"))
            return False
        return self._locks.release(self.port, owner=MONITOR_OWNER)

    def _resolve(self, exit_code: Optional[int], error: Optional[str] = None) -> None:
        if self.state == SessionState.RESOLVED:
            return
        self._cancel_timer()
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

        if self.stop_reason is None:
            self.stop_reason = StopReason.ERROR if exit_code not in (0, None) else StopReason.COMPLETED
        if self.stop_reason == StopReason.ERROR and error is None:
            error = self._last_stderr or f"Serial reader exited with code {exit_code}"
        self.state = SessionState.RESOLVED

        if self._release_lock() and self.stop_reason == StopReason.ERROR:
            self._locks.set_state(self.port, PortState.ERROR, {"error": error, "token": self.token})

        summary = MonitorSummary(
            ok=self.stop_reason != StopReason.ERROR,
            token=self.token,
            port=self.port,
            baud=self.baud,
            lines=self.lines,
            elapsed_seconds=self._elapsed(),
            reboot_detected=self.reboot_detected,
            last_line=self.last_line,
            exit_code=exit_code,
            reason=self.stop_reason,
            error=error,
        )
        self._broadcaster.broadcast({
            "type": "serial_end",
            "token": self.token,
            "port": self.port,
            "reason": summary.reason.value,
            "elapsedSeconds": summary.elapsed_seconds,
            "lines": summary.lines,
            "rebootDetected": summary.reboot_detected,
            "lastLine": summary.last_line,
            "exitCode": summary.exit_code,
        })
        if self._emitter:
            self._emitter.emit(
                "session_ended",
                summary.to_dict(),
                level="error" if summary.reason == StopReason.ERROR else "info",
            )
        logger.info(
            "Session %s on %s resolved: %s (%d lines, %.1fs)",
            self.token, self.port, summary.reason.value, summary.lines, summary.elapsed_seconds,
        )
        if not self.done.done():
            self.done.set_result(summary)

    # ------------------------------------------------------------------
    # Public control
    # ------------------------------------------------------------------

    async def stop(self, reason: StopReason = StopReason.MANUAL) -> MonitorSummary:
        """Request a stop; every caller gets the same summary."""
        if not self.done.done():
            self._post(StopRequested(reason))
        return await asyncio.shield(self.done)

    async def wait(self) -> MonitorSummary:
        return await asyncio.shield(self.done)

    def snapshot(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "port": self.port,
            "requestedBaud": self.options.baud,
            "baud": self.baud,
            "state": self.state.value,
            "reason": self.stop_reason.value if self.stop_reason else None,
            "startedAt": self.started_at,
            "elapsedSeconds": self._elapsed(),
            "lines": self.lines,
            "lastLine": self.last_line,
            "rebootDetected": self.reboot_detected,
        }
