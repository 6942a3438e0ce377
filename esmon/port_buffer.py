"""
Per-port ring buffers and pattern captures.

Every line a session reads is appended to its port's ring buffer, then fed
to any capture waiting on that port. A capture resolves exactly once: on
the first pattern match, when it has collected max_lines, on timeout, or
when cancelled.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Optional, Pattern, Union

from .errors import InvalidPatternError
from .interfaces import ClockInterface

logger = logging.getLogger(__name__)

CAPTURE_REASONS = ("pattern_matched", "timeout", "max_lines", "cancelled")


@dataclass(frozen=True)
class BufferedLine:
    """One buffered serial line."""
    timestamp: str
    line_number: int
    line: str

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "lineNumber": self.line_number, "line": self.line}


@dataclass
class CaptureResult:
    """Terminal outcome of a capture."""
    success: bool
    reason: str
    captured_lines: list[BufferedLine]
    elapsed_ms: int
    matched_line: Optional[BufferedLine] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.reason,
            "capturedLines": [l.to_dict() for l in self.captured_lines],
            "matchedLine": self.matched_line.to_dict() if self.matched_line else None,
            "elapsedMs": self.elapsed_ms,
        }


@dataclass
class CaptureHandle:
    """What start_capture() hands back: an id plus a future for the result."""
    capture_id: str
    future: "asyncio.Future[CaptureResult]"

    def __await__(self):
        return self.future.__await__()


@dataclass
class _CaptureCondition:
    id: str
    port: str
    pattern: Pattern[str]
    timeout_ms: int
    max_lines: int
    start_time: float
    future: "asyncio.Future[CaptureResult]"
    captured_lines: list[BufferedLine] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None
    resolved: bool = False


class PortRingBuffer:
    """
    Fixed-capacity FIFO of BufferedLine.

    Line numbers come from a counter that never resets, so they keep
    increasing across eviction and clear().
    """

    def __init__(self, clock: ClockInterface, max_size: int = 1000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._clock = clock
        self._lines: Deque[BufferedLine] = deque(maxlen=max_size)
        self._total_lines = 0

    @property
    def max_size(self) -> int:
        return self._lines.maxlen or 0

    @property
    def total_lines(self) -> int:
        return self._total_lines

    def push(self, text: str) -> BufferedLine:
        self._total_lines += 1
        entry = BufferedLine(
            timestamp=self._clock.now().isoformat(),
            line_number=self._total_lines,
            line=text,
        )
        self._lines.append(entry)
        return entry

    def get_all(self) -> list[BufferedLine]:
        return list(self._lines)

    def get_recent(self, count: int) -> list[BufferedLine]:
        if count <= 0:
            return []
        return list(self._lines)[-count:]

    def get_since(self, line_number: int) -> list[BufferedLine]:
        return [l for l in self._lines if l.line_number > line_number]

    def search(self, pattern: Pattern[str]) -> list[BufferedLine]:
        return [l for l in self._lines if pattern.search(l.line)]

    def clear(self) -> None:
        self._lines.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "lineCount": len(self._lines),
            "oldestTimestamp": self._lines[0].timestamp if self._lines else None,
            "newestTimestamp": self._lines[-1].timestamp if self._lines else None,
        }

    def set_max_size(self, size: int) -> None:
        if size <= 0:
            raise ValueError("max_size must be positive")
        # deque(maxlen) keeps the newest entries when truncating from the left
        self._lines = deque(self._lines, maxlen=size)


def _compile(pattern: Union[str, Pattern[str]], what: str) -> Pattern[str]:
    if isinstance(pattern, re.Pattern):
        return pattern
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidPatternError(pattern, str(e), what=what) from e


class PortBufferManager:
    """Owns one PortRingBuffer per port plus the outstanding captures."""

    def __init__(self, clock: ClockInterface, default_buffer_size: int = 1000):
        self._clock = clock
        self._default_buffer_size = default_buffer_size
        self._buffers: dict[str, PortRingBuffer] = {}
        self._captures: dict[str, _CaptureCondition] = {}
        self._capture_counter = 0

    def _get_or_create(self, port: str) -> PortRingBuffer:
        buffer = self._buffers.get(port)
        if buffer is None:
            buffer = PortRingBuffer(self._clock, self._default_buffer_size)
            self._buffers[port] = buffer
            logger.info("Created buffer for %s", port)
        return buffer

    def _elapsed_ms(self, capture: _CaptureCondition) -> int:
        return int((self._clock.timestamp() - capture.start_time) * 1000)

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    def add_line(self, port: str, text: str) -> BufferedLine:
        """Append a line and feed it to this port's open captures."""
        entry = self._get_or_create(port).push(text)

        for capture in list(self._captures.values()):
            if capture.port != port or capture.resolved:
                continue
            capture.captured_lines.append(entry)
            if capture.pattern.search(text):
                self._resolve(capture, True, "pattern_matched", matched_line=entry)
            elif capture.max_lines > 0 and len(capture.captured_lines) >= capture.max_lines:
                self._resolve(capture, False, "max_lines")

        return entry

    def get_buffer(self, port: str) -> list[BufferedLine]:
        buffer = self._buffers.get(port)
        return buffer.get_all() if buffer else []

    def get_recent_lines(self, port: str, count: int = 100) -> list[BufferedLine]:
        buffer = self._buffers.get(port)
        return buffer.get_recent(count) if buffer else []

    def get_lines_since(self, port: str, line_number: int) -> list[BufferedLine]:
        buffer = self._buffers.get(port)
        return buffer.get_since(line_number) if buffer else []

    def search_buffer(self, port: str, pattern: Union[str, Pattern[str]]) -> list[BufferedLine]:
        regex = _compile(pattern, "search")
        buffer = self._buffers.get(port)
        return buffer.search(regex) if buffer else []

    def clear_buffer(self, port: str) -> None:
        buffer = self._buffers.get(port)
        if buffer:
            buffer.clear()
            logger.info("Buffer cleared: %s", port)

    def clear_all_buffers(self) -> None:
        for buffer in self._buffers.values():
            buffer.clear()
        logger.info("All buffers cleared")

    def remove_buffer(self, port: str) -> None:
        """Drop a port's buffer and cancel its captures."""
        for capture in list(self._captures.values()):
            if capture.port == port:
                self._resolve(capture, False, "cancelled")
        if self._buffers.pop(port, None) is not None:
            logger.info("Buffer removed: %s", port)

    def set_buffer_size(self, port: str, size: int) -> None:
        self._get_or_create(port).set_max_size(size)

    def get_ports(self) -> list[str]:
        return list(self._buffers)

    # ------------------------------------------------------------------
    # Captures
    # ------------------------------------------------------------------

    def start_capture(
        self,
        port: str,
        pattern: Union[str, Pattern[str]],
        timeout_ms: int = 30000,
        max_lines: int = 0,
    ) -> CaptureHandle:
        """
        Wait for a line on `port` matching `pattern` (case-sensitive search).

        Must be called from the event loop. A timeout_ms of 0 or less never
        times out; a max_lines of 0 means unlimited.

        Raises:
            InvalidPatternError: if `pattern` does not compile.
        """
        regex = _compile(pattern, "capture")
        loop = asyncio.get_running_loop()

        self._capture_counter += 1
        capture_id = f"capture_{self._capture_counter}"
        capture = _CaptureCondition(
            id=capture_id,
            port=port,
            pattern=regex,
            timeout_ms=timeout_ms,
            max_lines=max_lines,
            start_time=self._clock.timestamp(),
            future=loop.create_future(),
        )
        self._captures[capture_id] = capture
        capture.future.add_done_callback(functools.partial(self._on_future_done, capture))

        if timeout_ms > 0:
            capture.timer = loop.call_later(
                timeout_ms / 1000.0, self._resolve, capture, False, "timeout"
            )

        logger.info(
            "Capture started: %s on %s pattern=%r timeout=%dms",
            capture_id, port, regex.pattern, timeout_ms,
        )
        return CaptureHandle(capture_id=capture_id, future=capture.future)

    def cancel_capture(self, capture_id: str) -> bool:
        capture = self._captures.get(capture_id)
        if capture is None or capture.resolved:
            return False
        self._resolve(capture, False, "cancelled")
        return True

    def _on_future_done(self, capture: _CaptureCondition, future: asyncio.Future) -> None:
        # Caller gave up on the future (e.g. wait_for timed out around it)
        if future.cancelled():
            self._resolve(capture, False, "cancelled")

    def _resolve(
        self,
        capture: _CaptureCondition,
        success: bool,
        reason: str,
        matched_line: Optional[BufferedLine] = None,
    ) -> None:
        if capture.resolved:
            return
        capture.resolved = True
        if capture.timer is not None:
            capture.timer.cancel()
        self._captures.pop(capture.id, None)

        result = CaptureResult(
            success=success,
            reason=reason,
            captured_lines=list(capture.captured_lines),
            elapsed_ms=self._elapsed_ms(capture),
            matched_line=matched_line,
        )
        if not capture.future.done():
            capture.future.set_result(result)

        logger.info(
            "Capture resolved: %s reason=%s lines=%d elapsed=%dms",
            capture.id, reason, len(result.captured_lines), result.elapsed_ms,
        )

    def get_active_captures(self, port: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "port": c.port,
                "pattern": c.pattern.pattern,
                "elapsedMs": self._elapsed_ms(c),
            }
            for c in self._captures.values()
            if not c.resolved and (port is None or c.port == port)
        ]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_port_stats(self, port: str) -> Optional[dict[str, Any]]:
        buffer = self._buffers.get(port)
        if buffer is None:
            return None
        return {
            "port": port,
            **buffer.get_stats(),
            "totalLines": buffer.total_lines,
            "activeCaptures": sum(1 for c in self._captures.values() if c.port == port and not c.resolved),
        }

    def get_stats(self) -> list[dict[str, Any]]:
        return [s for s in (self.get_port_stats(p) for p in self._buffers) if s is not None]
