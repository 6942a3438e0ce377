#!/usr/bin/env python3
"""
Device health classification for the Embedded Serial Monitor.

Provides:
- Reboot and crash detection (Guru Meditation, watchdogs, brownout, ...)
- Startup detection, so one clean reboot is not mistaken for a loop
- Repeating-output loop detection on normalized lines
- A per-port status: healthy, unstable, crash_loop or unknown

Every line of every port goes through process_line(), whatever the
session options say.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Optional, Union

from .health_patterns import (
    CRASH_CATEGORIES,
    LOOP_SUGGESTION,
    NORMAL_RETRY_PATTERNS,
    NORMALIZE_RULES,
    NORMALIZED_MAX_CHARS,
    REBOOT_PATTERNS,
    STACK_TRACE_PATTERN,
    STARTUP_MARKERS,
    SUGGESTIONS,
    UNSTABLE_SUGGESTION,
)
from .interfaces import ClockInterface
from .port_buffer import BufferedLine
from .reset_reason import ResetReasonTracker, parse_reset_reason

logger = logging.getLogger(__name__)

HEALTH_STATES = ("healthy", "unstable", "crash_loop", "unknown")


@dataclass
class RebootEvent:
    """Record of one reboot or crash."""
    timestamp: float
    type: str
    reset_code: Optional[str] = None
    boot_mode: Optional[str] = None
    reset_reason: Optional[str] = None
    last_logs_before_crash: list[str] = field(default_factory=list)
    stack_trace: list[str] = field(default_factory=list)

    @property
    def is_crash(self) -> bool:
        return self.type in CRASH_CATEGORIES

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": datetime.fromtimestamp(self.timestamp).isoformat(),
            "type": self.type,
            "reset_code": self.reset_code,
            "boot_mode": self.boot_mode,
            "reset_reason": self.reset_reason,
            "last_logs_before_crash": list(self.last_logs_before_crash),
            "stack_trace": list(self.stack_trace),
        }


@dataclass
class LoopDetection:
    """Result of the repeating-output check."""
    detected: bool = False
    pattern: Optional[str] = None
    occurrences: int = 0
    interval_ms: float = 0.0
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "pattern": self.pattern,
            "occurrences": self.occurrences,
            "interval_ms": self.interval_ms,
            "confidence": self.confidence,
        }


@dataclass
class LineClassification:
    """What process_line() learned from a single line."""
    is_reboot: bool = False
    is_crash: bool = False
    loop_detected: bool = False
    event: Optional[RebootEvent] = None


@dataclass
class DeviceHealthStatus:
    """Derived health snapshot for one port."""
    port: str
    status: str
    reboot_count: int
    reboot_count_last_5min: int
    consecutive_reboots: int
    startup_detected: bool
    avg_uptime_seconds: float
    loop_detection: LoopDetection
    last_logs_before_crash: list[str]
    confidence: float
    last_reboot: Optional[RebootEvent] = None
    suspected_pattern: Optional[str] = None
    suggestion: Optional[str] = None
    reset_reasons: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "status": self.status,
            "reboot_count": self.reboot_count,
            "reboot_count_last_5min": self.reboot_count_last_5min,
            "consecutive_reboots": self.consecutive_reboots,
            "startup_detected": self.startup_detected,
            "avg_uptime_seconds": self.avg_uptime_seconds,
            "last_reboot": self.last_reboot.to_dict() if self.last_reboot else None,
            "loop_detection": self.loop_detection.to_dict(),
            "last_logs_before_crash": list(self.last_logs_before_crash),
            "suspected_pattern": self.suspected_pattern,
            "suggestion": self.suggestion,
            "confidence": self.confidence,
            "reset_reasons": dict(self.reset_reasons),
        }


@dataclass
class _PortHealth:
    port: str
    history: Deque[str]
    resets: ResetReasonTracker
    reboots: list[RebootEvent] = field(default_factory=list)
    startup_detected: bool = False
    last_stable_time: Optional[float] = None
    consecutive_reboots: int = 0
    recent_patterns: dict[str, list[float]] = field(default_factory=dict)


def normalize_line(text: str) -> str:
    """Collapse the parts of a line that vary between repeats."""
    for pattern, placeholder in NORMALIZE_RULES:
        text = pattern.sub(placeholder, text)
    return text[:NORMALIZED_MAX_CHARS]


def is_normal_retry(text: str) -> bool:
    return any(p.search(text) for p in NORMAL_RETRY_PATTERNS)


class DeviceHealthMonitor:
    """
    Per-port health classifier.

    Usage:
        health = DeviceHealthMonitor(clock)
        result = health.process_line(port, "Guru Meditation Error: ...")
        if result.is_crash:
            print(health.get_health_status(port).suggestion)

    The loop-confidence cap and the crash-loop reboot threshold are
    heuristics, so both are constructor parameters.
    """

    def __init__(
        self,
        clock: ClockInterface,
        max_history_size: int = 500,
        loop_window_s: float = 60.0,
        loop_min_occurrences: int = 3,
        loop_confidence_cap: int = 10,
        reboot_window_s: float = 300.0,
        crash_loop_threshold: int = 5,
        max_tracked_patterns: int = 100,
        context_lines: int = 10,
        stack_scan_lines: int = 50,
    ):
        self._clock = clock
        self._max_history_size = max_history_size
        self._loop_window_s = loop_window_s
        self._loop_min_occurrences = loop_min_occurrences
        self._loop_confidence_cap = loop_confidence_cap
        self._reboot_window_s = reboot_window_s
        self._crash_loop_threshold = crash_loop_threshold
        self._max_tracked_patterns = max_tracked_patterns
        self._context_lines = context_lines
        self._stack_scan_lines = stack_scan_lines
        self._ports: dict[str, _PortHealth] = {}

    def _get_port(self, port: str) -> _PortHealth:
        data = self._ports.get(port)
        if data is None:
            data = _PortHealth(
                port=port,
                history=deque(maxlen=self._max_history_size),
                resets=ResetReasonTracker(self._clock),
            )
            self._ports[port] = data
        return data

    # ------------------------------------------------------------------
    # Line processing
    # ------------------------------------------------------------------

    def process_line(self, port: str, line: Union[str, BufferedLine]) -> LineClassification:
        """Feed one line through reboot, startup and loop detection."""
        text = line.line if isinstance(line, BufferedLine) else line
        data = self._get_port(port)
        result = LineClassification()
        now = self._clock.timestamp()

        data.history.append(text)
        data.resets.check_line(text)

        for row in REBOOT_PATTERNS:
            match = row.regex.search(text)
            if not match:
                continue

            event = RebootEvent(
                timestamp=now,
                type=row.category,
                last_logs_before_crash=self._last_logs(data, self._context_lines),
            )
            if row.extract == "reset_code" and match.group(1):
                event.reset_code = match.group(1)
                event.reset_reason = parse_reset_reason(text)
            elif row.extract == "boot_mode" and match.group(1):
                event.boot_mode = match.group(1)
            if event.is_crash:
                event.stack_trace = self._collect_stack_trace(data)

            data.reboots.append(event)
            data.consecutive_reboots += 1
            data.startup_detected = False
            cutoff = now - self._reboot_window_s
            data.reboots = [r for r in data.reboots if r.timestamp > cutoff]

            result.is_reboot = True
            result.is_crash = event.is_crash
            result.event = event
            logger.warning(
                "Reboot detected on %s: %s (consecutive=%d, last %.0fs=%d)",
                port, row.category, data.consecutive_reboots,
                self._reboot_window_s, len(data.reboots),
            )
            break

        if not data.startup_detected:
            for marker in STARTUP_MARKERS:
                if marker.search(text):
                    data.startup_detected = True
                    data.last_stable_time = now
                    data.consecutive_reboots = 0
                    logger.info("Startup detected on %s", port)
                    break

        self._track_pattern(data, text, now)
        loop = self._detect_loop(data, now)
        if loop.detected:
            result.loop_detected = True
            logger.warning(
                "Loop detected on %s: %r x%d", port, loop.pattern, loop.occurrences
            )

        return result

    def _track_pattern(self, data: _PortHealth, text: str, now: float) -> None:
        if is_normal_retry(text):
            return

        key = normalize_line(text)
        cutoff = now - self._loop_window_s
        timestamps = [t for t in data.recent_patterns.get(key, []) if t > cutoff]
        timestamps.append(now)
        data.recent_patterns[key] = timestamps

        if len(data.recent_patterns) > self._max_tracked_patterns:
            keep = sorted(data.recent_patterns.items(), key=lambda kv: len(kv[1]), reverse=True)
            data.recent_patterns = dict(keep[: self._max_tracked_patterns // 2])

    def _detect_loop(self, data: _PortHealth, now: float) -> LoopDetection:
        cutoff = now - self._loop_window_s
        best: Optional[tuple[str, list[float]]] = None

        for key, stamps in data.recent_patterns.items():
            live = [t for t in stamps if t > cutoff]
            if len(live) >= self._loop_min_occurrences and (best is None or len(live) > len(best[1])):
                best = (key, live)

        if best is None:
            return LoopDetection()

        key, live = best
        gaps = [b - a for a, b in zip(live, live[1:])]
        interval_ms = (sum(gaps) / len(gaps)) * 1000.0 if gaps else 0.0
        return LoopDetection(
            detected=True,
            pattern=key,
            occurrences=len(live),
            interval_ms=interval_ms,
            confidence=min(len(live) / self._loop_confidence_cap, 1.0),
        )

    def _last_logs(self, data: _PortHealth, n: int) -> list[str]:
        return list(data.history)[-n:]

    def _collect_stack_trace(self, data: _PortHealth) -> list[str]:
        recent = list(data.history)[-self._stack_scan_lines:]
        return [l for l in recent if STACK_TRACE_PATTERN.search(l)]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_health_status(self, port: str) -> DeviceHealthStatus:
        data = self._get_port(port)
        now = self._clock.timestamp()
        recent = [r for r in data.reboots if r.timestamp > now - self._reboot_window_s]
        loop = self._detect_loop(data, now)

        avg_uptime = 0.0
        if len(data.reboots) > 1:
            gaps = [b.timestamp - a.timestamp for a, b in zip(data.reboots, data.reboots[1:])]
            avg_uptime = sum(gaps) / len(gaps)

        last_reboot = data.reboots[-1] if data.reboots else None
        status = "unknown"
        suggestion = None
        suspected = None

        if data.startup_detected and not recent:
            status = "healthy"
        elif len(recent) >= self._crash_loop_threshold or loop.detected:
            status = "crash_loop"
            suspected = loop.pattern
            if last_reboot is not None and last_reboot.type in SUGGESTIONS:
                suggestion = SUGGESTIONS[last_reboot.type]
            elif loop.detected:
                suggestion = LOOP_SUGGESTION.format(
                    occurrences=loop.occurrences, interval_ms=round(loop.interval_ms)
                )
        elif recent:
            status = "unstable"
            suggestion = UNSTABLE_SUGGESTION

        return DeviceHealthStatus(
            port=port,
            status=status,
            reboot_count=len(data.reboots),
            reboot_count_last_5min=len(recent),
            consecutive_reboots=data.consecutive_reboots,
            startup_detected=data.startup_detected,
            avg_uptime_seconds=avg_uptime,
            last_reboot=last_reboot,
            loop_detection=loop,
            last_logs_before_crash=self._last_logs(data, 20),
            suspected_pattern=suspected,
            suggestion=suggestion,
            confidence=loop.confidence,
            reset_reasons=data.resets.get_statistics(),
        )

    def get_all_health_status(self) -> list[DeviceHealthStatus]:
        return [self.get_health_status(port) for port in list(self._ports)]

    def get_report(self, port: str) -> dict[str, Any]:
        """Plain-language summary plus whether somebody needs to act."""
        health = self.get_health_status(port)
        action_required = False

        if health.status == "healthy":
            summary = f"Device on {port} is running normally."
        elif health.status == "unstable":
            summary = (
                f"Device on {port} has rebooted {health.reboot_count_last_5min} "
                f"time(s) in the last 5 minutes."
            )
            action_required = True
        elif health.status == "crash_loop":
            summary = (
                f"CRITICAL: Device on {port} is in a crash loop. "
                f"{health.reboot_count_last_5min} reboots in 5 minutes. "
            )
            if health.suspected_pattern:
                summary += f"Suspected issue: {health.suspected_pattern}. "
            if health.suggestion:
                summary += health.suggestion
            action_required = True
        else:
            summary = f"Device on {port} status unknown. Start monitoring to collect data."

        return {
            "status": health.status,
            "summary": summary.strip(),
            "details": health.to_dict(),
            "action_required": action_required,
        }

    def clear_port(self, port: str) -> None:
        self._ports.pop(port, None)
        logger.info("Health data cleared: %s", port)

    def clear_all(self) -> None:
        self._ports.clear()
        logger.info("All health data cleared")
