#!/usr/bin/env python3
"""
Embedded Serial Monitor - Supervisor

Builds every registry once and wires them together. This is the control
surface a CLI or API layer talks to: start and stop monitors, read health
and lock state, wait for patterns on a port's stream, run locked tools.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from .baud import BaudNegotiator
from .broadcaster import EventBroadcaster
from .config import MonitorConfig
from .device_health import DeviceHealthMonitor
from .event_emitter import EventEmitter
from .implementations import RealClock, RealSerialPort
from .install_log import InstallLogStore
from .interfaces import ClockInterface
from .monitor import MonitorOptions, MonitorSession, MonitorSummary, ReaderCommand, default_reader_command
from .port_buffer import CaptureHandle, PortBufferManager
from .port_lock import PortLockRegistry
from .session_manager import MonitorManager
from .toolchain import ToolResult, ToolRunner

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Owns the shared state of the monitor.

    Components:
    - PortLockRegistry: who owns which port
    - PortBufferManager: per-port history and captures
    - DeviceHealthMonitor: reboot, crash and loop classification
    - EventBroadcaster: live fan-out to subscribers
    - MonitorManager: the running sessions
    - ToolRunner: flash/compile jobs under the port lock
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        clock: Optional[ClockInterface] = None,
        serial_factory=RealSerialPort,
        reader_command: Optional[ReaderCommand] = None,
        audit: bool = True,
    ):
        self.config = config or MonitorConfig()
        self.clock = clock or RealClock()
        cfg = self.config

        self.emitter: Optional[EventEmitter] = EventEmitter(self.clock, cfg.events_path) if audit else None
        self.locks = PortLockRegistry(
            self.clock,
            lock_timeout=cfg.lock_timeout_s,
            sweep_interval=cfg.lock_sweep_interval_s,
            observers=[self.emitter.lock_observer] if self.emitter else (),
        )
        self.buffers = PortBufferManager(self.clock, default_buffer_size=cfg.buffer_size)
        self.health_monitor = DeviceHealthMonitor(
            self.clock,
            max_history_size=cfg.health_history_size,
            loop_window_s=cfg.loop_window_s,
            loop_min_occurrences=cfg.loop_min_occurrences,
            loop_confidence_cap=cfg.loop_confidence_cap,
            reboot_window_s=cfg.reboot_window_s,
            crash_loop_threshold=cfg.crash_loop_threshold,
            max_tracked_patterns=cfg.max_tracked_patterns,
            context_lines=cfg.context_lines,
            stack_scan_lines=cfg.stack_scan_lines,
        )
        self.broadcaster = EventBroadcaster(
            buffer_limit=cfg.replay_buffer_size,
            heartbeat_interval=cfg.heartbeat_interval_s,
        )
        self.negotiator = BaudNegotiator(
            serial_factory,
            probe_seconds=cfg.probe_seconds,
            early_stop=cfg.probe_early_stop,
            min_score=cfg.probe_min_score,
            inter_probe_delay=cfg.probe_delay_s,
            common_rates=cfg.baud_candidates,
        )
        self.install_log = InstallLogStore(cfg.install_log_path, self.clock)
        self.tools = ToolRunner(self.locks)
        self._reader_command = reader_command or default_reader_command(cfg.python_executable)
        self.sessions = MonitorManager(self._build_session)

    def _build_session(self, options: MonitorOptions, token: str) -> MonitorSession:
        return MonitorSession(
            options,
            token,
            locks=self.locks,
            buffers=self.buffers,
            health=self.health_monitor,
            broadcaster=self.broadcaster,
            negotiator=self.negotiator,
            reader_command=self._reader_command,
            install_log=self.install_log,
            emitter=self.emitter,
            clock=self.clock,
            stop_grace=self.config.stop_grace_s,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_monitor(
        self,
        port: str,
        baud: Optional[int] = None,
        auto_baud: bool = True,
        max_seconds: float = 0,
        max_lines: int = 0,
        stop_pattern: Optional[str] = None,
        detect_reboot: bool = True,
        raw: bool = False,
    ) -> str:
        """Start monitoring `port`; returns the session token."""
        self.locks.start_sweeper()
        options = MonitorOptions(
            port=port,
            baud=baud or self.config.default_baud,
            auto_baud=auto_baud,
            raw=raw,
            max_seconds=max_seconds,
            max_lines=max_lines,
            stop_pattern=stop_pattern,
            detect_reboot=detect_reboot,
        )
        session = await self.sessions.start(options)
        return session.token

    async def stop_monitor(self, token: Optional[str] = None, port: Optional[str] = None) -> Optional[MonitorSummary]:
        return await self.sessions.stop(token=token, port=port)

    async def wait_monitor(self, token: str) -> Optional[MonitorSummary]:
        session = self.sessions.get(token=token)
        if session is None:
            return None
        return await session.wait()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def health(self, port: Optional[str] = None) -> Any:
        if port is not None:
            return self.health_report(port)["details"]
        return [s.to_dict() for s in self.health_monitor.get_all_health_status()]

    def health_report(self, port: str) -> dict[str, Any]:
        return self.health_monitor.get_report(port)

    def lock_state(self, port: Optional[str] = None) -> Any:
        if port is not None:
            return self.locks.get_state(port).to_dict()
        return [info.to_dict() for info in self.locks.get_all_states()]

    def recent_lines(self, port: str, count: int = 100) -> list[dict[str, Any]]:
        return [l.to_dict() for l in self.buffers.get_recent_lines(port, count)]

    def start_capture(
        self,
        port: str,
        pattern: str,
        timeout_ms: Optional[int] = None,
        max_lines: int = 0,
    ) -> CaptureHandle:
        if timeout_ms is None:
            timeout_ms = self.config.capture_timeout_ms
        return self.buffers.start_capture(port, pattern, timeout_ms=timeout_ms, max_lines=max_lines)

    def cancel_capture(self, capture_id: str) -> bool:
        return self.buffers.cancel_capture(capture_id)

    async def run_tool(
        self,
        argv: Sequence[str],
        port: Optional[str] = None,
        operation: str = "upload",
        timeout_s: Optional[float] = None,
    ) -> ToolResult:
        return await self.tools.run(argv, port=port, operation=operation, timeout_s=timeout_s)

    async def close(self) -> None:
        """Stop every session, then the sweep and the heartbeat."""
        await self.sessions.stop_all()
        await self.locks.close()
        await self.broadcaster.close()
