#!/usr/bin/env python3
"""
Port Lock Registry for the Embedded Serial Monitor.

Provides:
- Exclusive per-port ownership between monitor sessions and flash/compile jobs
- Timeout-based reclamation of abandoned locks (plus a periodic sweep)
- Observer callbacks so every transition can be audited
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from .errors import PortBusyError
from .interfaces import ClockInterface

logger = logging.getLogger(__name__)

LockObserver = Callable[[str, dict], None]


class PortState(Enum):
    """Possible port states."""
    IDLE = "idle"
    LOCKED = "locked"
    MONITORING = "monitoring"
    UPLOADING = "uploading"
    COMPILING = "compiling"
    ERROR = "error"


@dataclass
class PortLockInfo:
    """Current state of one port."""
    port: str
    state: PortState = PortState.IDLE
    locked_by: Optional[str] = None
    locked_at: Optional[float] = None
    last_activity: Optional[float] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "PortLockInfo":
        return PortLockInfo(
            port=self.port,
            state=self.state,
            locked_by=self.locked_by,
            locked_at=self.locked_at,
            last_activity=self.last_activity,
            error=self.error,
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        def iso(ts: Optional[float]) -> Optional[str]:
            return datetime.fromtimestamp(ts).isoformat() if ts is not None else None

        return {
            "port": self.port,
            "state": self.state.value,
            "locked_by": self.locked_by,
            "locked_at": iso(self.locked_at),
            "last_activity": iso(self.last_activity),
            "error": self.error,
            "metadata": dict(self.metadata),
        }


@dataclass
class LockResult:
    """Outcome of a try_lock() call."""
    success: bool
    port: str
    state: PortState
    error: Optional[str] = None
    previous_owner: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "port": self.port,
            "state": self.state.value,
            "error": self.error,
            "previous_owner": self.previous_owner,
            "reason": self.reason,
        }


class PortLockRegistry:
    """
    In-process lock table keyed by port path.

    All mutation happens on the event loop thread, so no mutex is held.
    A port with no entry is idle.

    Usage:
        locks = PortLockRegistry(clock)
        result = locks.try_lock("/dev/ttyUSB0", "upload")
        if result.success:
            locks.set_state("/dev/ttyUSB0", PortState.UPLOADING)
            ...
            locks.release("/dev/ttyUSB0")
        else:
            print(f"Port busy: {result.error}")
    """

    def __init__(
        self,
        clock: ClockInterface,
        lock_timeout: float = 120.0,
        sweep_interval: float = 30.0,
        observers: Iterable[LockObserver] = (),
    ):
        self._clock = clock
        self._lock_timeout = lock_timeout
        self._sweep_interval = sweep_interval
        self._states: dict[str, PortLockInfo] = {}
        self._observers: list[LockObserver] = list(observers)
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def lock_timeout(self) -> float:
        return self._lock_timeout

    def add_observer(self, observer: LockObserver) -> None:
        self._observers.append(observer)

    def _notify(self, event_type: str, info: dict[str, Any]) -> None:
        for observer in list(self._observers):
            try:
                observer(event_type, info)
            except Exception:
                logger.exception("Lock observer failed for %s", event_type)

    def _is_expired(self, info: PortLockInfo) -> bool:
        if info.locked_at is None:
            return False
        return self._clock.timestamp() - info.locked_at > self._lock_timeout

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, port: str) -> PortLockInfo:
        """Snapshot of a port's state (idle when untracked)."""
        existing = self._states.get(port)
        if existing:
            return existing.copy()
        return PortLockInfo(port=port)

    def get_all_states(self) -> list[PortLockInfo]:
        return [info.copy() for info in self._states.values()]

    def is_available(self, port: str) -> bool:
        info = self.get_state(port)
        return info.state == PortState.IDLE or self._is_expired(info)

    def is_in_use(self, port: str) -> bool:
        info = self.get_state(port)
        if self._is_expired(info):
            return False
        return info.state not in (PortState.IDLE, PortState.ERROR)

    def get_summary(self) -> dict[str, Any]:
        """Counts per state plus the owner of every tracked port."""
        counts = {state.value: 0 for state in PortState}
        ports = []
        for info in self._states.values():
            counts[info.state.value] += 1
            ports.append({"port": info.port, "state": info.state.value, "owner": info.locked_by})
        return {"total_ports": len(self._states), **counts, "ports": ports}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def try_lock(self, port: str, owner: str, force: bool = False) -> LockResult:
        """
        Try to take ownership of `port` for `owner`.

        Expired locks are reclaimed before the check, so a caller never sees
        a conflict against an abandoned owner.

        Returns:
            LockResult; on conflict success is False and previous_owner names
            the current holder.
        """
        current = self._states.get(port)

        if current is not None and self._is_expired(current):
            logger.info("Releasing expired lock on %s (owner %s)", port, current.locked_by)
            self._states.pop(port, None)
            self._notify("expired", current.to_dict())
            current = None

        if current is not None and current.state not in (PortState.IDLE, PortState.ERROR):
            if not force:
                message = f"Port is {current.state.value}"
                if current.locked_by:
                    message += f" by {current.locked_by}"
                logger.warning(
                    "Port lock denied: %s for %s (state=%s, owner=%s)",
                    port, owner, current.state.value, current.locked_by,
                )
                self._notify("denied", {"port": port, "owner": owner, "holder": current.locked_by})
                return LockResult(
                    success=False,
                    port=port,
                    state=current.state,
                    error=message,
                    previous_owner=current.locked_by,
                    reason="conflict",
                )
            logger.warning(
                "Force releasing %s (state=%s, owner=%s) for %s",
                port, current.state.value, current.locked_by, owner,
            )
            self._notify("forced", {"port": port, "owner": owner, "holder": current.locked_by})

        now = self._clock.timestamp()
        info = PortLockInfo(
            port=port,
            state=PortState.LOCKED,
            locked_by=owner,
            locked_at=now,
            last_activity=now,
        )
        self._states[port] = info
        logger.info("Port locked: %s by %s", port, owner)
        self._notify("locked", info.to_dict())
        return LockResult(success=True, port=port, state=PortState.LOCKED)

    def set_state(self, port: str, state: PortState, metadata: Optional[dict[str, Any]] = None) -> bool:
        """
        Move a port to `state`.

        idle clears the entry and error records a failure; neither needs
        prior ownership. Other states update the held entry in place.
        """
        metadata = dict(metadata or {})
        now = self._clock.timestamp()

        if state == PortState.IDLE:
            self._states.pop(port, None)
        elif state == PortState.ERROR:
            error = metadata.get("error")
            self._states[port] = PortLockInfo(
                port=port,
                state=PortState.ERROR,
                error=str(error) if error is not None else None,
                last_activity=now,
                metadata=metadata,
            )
        else:
            current = self._states.get(port) or PortLockInfo(port=port)
            current.state = state
            current.last_activity = now
            current.metadata.update(metadata)
            self._states[port] = current

        logger.info("Port state changed: %s -> %s", port, state.value)
        self._notify("state", {"port": port, "state": state.value, "metadata": metadata})
        return True

    def release(self, port: str, owner: Optional[str] = None) -> bool:
        """
        Clear the port's entry.

        Without `owner` the clear is unconditional. With `owner`, an entry
        held by someone else (for example a new owner that reclaimed an
        expired lock) is left alone and False is returned.
        """
        current = self._states.get(port)
        if current is None:
            return True
        if owner is not None and current.locked_by != owner:
            logger.warning(
                "Not releasing %s for %s: now %s by %s",
                port, owner, current.state.value, current.locked_by,
            )
            return False
        del self._states[port]
        logger.info("Port released: %s (was %s by %s)", port, current.state.value, current.locked_by)
        self._notify("released", current.to_dict())
        return True

    def touch(self, port: str) -> None:
        """Refresh last-activity on a held port."""
        current = self._states.get(port)
        if current is not None:
            current.last_activity = self._clock.timestamp()

    def cleanup_stale_locks(self) -> list[str]:
        """One sweep pass. Returns the ports that were reclaimed."""
        removed = []
        now = self._clock.timestamp()
        for port, info in list(self._states.items()):
            if info.locked_at is not None and now - info.locked_at > self._lock_timeout:
                logger.warning(
                    "Cleaning up stale lock on %s (owner %s, age %.0fs)",
                    port, info.locked_by, now - info.locked_at,
                )
                del self._states[port]
                self._notify("expired", info.to_dict())
                removed.append(port)
        return removed

    @contextlib.asynccontextmanager
    async def hold(
        self,
        port: str,
        owner: str,
        state: PortState = PortState.LOCKED,
        force: bool = False,
    ) -> AsyncIterator[PortLockInfo]:
        """Own `port` for the duration of the block; PortBusyError on conflict."""
        result = self.try_lock(port, owner, force=force)
        if not result.success:
            raise PortBusyError(port, result.error or "Port busy", result.previous_owner)
        if state != PortState.LOCKED:
            self.set_state(port, state)
        try:
            yield self.get_state(port)
        finally:
            self.release(port, owner=owner)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running loop (idempotent)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_loop(), name="port-lock-sweeper"
            )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.cleanup_stale_locks()

    async def close(self) -> None:
        """Stop the sweep and forget all entries."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self._states.clear()
