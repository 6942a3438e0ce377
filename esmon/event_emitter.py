"""
Audit event emission for the Embedded Serial Monitor.

Writes JSONL events to disk so operators and other processes can tail
lock and session transitions without a socket.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

import portalocker

from .interfaces import ClockInterface

logger = logging.getLogger(__name__)

# Lock registry transitions that deserve more than "info"
_LOCK_EVENT_LEVELS = {"denied": "warning", "forced": "warning", "expired": "warning"}


class EventEmitter:
    """Append-only JSONL event emitter with simple sequence tracking."""

    def __init__(self, clock: ClockInterface, events_path: str) -> None:
        self._clock = clock
        self._events_path = events_path
        os.makedirs(os.path.dirname(events_path) or ".", exist_ok=True)
        self._sequence = self._load_last_sequence()

    @property
    def path(self) -> str:
        return self._events_path

    def emit(self, event_type: str, data: Optional[dict[str, Any]] = None, level: str = "info") -> dict[str, Any]:
        self._sequence += 1
        payload = {
            "schema_version": 1,
            "sequence": self._sequence,
            "timestamp": self._clock.now().isoformat(),
            "type": event_type,
            "level": level,
            "data": data or {},
        }
        self._append_line(json.dumps(payload, sort_keys=True))
        return payload

    def lock_observer(self, event_type: str, info: dict[str, Any]) -> None:
        """PortLockRegistry observer: one `lock_<transition>` record per change."""
        self.emit(f"lock_{event_type}", info, level=_LOCK_EVENT_LEVELS.get(event_type, "info"))

    def _append_line(self, content: str) -> None:
        with open(self._events_path, "a", encoding="utf-8") as f:
            portalocker.lock(f, portalocker.LOCK_EX)
            try:
                f.write(content)
                if not content.endswith("\n"):
                    f.write("\n")
                f.flush()
            finally:
                portalocker.unlock(f)

    def _load_last_sequence(self) -> int:
        if not os.path.exists(self._events_path):
            return 0

        with open(self._events_path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            if size == 0:
                return 0

            # Read the last line efficiently.
            offset = min(size, 4096)
            f.seek(-offset, os.SEEK_END)
            chunk = f.read().splitlines()
        if not chunk:
            return 0

        try:
            data = json.loads(chunk[-1].decode("utf-8", errors="replace"))
            return int(data.get("sequence", 0) or 0)
        except (ValueError, AttributeError):
            logger.warning("Could not read last sequence from %s; starting at 0", self._events_path)
            return 0
