"""
Session Manager.

Tracks the live monitor sessions by token. A session is registered only
after it started successfully and drops out of the map as soon as its
completion future resolves.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

from .monitor import MonitorOptions, MonitorSession, MonitorSummary, StopReason

logger = logging.getLogger(__name__)

SessionFactory = Callable[[MonitorOptions, str], MonitorSession]


class MonitorManager:
    """Start, look up and stop monitor sessions."""

    def __init__(self, factory: SessionFactory):
        self._factory = factory
        self._sessions: dict[str, MonitorSession] = {}

    async def start(self, options: MonitorOptions) -> MonitorSession:
        """
        Validate, build and start a session.

        Raises whatever MonitorSession.start() raises; a failed session is
        never registered.
        """
        options.validate()
        token = str(uuid.uuid4())
        session = self._factory(options, token)
        await session.start()

        self._sessions[token] = session
        session.done.add_done_callback(lambda _f, t=token: self._forget(t))
        return session

    def _forget(self, token: str) -> None:
        if self._sessions.pop(token, None) is not None:
            logger.debug("Session %s removed", token)

    def get(self, token: Optional[str] = None, port: Optional[str] = None) -> Optional[MonitorSession]:
        """Find a live session by token, or by port when no token is given."""
        if token:
            return self._sessions.get(token)
        if port:
            for session in self._sessions.values():
                if session.port == port:
                    return session
        return None

    def list_tokens(self) -> list[str]:
        return list(self._sessions)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.snapshot() for s in self._sessions.values()]

    async def stop(
        self,
        token: Optional[str] = None,
        port: Optional[str] = None,
        reason: StopReason = StopReason.MANUAL,
    ) -> Optional[MonitorSummary]:
        session = self.get(token=token, port=port)
        if session is None:
            return None
        return await session.stop(reason)

    async def stop_all(self) -> list[MonitorSummary]:
        sessions = list(self._sessions.values())
        if not sessions:
            return []
        return list(await asyncio.gather(*(s.stop() for s in sessions)))
