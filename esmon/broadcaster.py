"""
Event fan-out to live subscribers.

A subscriber is anything with a `send(event)` method that raises when it
can no longer accept data. New subscribers first receive the replay
buffer, then every later event. Subscribers that fail are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Optional, Protocol

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    def send(self, event: dict[str, Any]) -> None: ...


class SubscriberClosed(Exception):
    """The subscriber can no longer accept events."""


class QueueSubscriber:
    """
    Subscriber backed by a bounded asyncio.Queue.

    A consumer that falls `maxsize` events behind is treated as dead, so a
    stalled client cannot make the broadcaster buffer without limit.
    """

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, event: dict[str, Any]) -> None:
        if self.closed:
            raise SubscriberClosed("subscriber closed")
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull as e:
            self.closed = True
            raise SubscriberClosed("subscriber queue full") from e

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()

    def close(self) -> None:
        self.closed = True


class EventBroadcaster:
    """Fan-out with a bounded replay buffer and an idle-time heartbeat."""

    def __init__(self, buffer_limit: int = 500, heartbeat_interval: float = 15.0):
        self._subscribers: set[Subscriber] = set()
        self._buffer: Deque[dict[str, Any]] = deque(maxlen=buffer_limit)
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def add_subscriber(self, subscriber: Subscriber) -> bool:
        """Replay the buffer to `subscriber`, then join it to the fan-out set."""
        for event in list(self._buffer):
            try:
                subscriber.send(event)
            except Exception as e:
                logger.debug("Subscriber failed during replay: %s", e)
                return False
        self._subscribers.add(subscriber)
        logger.debug("Subscriber added (%d active)", len(self._subscribers))
        self._ensure_heartbeat()
        return True

    def remove_subscriber(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)
        if not self._subscribers:
            self._stop_heartbeat()

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def broadcast(self, event: dict[str, Any]) -> None:
        """Deliver `event` to every live subscriber, then buffer it for replay."""
        self._fan_out(event)
        self._buffer.append(event)

    def _fan_out(self, event: dict[str, Any]) -> None:
        dead = []
        for subscriber in list(self._subscribers):
            try:
                subscriber.send(event)
            except Exception as e:
                logger.debug("Dropping subscriber: %s", e)
                dead.append(subscriber)
        for subscriber in dead:
            self.remove_subscriber(subscriber)

    def get_buffer(self) -> list[dict[str, Any]]:
        return list(self._buffer)

    def clear_buffer(self) -> None:
        self._buffer.clear()

    def set_buffer_limit(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("buffer limit must be positive")
        self._buffer = deque(self._buffer, maxlen=limit)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat is not None and not self._heartbeat.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet (synchronous caller); started on the next add.
            return
        self._heartbeat = loop.create_task(self._heartbeat_loop(), name="broadcaster-heartbeat")

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _heartbeat_loop(self) -> None:
        while self._subscribers:
            await asyncio.sleep(self._heartbeat_interval)
            self._fan_out({"type": "keep-alive", "timestamp": datetime.now().isoformat()})

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat is not None and not self._heartbeat.done()

    async def close(self) -> None:
        task = self._heartbeat
        self._heartbeat = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._subscribers.clear()
