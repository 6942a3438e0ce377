"""WebSocket front end for the event broadcaster.

Each connected client becomes a broadcaster subscriber and receives every
event as a JSON text frame, starting with the replay buffer.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging

import websockets

from .broadcaster import EventBroadcaster, QueueSubscriber

logger = logging.getLogger(__name__)

_CLIENT_SEND_TIMEOUT = 5.0  # seconds
_CLIENT_QUEUE_SIZE = 2000


def make_handler(broadcaster: EventBroadcaster):
    """Build a websockets connection handler bound to `broadcaster`."""

    async def _ws_handler(websocket):
        subscriber = QueueSubscriber(maxsize=_CLIENT_QUEUE_SIZE)
        if not broadcaster.add_subscriber(subscriber):
            return
        logger.info("WebSocket client connected (%d active)", broadcaster.subscriber_count())

        async def _drain_incoming():
            async for _ in websocket:
                pass  # We don't expect messages from the client

        reader = asyncio.create_task(_drain_incoming())
        try:
            while not reader.done():
                getter = asyncio.create_task(subscriber.get())
                done, _ = await asyncio.wait({getter, reader}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                event = getter.result()
                await asyncio.wait_for(websocket.send(json.dumps(event)), timeout=_CLIENT_SEND_TIMEOUT)
        except (websockets.ConnectionClosed, asyncio.TimeoutError) as e:
            logger.debug("WebSocket client gone: %s", e)
        finally:
            subscriber.close()
            broadcaster.remove_subscriber(subscriber)
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, websockets.ConnectionClosed):
                await reader
            logger.info("WebSocket client disconnected (%d active)", broadcaster.subscriber_count())

    return _ws_handler


async def serve_events(broadcaster: EventBroadcaster, host: str = "127.0.0.1", port: int = 8765):
    """Start the server and return it; close it with `server.close()`."""
    server = await websockets.serve(make_handler(broadcaster), host, port)
    logger.info("Event stream on ws://%s:%d", host, port)
    return server
