"""Fan-out of live metric snapshots to streaming subscribers."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

from .errors import StreamError

logger = logging.getLogger(__name__)


def format_frame(payload: Dict[str, Any]) -> str:
    """Render ``payload`` as a server-sent event data frame."""

    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


class SubscriberConnection:
    """Interface for anything a frame can be written to."""

    def send(self, frame: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class QueueConnection(SubscriberConnection):
    """Buffers frames for one streaming response.

    The queue is bounded; a subscriber that stops reading fills it and its
    next write fails, which gets it pruned instead of growing memory.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, frame: str) -> None:
        if self.closed:
            raise StreamError("Connection is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull as exc:
            raise StreamError("Subscriber is not keeping up") from exc

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Drop pending frames so the end-of-stream marker always fits.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def receive(self) -> Optional[str]:
        """Return the next frame, or ``None`` once the connection is closed."""

        return await self._queue.get()


class SubscriptionBroker:
    """Registry of open subscriber connections keyed by origin id.

    One broker lives for the lifetime of the application and is handed to
    request handlers. It is only touched from the event loop thread, and
    :meth:`publish` never suspends, so iteration and mutation cannot
    interleave.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[SubscriberConnection]] = {}

    def subscribe(self, origin_id: str, connection: SubscriberConnection) -> None:
        self._subscribers.setdefault(origin_id, set()).add(connection)
        logger.info("Subscriber connected for origin %s", origin_id)
        try:
            connection.send(format_frame({"connected": True, "originId": origin_id}))
        except StreamError:
            self.unsubscribe(origin_id, connection)

    def unsubscribe(self, origin_id: str, connection: SubscriberConnection) -> None:
        connections = self._subscribers.get(origin_id)
        if connections is None or connection not in connections:
            return
        connections.discard(connection)
        if not connections:
            del self._subscribers[origin_id]
        logger.info("Subscriber disconnected from origin %s", origin_id)

    def publish(self, origin_id: str, snapshot: Dict[str, Any]) -> int:
        """Write ``snapshot`` to every subscriber of ``origin_id``.

        Returns the number of connections that accepted the frame. Failed
        connections are unregistered after the broadcast pass.
        """

        connections = self._subscribers.get(origin_id)
        if not connections:
            return 0

        frame = format_frame(snapshot)
        failed: List[SubscriberConnection] = []
        for connection in connections:
            try:
                connection.send(frame)
            except Exception:
                failed.append(connection)

        for connection in failed:
            logger.warning("Dropping subscriber for origin %s after failed write", origin_id)
            self.unsubscribe(origin_id, connection)
            try:
                connection.close()
            except Exception:
                logger.debug("Ignoring error while closing dropped subscriber", exc_info=True)
        return len(connections)

    def subscriber_count(self, origin_id: str) -> int:
        return len(self._subscribers.get(origin_id, ()))

    def close_all(self) -> None:
        """Close every connection and forget all origins."""

        subscribers = self._subscribers
        self._subscribers = {}
        for connections in subscribers.values():
            for connection in connections:
                try:
                    connection.close()
                except Exception:
                    logger.debug("Ignoring error while closing subscriber", exc_info=True)
