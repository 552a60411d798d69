"""Fan-out of session, task and usage-limit events to observers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

logger = logging.getLogger(__name__)

QUEUE_SIZE = 1000


@dataclass
class BroadcastEvent:
    """One event on the broadcast channel.

    Chat lifecycle types are ``stream-start``, ``chunk``, ``activity``,
    ``complete``, ``error`` and ``cancelled``; tasks publish ``task-status``
    and ``task-output``; the controller publishes ``usage-limit``.
    """

    type: str
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "session_id": self.session_id, "data": self.data, "ts": self.ts}


class Broadcaster:
    """Delivers every published event to all queue subscribers and listeners.

    Publishing never blocks: a subscriber whose queue is full loses its
    oldest event.
    """

    def __init__(self, queue_size: int = QUEUE_SIZE):
        self.queue_size = queue_size
        self._queues: list[asyncio.Queue[BroadcastEvent]] = []
        self._listeners: list[Callable[[BroadcastEvent], None]] = []

    def subscribe(self) -> asyncio.Queue[BroadcastEvent]:
        queue: asyncio.Queue[BroadcastEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[BroadcastEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Callable[[BroadcastEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[BroadcastEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, event_type: str, session_id: str | None = None, **data: Any) -> BroadcastEvent:
        event = BroadcastEvent(type=event_type, session_id=session_id, data=data)
        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
                logger.warning("Broadcast subscriber is behind; dropped oldest event")
            queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Broadcast listener failed for %s event", event_type)
        return event

    async def listen(self) -> AsyncIterator[BroadcastEvent]:
        """Subscribe for the lifetime of the iteration."""
        queue = self.subscribe()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(queue)
