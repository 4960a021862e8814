"""
Notification Fan-out

Per-session rooms of subscriber queues. Dashboards subscribe over the
WebSocket route; the session manager and the message pipeline publish.

``publish`` never blocks the caller: a slow subscriber whose queue is full
loses its oldest pending notification.
"""
import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from app.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100


class SessionEvent(str, Enum):
    # lifecycle
    QR = "qr"
    READY = "ready"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "authFailure"
    DISCONNECTED = "disconnected"
    SESSION_STOPPED = "sessionStopped"
    SESSION_CLEARED = "sessionCleared"
    SESSION_FAILED = "sessionFailed"
    SESSION_RECLAIMED = "sessionReclaimed"
    # traffic
    MESSAGE_RECEIVED = "messageReceived"
    MEDIA_RECEIVED = "mediaReceived"
    MESSAGE_SENT = "messageSent"
    # failures
    ERROR = "error"


@dataclass
class Notification:
    room: str
    event: SessionEvent
    payload: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.room,
            "event": self.event.value,
            "data": self.payload,
            "ts": self.ts,
        }


class NotificationHub:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._rooms: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def publish(self, room: str, event: SessionEvent, payload: dict[str, Any] | None = None) -> int:
        """Deliver to every subscriber of ``room``. Returns the number reached."""
        subscribers = self._rooms.get(room)
        if not subscribers:
            return 0

        notification = Notification(room=room, event=event, payload=dict(payload or {}))
        for queue in list(subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug(
                    "Subscriber queue full, dropped oldest notification",
                    extra_data={"room": room, "event": event.value},
                )
            queue.put_nowait(notification)
        return len(subscribers)

    @asynccontextmanager
    async def subscribe(self, room: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._rooms[room].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._rooms.get(room)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._rooms[room]

    def subscriber_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))
