"""
ממשק בסיסי לחיבור WhatsApp של session אחד.

כל מימוש (כרגע WPPConnect) מחזיק חיבור אחד ל-session אחד.
ה-SessionManager תלוי רק בממשק הזה, כך שבבדיקות אפשר להחליף אותו ב-fake.

Events flow the other way: the client (or the webhook route, for gateways
that push events over HTTP) hands ``TransportEvent`` objects to the handler
installed with ``set_event_handler``.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional


class TransportEventType(str, Enum):
    LOADING = "loading"
    QR = "qr"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    READY = "ready"
    MESSAGE = "message"
    DISCONNECTED = "disconnected"


@dataclass
class InboundMessage:
    """הודעה נכנסת מלקוח"""
    chat_id: str
    text: str = ""
    message_id: Optional[str] = None
    sender_name: Optional[str] = None
    from_me: bool = False
    is_group: bool = False
    has_media: bool = False
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class MediaPayload:
    data: bytes
    mime_type: str
    filename: Optional[str] = None


@dataclass
class TransportEvent:
    type: TransportEventType
    data: dict[str, Any] = field(default_factory=dict)
    message: Optional[InboundMessage] = None


EventHandler = Callable[[TransportEvent], Awaitable[None]]


class BaseChatClient(ABC):
    """
    חיבור WhatsApp של session יחיד.

    כל מימוש אחראי על:
    - פתיחה/סגירה של ה-session מול הספק
    - retry + circuit breaker לקריאות יוצאות
    - המרת אירועים של הספק ל-TransportEvent
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._event_handler: Optional[EventHandler] = None

    def set_event_handler(self, handler: Optional[EventHandler]) -> None:
        self._event_handler = handler

    async def emit(self, event: TransportEvent) -> None:
        if self._event_handler is not None:
            await self._event_handler(event)

    # ── lifecycle ──

    @abstractmethod
    async def initialize(self) -> None:
        """
        Start the connection. Returns once the provider accepted the start;
        QR/ready arrive later as events.

        Raises:
            WhatsAppError: the provider refused or could not be reached.
        """

    @abstractmethod
    async def destroy(self) -> None:
        """Close the connection, keeping the linked-device credentials"""

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device; the next start needs a fresh QR scan"""

    # ── outbound ──

    @abstractmethod
    async def send_text(self, to: str, text: str) -> None:
        """
        Raises:
            WhatsAppError: בכשלון שליחה.
        """

    @abstractmethod
    async def send_media(
        self,
        to: str,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> None:
        """
        Raises:
            WhatsAppError: בכשלון שליחה.
        """

    @abstractmethod
    async def download_media(self, message: InboundMessage) -> MediaPayload:
        """
        Raises:
            WhatsAppError: the media could not be fetched.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים."""
