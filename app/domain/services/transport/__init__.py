"""
Chat transport boundary - one WhatsApp connection per session
"""
from app.domain.services.transport.base_client import (
    BaseChatClient,
    InboundMessage,
    MediaPayload,
    TransportEvent,
    TransportEventType,
)
from app.domain.services.transport.client_factory import get_chat_client_factory

__all__ = [
    "BaseChatClient",
    "InboundMessage",
    "MediaPayload",
    "TransportEvent",
    "TransportEventType",
    "get_chat_client_factory",
]
