"""
Client Factory — יצירת חיבור WhatsApp ל-session חדש.

ה-SessionManager מקבל factory ולא מחלקה קונקרטית; בבדיקות מזריקים factory
שמחזיר fake client.
"""
from __future__ import annotations

import threading
from typing import Callable

from app.core.circuit_breaker import get_whatsapp_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.transport.base_client import BaseChatClient

logger = get_logger(__name__)

ChatClientFactory = Callable[[str], BaseChatClient]

_factory: ChatClientFactory | None = None
_lock = threading.Lock()


def create_wppconnect_client(session_id: str) -> BaseChatClient:
    from app.domain.services.transport.wppconnect_client import WPPConnectClient

    return WPPConnectClient(session_id, circuit_breaker=get_whatsapp_circuit_breaker())


def get_chat_client_factory() -> ChatClientFactory:
    """ה-factory הפעיל (WPPConnect כברירת מחדל)"""
    global _factory
    if _factory is None:
        with _lock:
            if _factory is None:
                _factory = create_wppconnect_client
                logger.info("Chat client factory initialized", extra_data={"provider": "wppconnect"})
    return _factory


def set_chat_client_factory(factory: ChatClientFactory | None) -> None:
    """החלפת ה-factory — לשימוש בבדיקות בלבד."""
    global _factory
    with _lock:
        _factory = factory
