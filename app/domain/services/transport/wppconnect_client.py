"""
WPPConnect Client — חיבור session אחד ל-WPPConnect Server.

ה-gateway (Node.js) מחזיק את הדפדפן; כאן רק קוראים ל-REST API שלו:

- POST /api/{session}/{secret}/generate-token
- POST /api/{session}/start-session      (רושם webhook לאירועים)
- POST /api/{session}/close-session
- POST /api/{session}/logout-session
- POST /api/{session}/send-message
- POST /api/{session}/send-file-base64
- POST /api/{session}/download-media

Events (QR, status changes, messages) are pushed by the gateway to
``/api/webhooks/gateway/{session_id}`` and converted by ``parse_gateway_event``.
"""
from __future__ import annotations

import asyncio
import base64
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.services.transport.base_client import (
    BaseChatClient,
    InboundMessage,
    MediaPayload,
    TransportEvent,
    TransportEventType,
)

logger = get_logger(__name__)

QR_DATA_URL_PREFIX = "data:image/png;base64,"

READY_STATUSES = frozenset({"isLogged", "inChat", "successChat"})
DISCONNECT_STATUSES = frozenset({
    "browserClose",
    "desconnectedMobile",
    "autocloseCalled",
    "serverClose",
    "deleteToken",
})
AUTH_FAILURE_STATUSES = frozenset({"qrReadFail", "qrReadError"})
LOADING_PROGRESS = {
    "initBrowser": 10,
    "openBrowser": 20,
    "initWhatsapp": 40,
    "successPageWhatsapp": 60,
    "waitForLogin": 70,
    "notLogged": 70,
    "waitChat": 80,
}
MEDIA_MESSAGE_TYPES = frozenset({"image", "video", "audio", "ptt", "document", "sticker"})


def build_webhook_url(session_id: str) -> str:
    """כתובת ה-webhook שנרשמת בגטוויי; הגטוויי לא שולח כותרות, לכן הטוקן ב-query"""
    url = f"{settings.PUBLIC_BASE_URL}/api/webhooks/gateway/{session_id}"
    if settings.GATEWAY_WEBHOOK_SECRET:
        url += f"?{urlencode({'token': settings.GATEWAY_WEBHOOK_SECRET})}"
    return url


def _message_from_payload(payload: dict[str, Any]) -> Optional[InboundMessage]:
    chat_id = payload.get("from") or payload.get("chatId")
    if not chat_id:
        return None

    message_type = payload.get("type") or "chat"
    has_media = message_type in MEDIA_MESSAGE_TYPES or bool(payload.get("isMedia"))
    # בהודעות מדיה body הוא thumbnail ב-base64, הטקסט נמצא ב-caption
    text = payload.get("caption") if has_media else payload.get("body")

    sender = payload.get("sender") or {}
    sender_name = payload.get("notifyName") or sender.get("pushname") or sender.get("name")

    timestamp = payload.get("t") or payload.get("timestamp")
    message = InboundMessage(
        chat_id=chat_id,
        text=text or "",
        message_id=payload.get("id"),
        sender_name=sender_name,
        from_me=bool(payload.get("fromMe")),
        is_group=bool(payload.get("isGroupMsg")) or PhoneNumberValidator.is_group(chat_id),
        has_media=has_media,
        mime_type=payload.get("mimetype"),
        filename=payload.get("filename"),
    )
    if isinstance(timestamp, (int, float)):
        message.timestamp = float(timestamp)
    return message


def parse_gateway_event(session_id: str, payload: dict[str, Any]) -> Optional[TransportEvent]:
    """
    המרת webhook של WPPConnect ל-TransportEvent.

    Returns None for gateway events the session manager does not act on.
    """
    event = payload.get("event")

    if event == "qrcode":
        qr = payload.get("qrcode") or payload.get("urlcode")
        if not qr:
            return None
        if not qr.startswith("data:"):
            qr = f"{QR_DATA_URL_PREFIX}{qr}"
        return TransportEvent(TransportEventType.QR, {"dataUrl": qr})

    if event == "status-find":
        status = payload.get("status")
        if status == "qrReadSuccess":
            return TransportEvent(TransportEventType.AUTHENTICATED)
        if status in READY_STATUSES:
            return TransportEvent(TransportEventType.READY)
        if status in AUTH_FAILURE_STATUSES:
            return TransportEvent(TransportEventType.AUTH_FAILURE, {"message": status})
        if status in DISCONNECT_STATUSES:
            return TransportEvent(TransportEventType.DISCONNECTED, {"reason": status})
        if status in LOADING_PROGRESS:
            return TransportEvent(
                TransportEventType.LOADING,
                {"percent": LOADING_PROGRESS[status], "message": status},
            )
        logger.debug(
            "Unhandled gateway status",
            extra_data={"session_id": session_id, "status": status},
        )
        return None

    if event in ("onmessage", "onMessage"):
        message = _message_from_payload(payload)
        if message is None:
            return None
        return TransportEvent(TransportEventType.MESSAGE, message=message)

    logger.debug(
        "Ignoring gateway event",
        extra_data={"session_id": session_id, "event": event},
    )
    return None


class WPPConnectClient(BaseChatClient):
    """Session יחיד מול WPPConnect Server, עם retry ו-circuit breaker"""

    def __init__(
        self,
        session_id: str,
        circuit_breaker: CircuitBreaker,
        *,
        gateway_url: str = settings.WHATSAPP_GATEWAY_URL,
        secret_key: str = settings.WHATSAPP_GATEWAY_SECRET_KEY,
        webhook_url: Optional[str] = None,
    ) -> None:
        super().__init__(session_id)
        self._circuit_breaker = circuit_breaker
        self._gateway_url = gateway_url
        self._secret_key = secret_key
        self._webhook_url = webhook_url or build_webhook_url(session_id)
        self._token: Optional[str] = None
        self._timeout = settings.WHATSAPP_REQUEST_TIMEOUT_SECONDS
        self._max_retries = settings.WHATSAPP_MAX_RETRIES
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.WHATSAPP_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    @property
    def provider_name(self) -> str:
        return "wppconnect"

    def _url(self, endpoint: str) -> str:
        return f"{self._gateway_url}/api/{self.session_id}/{endpoint}"

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    # ── retry helper פנימי ──

    async def _request_with_retry(
        self,
        endpoint: str,
        payload: Optional[dict],
        operation_name: str,
        *,
        url: Optional[str] = None,
    ) -> dict[str, Any]:
        """POST לגטוויי עם retry ו-exponential backoff. מחזיר את גוף ה-JSON.

        זורק WhatsAppError אם כל הניסיונות נכשלו.
        """
        target = url or self._url(endpoint)

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.post(target, json=payload, headers=self._headers())
                    if response.status_code in (200, 201):
                        try:
                            body = response.json()
                        except ValueError:
                            return {}
                        return body if isinstance(body, dict) else {"result": body}

                    if (
                        response.status_code in self._transient_status_codes
                        and attempt < self._max_retries - 1
                    ):
                        backoff = 2 ** attempt
                        logger.warning(
                            f"Transient gateway error during {operation_name}, retrying",
                            extra_data={
                                "session_id": self.session_id,
                                "status_code": response.status_code,
                                "attempt": attempt + 1,
                                "max_retries": self._max_retries,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue

                    raise WhatsAppError.from_response(endpoint, response)
                except httpx.TimeoutException:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"{operation_name} timeout, retrying",
                            extra_data={
                                "session_id": self.session_id,
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError(
                        message=f"gateway {endpoint} timeout after retries",
                        details={"timeout": True, "attempts": self._max_retries},
                    )
                except httpx.RequestError as exc:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"Network error during {operation_name}, retrying",
                            extra_data={
                                "session_id": self.session_id,
                                "error": str(exc),
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError(
                        message=f"gateway {endpoint} network error: {exc}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )

        raise WhatsAppError(message=f"gateway {endpoint} failed")

    async def _call(self, endpoint: str, payload: Optional[dict], operation_name: str) -> dict[str, Any]:
        async def _do() -> dict[str, Any]:
            return await self._request_with_retry(endpoint, payload, operation_name)

        return await self._circuit_breaker.execute(_do)

    def _recipient(self, to: str) -> dict[str, Any]:
        return {
            "phone": PhoneNumberValidator.strip_chat_suffix(to),
            "isGroup": PhoneNumberValidator.is_group(to),
        }

    # ── lifecycle ──

    async def _ensure_token(self) -> None:
        if self._token:
            return
        body = await self._request_with_retry(
            "generate-token",
            None,
            "token generation",
            url=self._url(f"{self._secret_key}/generate-token"),
        )
        token = body.get("token")
        if not token:
            raise WhatsAppError(
                message="gateway did not return a session token",
                details={"operation": "generate-token"},
            )
        self._token = token

    async def initialize(self) -> None:
        async def _start() -> dict[str, Any]:
            await self._ensure_token()
            return await self._request_with_retry(
                "start-session",
                {"webhook": self._webhook_url, "waitQrCode": False},
                "session start",
            )

        body = await self._circuit_breaker.execute(_start)
        logger.info(
            "Gateway session start accepted",
            extra_data={"session_id": self.session_id, "status": body.get("status")},
        )

        # start-session לפעמים מחזיר את ה-QR או CONNECTED ישירות
        status = (body.get("status") or "").upper()
        if status == "CONNECTED":
            await self.emit(TransportEvent(TransportEventType.READY))
        elif status == "QRCODE" and body.get("qrcode"):
            event = parse_gateway_event(self.session_id, {"event": "qrcode", "qrcode": body["qrcode"]})
            if event is not None:
                await self.emit(event)

    async def destroy(self) -> None:
        if not self._token:
            return
        await self._request_with_retry("close-session", None, "session close")

    async def logout(self) -> None:
        await self._ensure_token()
        await self._request_with_retry("logout-session", None, "session logout")
        self._token = None

    # ── outbound ──

    async def send_text(self, to: str, text: str) -> None:
        payload = {**self._recipient(to), "message": text}
        await self._call("send-message", payload, "send message")

    async def send_media(
        self,
        to: str,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> None:
        if not data:
            raise WhatsAppError(
                message="refusing to send empty media",
                details={"phone": PhoneNumberValidator.mask(to)},
            )
        encoded = base64.b64encode(data).decode("ascii")
        payload: dict[str, Any] = {
            **self._recipient(to),
            "base64": f"data:{mime_type};base64,{encoded}",
            "filename": filename or "file",
        }
        if caption:
            payload["caption"] = caption
        await self._call("send-file-base64", payload, "send media")

    async def download_media(self, message: InboundMessage) -> MediaPayload:
        if not message.message_id:
            raise WhatsAppError(message="media message has no id")

        body = await self._call(
            "download-media",
            {"messageId": message.message_id},
            "media download",
        )
        raw = body.get("base64") or body.get("data")
        if not raw:
            raise WhatsAppError(
                message="gateway returned no media content",
                details={"operation": "download-media"},
            )
        if raw.startswith("data:") and "," in raw:
            raw = raw.split(",", 1)[1]
        try:
            data = base64.b64decode(raw)
        except ValueError as exc:
            raise WhatsAppError(message=f"invalid media encoding: {exc}") from exc

        return MediaPayload(
            data=data,
            mime_type=body.get("mimetype") or message.mime_type or "application/octet-stream",
            filename=message.filename,
        )
