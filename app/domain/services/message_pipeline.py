"""
Message Pipeline — מסלול הודעה נכנסת אחת עד התשובה.

    ignore → rate limit → per-customer lock → media → messageReceived
      → order flow (ecommerce) → library file → completion → send

The customer always gets a reply: a rate-limit notice, a flow reply, a
library file, the generated answer, or the generic error message.
"""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from app.core.exceptions import CircuitBreakerOpenError, FileStorageError, WhatsAppError
from app.core.keyed_lock import KeyedLock
from app.core.logging import get_logger
from app.core.rate_limiter import RateLimiter
from app.core.validation import PhoneNumberValidator
from app.db.models.tenant_file import TenantFile
from app.domain.services.completion import CompletionContext
from app.domain.services.conversation_history import conversation_key
from app.domain.services.file_relay import FileCategory, FileInfo, FileRelay
from app.domain.services.notification_hub import NotificationHub, SessionEvent
from app.domain.services.transport.base_client import InboundMessage
from app.state_machine.order_flow import OrderFlowHooks, OrderStateMachine, OrderTurn, ProofImage

if TYPE_CHECKING:
    from app.domain.services.session_manager import SessionRecord

logger = get_logger(__name__)

ERROR_REPLY = "Sorry, I encountered an error processing your message. Please try again."

LibraryLookup = Callable[[str, str], Awaitable[Optional[TenantFile]]]


def rate_limit_notice(reason: Optional[str], retry_after_seconds: int) -> str:
    notice = f"⏳ {reason or 'Too many messages.'}"
    if retry_after_seconds > 0:
        notice += f" You can write again in {retry_after_seconds} seconds."
    return notice


class MessagePipeline:
    def __init__(
        self,
        hub: NotificationHub,
        rate_limiter: RateLimiter,
        order_machine: OrderStateMachine,
        file_relay: FileRelay,
        *,
        library_lookup: Optional[LibraryLookup] = None,
        keyed_lock: Optional[KeyedLock] = None,
    ) -> None:
        self.hub = hub
        self.rate_limiter = rate_limiter
        self.order_machine = order_machine
        self.file_relay = file_relay
        self.library_lookup = library_lookup
        self.keyed_lock = keyed_lock or KeyedLock()

    async def handle(self, record: "SessionRecord", message: InboundMessage) -> None:
        if message.from_me or message.chat_id == PhoneNumberValidator.STATUS_BROADCAST:
            return

        customer_id = message.chat_id
        try:
            decision = self.rate_limiter.check_limit(customer_id)
            if not decision.allowed:
                logger.info(
                    "Message rejected by rate limiter",
                    extra_data={
                        "customer": PhoneNumberValidator.mask(customer_id),
                        "reason": decision.reason,
                    },
                )
                await self.send_text(
                    record,
                    customer_id,
                    rate_limit_notice(decision.reason, decision.retry_after_seconds),
                )
                return

            # מצב ההזמנה לפי (tenant, לקוח): כמה sessions של אותו tenant חולקים אותו
            async with self.keyed_lock.acquire((record.tenant_id, customer_id)):
                await self._handle_admitted(record, message)
        except Exception as exc:
            logger.error(
                "Message handling failed",
                extra_data={
                    "customer": PhoneNumberValidator.mask(customer_id),
                    "error": str(exc),
                },
                exc_info=True,
            )
            self.hub.publish(record.session_id, SessionEvent.ERROR, {"message": str(exc)})
            await self._send_error_reply(record, customer_id)

    async def _handle_admitted(self, record: "SessionRecord", message: InboundMessage) -> None:
        customer_id = message.chat_id
        text = (message.text or "").strip()
        media_info: Optional[FileInfo] = None
        image: Optional[ProofImage] = None

        if message.has_media:
            media_info, image = await self._receive_media(record, message)

        self.hub.publish(
            record.session_id,
            SessionEvent.MESSAGE_RECEIVED,
            {
                "from": customer_id,
                "text": text,
                "hasMedia": message.has_media,
                "ts": message.timestamp,
            },
        )

        conversation_id = conversation_key(record.session_id, customer_id)
        mode = record.config.bot_mode
        turn: Optional[OrderTurn] = None

        if mode.order_flow_enabled:
            turn = OrderTurn(
                tenant_id=record.tenant_id,
                customer_id=customer_id,
                text=text,
                mode=mode,
                customer_name=message.sender_name,
                image=image,
                recent_context=record.gateway.history.last_assistant_message(conversation_id),
            )
            flow_reply = await self.order_machine.handle(turn, self._order_hooks(record))
            if flow_reply is not None:
                await self.send_text(record, customer_id, flow_reply.response.text)
                return

        if text and self.library_lookup is not None:
            library_file = await self.library_lookup(record.tenant_id, text)
            if library_file is not None:
                await self._send_library_file(record, customer_id, library_file)
                return

        reply = await record.gateway.generate(
            text,
            CompletionContext(
                sender_name=message.sender_name,
                conversation_id=conversation_id,
                file_info=media_info,
                image=image,
            ),
        )

        if turn is not None:
            opened = await self.order_machine.open_from_reply(turn, reply)
            if opened is not None:
                reply = f"{reply}\n\n{opened.response.text}"

        await self.send_text(record, customer_id, reply)

    async def _receive_media(
        self, record: "SessionRecord", message: InboundMessage
    ) -> tuple[Optional[FileInfo], Optional[ProofImage]]:
        """Download and store an attachment. Failures leave the message text-only."""
        try:
            media = await record.client.download_media(message)
            info = await self.file_relay.store(
                media.data,
                media.mime_type,
                record.tenant_id,
                media.filename or message.filename,
            )
        except (WhatsAppError, CircuitBreakerOpenError, FileStorageError) as exc:
            logger.warning(
                "Media could not be received, continuing without it",
                extra_data={
                    "customer": PhoneNumberValidator.mask(message.chat_id),
                    "error": str(exc),
                },
            )
            return None, None

        self.hub.publish(
            record.session_id,
            SessionEvent.MEDIA_RECEIVED,
            {"from": message.chat_id, **info.to_dict()},
        )
        image = None
        if info.category == FileCategory.IMAGE:
            image = ProofImage(data=media.data, mime_type=media.mime_type, reference=str(info.path))
        return info, image

    def _order_hooks(self, record: "SessionRecord") -> OrderFlowHooks:
        async def notify_owner(owner_id: str, text: str) -> None:
            if not await self.send_text(record, owner_id, text, notify=False):
                raise WhatsAppError(
                    message="session closed before the order could be handed off",
                    details={"session_id": record.session_id},
                )

        return OrderFlowHooks(
            describe_payment_proof=record.gateway.describe_payment_proof,
            notify_owner=notify_owner,
        )

    async def _send_library_file(
        self, record: "SessionRecord", customer_id: str, library_file: TenantFile
    ) -> None:
        if record.closed:
            return
        data = await self.file_relay.read_bytes(library_file.storage_path)
        await record.client.send_media(
            customer_id,
            data,
            library_file.mime_type,
            filename=library_file.file_name,
            caption=library_file.label,
        )
        logger.info(
            "Library file sent",
            extra_data={
                "customer": PhoneNumberValidator.mask(customer_id),
                "file_id": library_file.id,
            },
        )
        self.hub.publish(
            record.session_id,
            SessionEvent.MESSAGE_SENT,
            {"to": customer_id, "text": library_file.label, "file": library_file.file_name, "ts": time.time()},
        )

    async def send_text(
        self, record: "SessionRecord", to: str, text: str, *, notify: bool = True
    ) -> bool:
        """Send through the session's client. Returns False when the session already closed."""
        if record.closed:
            logger.debug(
                "Session closed, dropping outbound message",
                extra_data={"to": PhoneNumberValidator.mask(to)},
            )
            return False

        await record.client.send_text(to, text)
        if notify:
            self.hub.publish(
                record.session_id,
                SessionEvent.MESSAGE_SENT,
                {"to": to, "text": text, "ts": time.time()},
            )
        return True

    async def _send_error_reply(self, record: "SessionRecord", customer_id: str) -> None:
        try:
            await self.send_text(record, customer_id, ERROR_REPLY)
        except (WhatsAppError, CircuitBreakerOpenError) as exc:
            logger.error(
                "Could not deliver error reply",
                extra_data={
                    "customer": PhoneNumberValidator.mask(customer_id),
                    "error": str(exc),
                },
            )
