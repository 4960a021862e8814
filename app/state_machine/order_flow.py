"""
Order State Machine - per (tenant, customer) purchase flow

NONE → AWAITING_CONFIRMATION → AWAITING_PAYMENT → AWAITING_INFO → COMPLETED

Only sessions in ecommerce mode route messages here. Any exception while a
step runs drops the customer's entry and tells them to contact support, so a
wedged entry can never block that customer's later messages.

Concurrent messages from the same customer must be serialized by the caller
(MessagePipeline holds a per-customer lock); the map itself is guarded here.
"""
import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from app.core.config import settings
from app.core.exceptions import InvalidStateTransitionError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer, extract_email
from app.db.models.customer_order import OrderStatus, PaymentMethod
from app.domain.services.order_repository import OrderRepository
from app.state_machine.bot_modes import EcommerceMode
from app.state_machine.intents import IntentDetector, KeywordIntentDetector
from app.state_machine.states import OrderState, is_valid_order_transition

logger = get_logger(__name__)

_SUMMARY_MAX_CHARS = 500
_NAME_MAX_CHARS = 200

PAYMENT_PROOF_FALLBACK = "Payment proof image received (automatic reading unavailable)."

SUPPORT_REPLY = (
    "Sorry, something went wrong with your order. "
    "Please contact the shop directly so we can help you."
)
CANCELLED_REPLY = "Your order has been cancelled. Let us know if you need anything else."
PROOF_REQUEST_REPLY = (
    "Thank you! Please send a photo or screenshot of the payment receipt "
    "so we can verify it."
)
INFO_REQUEST = (
    "Please send your full name, delivery address and email in one message, for example:\n"
    "John Doe, 12 Main St, john@example.com"
)


class MessageResponse:
    """Reply to be sent to the customer"""

    def __init__(self, text: str):
        self.text = text

    def __repr__(self) -> str:
        return f"MessageResponse({self.text!r})"


@dataclass
class ProofImage:
    """Image attached to a customer message"""
    data: bytes
    mime_type: str
    reference: Optional[str] = None  # מיקום הקובץ השמור


@dataclass
class OrderTurn:
    """One inbound customer message, as the flow sees it"""
    tenant_id: str
    customer_id: str
    text: str
    mode: EcommerceMode
    customer_name: Optional[str] = None
    image: Optional[ProofImage] = None
    # ההודעה האחרונה של הבוט — לרוב שם המוצר מופיע שם ולא ב"I want it"
    recent_context: Optional[str] = None


@dataclass
class OrderFlowHooks:
    """Side effects the flow needs from its session"""
    describe_payment_proof: Callable[[ProofImage], Awaitable[str]]
    notify_owner: Callable[[str, str], Awaitable[None]]


@dataclass
class OrderContext:
    tenant_id: str
    customer_id: str
    order_id: int
    summary: str
    state: OrderState = OrderState.AWAITING_CONFIRMATION
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    payment_proof_ref: Optional[str] = None
    payment_details: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class FlowReply:
    response: MessageResponse
    state: OrderState
    order_id: Optional[int] = None


@dataclass
class CustomerDetails:
    name: Optional[str]
    email: Optional[str]
    address: Optional[str]


def parse_customer_details(text: str) -> CustomerDetails:
    """
    Pull name, email and address out of a free-text message.

    Name is the first line, else the first comma-separated segment, else the
    first three words; what is left (minus the email) is the address.
    """
    email = extract_email(text)
    remaining = text.replace(email, " ") if email else text

    lines = [line.strip(" ,;") for line in remaining.splitlines() if line.strip(" ,;")]
    name: Optional[str] = None
    address: Optional[str] = None

    if len(lines) > 1:
        name = lines[0]
        address = ", ".join(lines[1:])
    elif lines:
        segments = [s.strip() for s in re.split(r"[,;]", lines[0]) if s.strip()]
        if len(segments) > 1:
            name = segments[0]
            address = ", ".join(segments[1:])
        elif segments:
            words = segments[0].split()
            name = " ".join(words[:3])
            address = " ".join(words[3:]) or None

    if name:
        name = name[:_NAME_MAX_CHARS]
    return CustomerDetails(name=name or None, email=email, address=address or None)


def build_handoff_summary(context: OrderContext) -> str:
    """Message sent to the shop owner when an order completes"""
    phone = PhoneNumberValidator.strip_chat_suffix(context.customer_id)
    if context.payment_method == PaymentMethod.COD:
        payment = "Cash on delivery"
    else:
        payment = f"Bank transfer: {context.payment_details or 'no details'}"

    return "\n".join([
        f"🛒 New order #{context.order_id}",
        f"Customer: {context.customer_name or '-'} (+{phone})",
        f"Email: {context.customer_email or '-'}",
        f"Address: {context.customer_address or '-'}",
        f"Order: {context.summary}",
        f"Payment: {payment}",
    ])


class OrderStateMachine:
    """Drives the purchase flow for every (tenant, customer) pair"""

    def __init__(
        self,
        repository: OrderRepository,
        intent_detector: Optional[IntentDetector] = None,
        *,
        confirmation_token: str = settings.ORDER_CONFIRMATION_TOKEN,
        info_min_chars: int = settings.ORDER_INFO_MIN_CHARS,
        stale_after_seconds: float = settings.ORDER_STALE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repository = repository
        self.intent_detector = intent_detector or KeywordIntentDetector()
        self.confirmation_token = confirmation_token.strip()
        self.info_min_chars = info_min_chars
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._contexts: dict[tuple[str, str], OrderContext] = {}
        self._lock = asyncio.Lock()

    # ── reads ──

    def get_state(self, tenant_id: str, customer_id: str) -> OrderState:
        context = self._contexts.get((tenant_id, customer_id))
        return context.state if context else OrderState.NONE

    def get_context(self, tenant_id: str, customer_id: str) -> Optional[OrderContext]:
        return self._contexts.get((tenant_id, customer_id))

    def active_orders(self) -> int:
        return len(self._contexts)

    # ── entry points ──

    async def handle(self, turn: OrderTurn, hooks: OrderFlowHooks) -> Optional[FlowReply]:
        """
        Feed one customer message into the flow.

        Returns None when the customer has no open order and the message shows
        no purchase intent — the caller falls through to normal chat.
        """
        key = (turn.tenant_id, turn.customer_id)
        context = self._contexts.get(key)

        try:
            if context is None:
                if not self.intent_detector.is_purchase_intent(turn.text):
                    return None
                summary = turn.text
                if turn.recent_context:
                    summary = f"{turn.recent_context}\nCustomer: {turn.text}"
                return await self._open_order(turn, summary)

            handler = self._get_handler(context.state)
            return await handler(context, turn, hooks)
        except Exception as exc:
            return await self._fail(key, exc)

    async def open_from_reply(self, turn: OrderTurn, reply: str) -> Optional[FlowReply]:
        """Open an order when the generated reply itself invites the customer to buy"""
        key = (turn.tenant_id, turn.customer_id)
        if key in self._contexts or not self.intent_detector.reply_offers_order(reply):
            return None
        try:
            return await self._open_order(turn, f"{reply}\nCustomer: {turn.text}")
        except Exception as exc:
            return await self._fail(key, exc)

    async def reset(self, tenant_id: str, customer_id: str) -> bool:
        """Drop a customer's entry without touching the stored order"""
        async with self._lock:
            return self._contexts.pop((tenant_id, customer_id), None) is not None

    async def evict_stale(self, now: Optional[float] = None) -> int:
        """
        Drop entries with no progress for ``stale_after_seconds``.

        The stored rows are cancelled by the expire_stale_orders task on the
        same threshold; a customer coming back afterwards starts over.
        """
        now = self._clock() if now is None else now
        async with self._lock:
            stale = [
                key for key, context in self._contexts.items()
                if now - context.updated_at > self.stale_after_seconds
            ]
            for key in stale:
                del self._contexts[key]

        if stale:
            logger.info(
                "Evicted stale order entries",
                extra_data={"count": len(stale), "stale_after_seconds": self.stale_after_seconds},
            )
        return len(stale)

    # ── dispatch ──

    def _get_handler(self, state: OrderState):
        handlers = {
            OrderState.AWAITING_CONFIRMATION: self._handle_awaiting_confirmation,
            OrderState.AWAITING_PAYMENT: self._handle_awaiting_payment,
            OrderState.AWAITING_INFO: self._handle_awaiting_info,
        }
        return handlers.get(state, self._handle_unknown)

    def _transition(self, context: OrderContext, new_state: OrderState) -> None:
        if not is_valid_order_transition(context.state, new_state):
            raise InvalidStateTransitionError(
                context.state.value,
                new_state.value,
                key=f"{context.tenant_id}:{PhoneNumberValidator.mask(context.customer_id)}",
            )
        logger.info(
            "Order state transition",
            extra_data={
                "tenant_id": context.tenant_id,
                "customer": PhoneNumberValidator.mask(context.customer_id),
                "order_id": context.order_id,
                "old_state": context.state.value,
                "new_state": new_state.value,
            },
        )
        context.state = new_state
        context.updated_at = self._clock()

    # ── prompts ──

    def _confirmation_prompt(self, context: OrderContext) -> str:
        return (
            f"🛒 Order #{context.order_id}\n"
            f"{TextSanitizer.truncate(context.summary, 200)}\n\n"
            f"To confirm your order, reply with the word {self.confirmation_token}"
        )

    def _payment_instructions(self, mode: EcommerceMode) -> str:
        if mode.bank_reference:
            text = (
                "✅ Order confirmed!\n\n"
                f"Please pay by bank transfer:\n{mode.bank_reference}\n\n"
                "Then send a photo or screenshot of the payment receipt here."
            )
        else:
            text = (
                "✅ Order confirmed!\n\n"
                "The shop will share its payment details with you. "
                "Once paid, send a photo or screenshot of the receipt here."
            )
        if mode.accept_cod:
            text += '\n\nYou can also pay cash on delivery: just reply "cash on delivery".'
        return text

    def _is_confirmation_token(self, text: str) -> bool:
        cleaned = (text or "").strip().strip(".!?,;:\"'*").strip()
        return cleaned.upper() == self.confirmation_token.upper()

    # ── handlers ──

    async def _open_order(self, turn: OrderTurn, summary: str) -> FlowReply:
        summary = TextSanitizer.sanitize(summary, max_length=_SUMMARY_MAX_CHARS)
        order_id = await self.repository.create_order(turn.tenant_id, turn.customer_id, summary)
        now = self._clock()
        context = OrderContext(
            tenant_id=turn.tenant_id,
            customer_id=turn.customer_id,
            order_id=order_id,
            summary=summary,
            customer_name=turn.customer_name,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._contexts[(turn.tenant_id, turn.customer_id)] = context

        logger.info(
            "Order opened",
            extra_data={
                "tenant_id": turn.tenant_id,
                "customer": PhoneNumberValidator.mask(turn.customer_id),
                "order_id": order_id,
            },
        )
        return FlowReply(
            MessageResponse(self._confirmation_prompt(context)),
            context.state,
            order_id,
        )

    async def _handle_awaiting_confirmation(
        self, context: OrderContext, turn: OrderTurn, hooks: OrderFlowHooks
    ) -> FlowReply:
        if self._is_confirmation_token(turn.text):
            self._transition(context, OrderState.AWAITING_PAYMENT)
            await self.repository.update_order(
                context.order_id, order_state=OrderStatus.AWAITING_PAYMENT
            )
            return FlowReply(
                MessageResponse(self._payment_instructions(turn.mode)),
                context.state,
                context.order_id,
            )

        if self.intent_detector.is_cancellation(turn.text):
            return await self._cancel(context)

        # כל קלט אחר — שולחים שוב את בקשת האישור בלי להתקדם
        return FlowReply(
            MessageResponse(self._confirmation_prompt(context)),
            context.state,
            context.order_id,
        )

    async def _handle_awaiting_payment(
        self, context: OrderContext, turn: OrderTurn, hooks: OrderFlowHooks
    ) -> FlowReply:
        if turn.image is not None:
            details = (await hooks.describe_payment_proof(turn.image) or "").strip()
            context.payment_details = details or PAYMENT_PROOF_FALLBACK
            context.payment_proof_ref = turn.image.reference
            self._transition(context, OrderState.AWAITING_INFO)
            await self.repository.update_order(
                context.order_id,
                payment_method=PaymentMethod.BANK_TRANSFER,
                payment_proof_ref=context.payment_proof_ref,
                payment_details=context.payment_details,
                order_state=OrderStatus.AWAITING_INFO,
            )
            return FlowReply(
                MessageResponse(f"📄 Payment proof received, thank you!\n\n{INFO_REQUEST}"),
                context.state,
                context.order_id,
            )

        if turn.mode.accept_cod and self.intent_detector.is_cash_on_delivery_request(turn.text):
            context.payment_method = PaymentMethod.COD
            self._transition(context, OrderState.AWAITING_INFO)
            await self.repository.update_order(
                context.order_id,
                payment_method=PaymentMethod.COD,
                order_state=OrderStatus.AWAITING_INFO,
            )
            return FlowReply(
                MessageResponse(f"👍 Cash on delivery noted.\n\n{INFO_REQUEST}"),
                context.state,
                context.order_id,
            )

        if self.intent_detector.is_payment_claim(turn.text):
            return FlowReply(MessageResponse(PROOF_REQUEST_REPLY), context.state, context.order_id)

        if self.intent_detector.is_cancellation(turn.text):
            return await self._cancel(context)

        return FlowReply(
            MessageResponse(self._payment_instructions(turn.mode)),
            context.state,
            context.order_id,
        )

    async def _handle_awaiting_info(
        self, context: OrderContext, turn: OrderTurn, hooks: OrderFlowHooks
    ) -> FlowReply:
        text = (turn.text or "").strip()
        if len(text) < self.info_min_chars:
            if text and self.intent_detector.is_cancellation(text):
                return await self._cancel(context)
            return FlowReply(MessageResponse(INFO_REQUEST), context.state, context.order_id)

        details = parse_customer_details(text)
        context.customer_name = details.name or context.customer_name
        context.customer_email = details.email
        context.customer_address = details.address

        await self.repository.update_order(
            context.order_id,
            customer_name=context.customer_name,
            customer_email=context.customer_email,
            customer_address=context.customer_address,
        )

        await hooks.notify_owner(turn.mode.owner_outward_id, build_handoff_summary(context))
        await self.repository.complete_order(context.order_id)
        self._transition(context, OrderState.COMPLETED)

        async with self._lock:
            self._contexts.pop((context.tenant_id, context.customer_id), None)

        greeting = f"Thank you {context.customer_name}!" if context.customer_name else "Thank you!"
        return FlowReply(
            MessageResponse(
                f"🎉 {greeting} Your order #{context.order_id} has been sent to the shop. "
                "They will contact you soon to arrange delivery."
            ),
            OrderState.COMPLETED,
            context.order_id,
        )

    async def _handle_unknown(
        self, context: OrderContext, turn: OrderTurn, hooks: OrderFlowHooks
    ) -> FlowReply:
        raise InvalidStateTransitionError(context.state.value, "handler", key=str(context.order_id))

    async def _cancel(self, context: OrderContext) -> FlowReply:
        self._transition(context, OrderState.CANCELLED)
        await self.repository.cancel_order(context.order_id)
        async with self._lock:
            self._contexts.pop((context.tenant_id, context.customer_id), None)
        return FlowReply(MessageResponse(CANCELLED_REPLY), OrderState.CANCELLED, context.order_id)

    async def _fail(self, key: tuple[str, str], exc: Exception) -> FlowReply:
        async with self._lock:
            context = self._contexts.pop(key, None)

        logger.error(
            "Order flow failed, customer state reset",
            extra_data={
                "tenant_id": key[0],
                "customer": PhoneNumberValidator.mask(key[1]),
                "state": context.state.value if context else OrderState.NONE.value,
                "order_id": context.order_id if context else None,
                "error": str(exc),
            },
            exc_info=True,
        )

        if context is not None:
            try:
                await self.repository.cancel_order(context.order_id)
            except Exception as cancel_exc:
                logger.warning(
                    "Could not cancel order after flow failure",
                    extra_data={"order_id": context.order_id, "error": str(cancel_exc)},
                )

        return FlowReply(MessageResponse(SUPPORT_REPLY), OrderState.NONE)

