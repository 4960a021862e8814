"""
Bot modes — which conversational sub-flow a session runs.

A closed set of frozen variants, each carrying only the fields it needs.
``build_bot_mode`` is called once when a session is configured; message
handling only ever asks the variant, never re-reads raw config.
"""
from dataclasses import dataclass
from typing import Optional, Union

from app.core.exceptions import TenantConfigurationError
from app.db.models.tenant import BotModeName


@dataclass(frozen=True)
class ConversationalMode:
    name = BotModeName.CONVERSATIONAL
    order_flow_enabled = False

    def prompt_guidance(self) -> str:
        return (
            "Answer customer questions about the business helpfully and concisely, "
            "using only the business information provided."
        )


@dataclass(frozen=True)
class EcommerceMode:
    owner_outward_id: str
    bank_reference: Optional[str] = None
    accept_cod: bool = False

    name = BotModeName.ECOMMERCE
    order_flow_enabled = True

    def prompt_guidance(self) -> str:
        lines = [
            "You are the sales assistant of an online shop.",
            "Help customers pick products, quote prices from the business information, "
            "and when a customer wants to buy, say clearly that you can take the order.",
            "Never invent products or prices.",
        ]
        if self.accept_cod:
            lines.append("Cash on delivery is accepted in addition to bank transfer.")
        return " ".join(lines)


@dataclass(frozen=True)
class AppointmentMode:
    booking_instructions: Optional[str] = None

    name = BotModeName.APPOINTMENT
    order_flow_enabled = False

    def prompt_guidance(self) -> str:
        text = (
            "You book appointments for the business. Ask for the desired service, "
            "date and time, and the customer's name, then confirm the details back."
        )
        if self.booking_instructions:
            text += f" Booking rules: {self.booking_instructions}"
        return text


@dataclass(frozen=True)
class DeliveryMode:
    tracking_instructions: Optional[str] = None

    name = BotModeName.DELIVERY
    order_flow_enabled = False

    def prompt_guidance(self) -> str:
        text = (
            "You answer delivery questions: delivery areas, delays, and order status. "
            "Ask for the order number when the customer wants tracking."
        )
        if self.tracking_instructions:
            text += f" Tracking information: {self.tracking_instructions}"
        return text


BotMode = Union[ConversationalMode, EcommerceMode, AppointmentMode, DeliveryMode]


def build_bot_mode(
    mode: Union[str, BotModeName, None],
    *,
    owner_outward_id: Optional[str] = None,
    bank_reference: Optional[str] = None,
    accept_cod: bool = False,
    booking_instructions: Optional[str] = None,
    tracking_instructions: Optional[str] = None,
) -> BotMode:
    """
    Resolve raw tenant configuration into a bot-mode variant.

    Raises:
        TenantConfigurationError: unknown mode, or ecommerce without an owner id
    """
    if mode is None:
        return ConversationalMode()

    try:
        name = BotModeName(mode)
    except ValueError:
        raise TenantConfigurationError(f"Unknown bot mode: {mode}", field="bot_mode")

    if name == BotModeName.CONVERSATIONAL:
        return ConversationalMode()

    if name == BotModeName.ECOMMERCE:
        if not owner_outward_id or not owner_outward_id.strip():
            raise TenantConfigurationError(
                "Ecommerce mode requires the owner's WhatsApp id for order handoff",
                field="owner_outward_id",
            )
        return EcommerceMode(
            owner_outward_id=owner_outward_id.strip(),
            bank_reference=bank_reference,
            accept_cod=bool(accept_cod),
        )

    if name == BotModeName.APPOINTMENT:
        return AppointmentMode(booking_instructions=booking_instructions)

    return DeliveryMode(tracking_instructions=tracking_instructions)
