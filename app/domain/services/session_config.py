"""
Resolved configuration of one session.

Built once when a session is created (from the tenant row or from inline
config on the create request) and never re-read while the session runs.
"""
from dataclasses import dataclass
from typing import Optional

from app.core.exceptions import TenantConfigurationError
from app.core.validation import IdentifierValidator
from app.state_machine.bot_modes import BotMode, build_bot_mode


@dataclass(frozen=True)
class SessionConfig:
    tenant_id: str
    bot_mode: BotMode
    display_name: Optional[str] = None
    business_data: Optional[str] = None
    completion_api_key: Optional[str] = None


def build_session_config(
    tenant_id: str,
    *,
    display_name: Optional[str] = None,
    bot_mode: Optional[str] = None,
    business_data: Optional[str] = None,
    completion_api_key: Optional[str] = None,
    owner_outward_id: Optional[str] = None,
    bank_reference: Optional[str] = None,
    accept_cod: bool = False,
    booking_instructions: Optional[str] = None,
    tracking_instructions: Optional[str] = None,
) -> SessionConfig:
    """
    Raises:
        TenantConfigurationError: bad tenant id, unknown mode, or a mode
            missing a field it requires
    """
    if not IdentifierValidator.validate(tenant_id):
        raise TenantConfigurationError(f"Invalid tenant id: {tenant_id!r}", field="tenant_id")

    mode = build_bot_mode(
        bot_mode,
        owner_outward_id=owner_outward_id,
        bank_reference=bank_reference,
        accept_cod=accept_cod,
        booking_instructions=booking_instructions,
        tracking_instructions=tracking_instructions,
    )
    return SessionConfig(
        tenant_id=tenant_id,
        bot_mode=mode,
        display_name=display_name,
        business_data=business_data,
        completion_api_key=completion_api_key or None,
    )
