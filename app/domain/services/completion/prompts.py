"""
System instruction for the completion backend.

Built per call from the tenant's business data and the session's bot mode.
"""
from typing import Optional

from app.state_machine.bot_modes import BotMode, ConversationalMode

NO_BUSINESS_DATA = "(The business has not provided any product or service information yet.)"

COMMUNICATION_RULES = """\
COMMUNICATION RULES:
1. Always reply in the same language the customer writes in.
2. Only use the business information above. Never invent products, prices or policies.
3. If something is not offered, say so plainly.
4. When the customer gives an email or contact detail, repeat it back exactly as written.
5. Keep replies short (one to three sentences) but complete.
6. Be professional and friendly, like a helpful shop assistant."""


def build_system_prompt(
    display_name: Optional[str],
    business_data: Optional[str],
    bot_mode: Optional[BotMode] = None,
    sender_name: Optional[str] = None,
) -> str:
    mode = bot_mode or ConversationalMode()
    business = (business_data or "").strip() or NO_BUSINESS_DATA
    who = f" for {display_name}" if display_name else ""

    sections = [
        f"You are a WhatsApp assistant{who}.",
        mode.prompt_guidance(),
        f"BUSINESS INFORMATION:\n{business}",
        COMMUNICATION_RULES,
    ]
    if sender_name:
        sections.append(f"You are chatting with {sender_name}.")
    return "\n\n".join(sections)
