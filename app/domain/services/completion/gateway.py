"""
Completion Gateway

One instance per session. Wraps an OpenAI-compatible chat-completions client
and owns the session's conversation history.

Every failure is turned into a customer-facing apology; ``generate`` never
raises for backend problems. On failure the pending user turn is removed, so
history looks exactly as it did before the call.
"""
import base64
from dataclasses import dataclass
from typing import Optional

import openai
from openai import AsyncOpenAI

from app.core.circuit_breaker import CircuitBreaker, get_completion_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    CompletionAuthError,
    CompletionError,
    CompletionQuotaExceededError,
    CompletionUnavailableError,
    TRANSIENT_ERROR_REPLY,
)
from app.core.logging import get_logger
from app.domain.services.conversation_history import ConversationHistory
from app.domain.services.completion.prompts import build_system_prompt
from app.domain.services.file_relay import FileInfo
from app.state_machine.bot_modes import BotMode, ConversationalMode
from app.state_machine.order_flow import PAYMENT_PROOF_FALLBACK, ProofImage

logger = get_logger(__name__)

QUOTA_ERROR_CODE = "insufficient_quota"
_AUTH_STATUS_CODES = (401, 403)
_AUTH_ERROR_CODES = ("invalid_api_key",)

PAYMENT_PROOF_INSTRUCTION = (
    "This image should be a payment receipt or bank transfer confirmation. "
    "Extract the amount, currency, date, transaction reference, and the payer "
    "and recipient names if visible. Answer in one short plain-text paragraph. "
    "If the image is not a payment receipt, say so."
)


@dataclass
class CompletionContext:
    sender_name: Optional[str] = None
    conversation_id: Optional[str] = None
    file_info: Optional[FileInfo] = None
    image: Optional[ProofImage] = None


def classify_completion_error(exc: Exception) -> CompletionError:
    """Map an SDK exception to quota / auth / transient"""
    if isinstance(exc, CompletionError):
        return exc

    code = getattr(exc, "code", None)
    error_type = getattr(exc, "type", None)
    status_code = getattr(exc, "status_code", None)
    details = {"error_type": type(exc).__name__, "status_code": status_code}

    if QUOTA_ERROR_CODE in (code, error_type):
        return CompletionQuotaExceededError(details=details)

    if (
        isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError))
        or status_code in _AUTH_STATUS_CODES
        or code in _AUTH_ERROR_CODES
    ):
        return CompletionAuthError(details=details)

    return CompletionUnavailableError(message=str(exc) or type(exc).__name__, details=details)


class CompletionGateway:
    """Chat replies for one session"""

    def __init__(
        self,
        history: Optional[ConversationHistory] = None,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = settings.COMPLETION_BASE_URL,
        model: str = settings.COMPLETION_MODEL,
        vision_model: str = settings.COMPLETION_VISION_MODEL,
        client: Optional[AsyncOpenAI] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        display_name: Optional[str] = None,
        business_data: Optional[str] = None,
        bot_mode: Optional[BotMode] = None,
        max_tokens: int = settings.COMPLETION_MAX_TOKENS,
        temperature: float = settings.COMPLETION_TEMPERATURE,
    ) -> None:
        self.history = history or ConversationHistory()
        self.model = model
        self.vision_model = vision_model
        self.display_name = display_name
        self.business_data = business_data
        self.bot_mode = bot_mode or ConversationalMode()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.circuit_breaker = circuit_breaker or get_completion_circuit_breaker()

        key = api_key or settings.COMPLETION_API_KEY
        if client is None and key:
            # ניסיון אחד לכל הודעה; ה-circuit breaker מטפל בתקלות חוזרות
            client = AsyncOpenAI(
                api_key=key,
                base_url=base_url,
                timeout=settings.COMPLETION_TIMEOUT_SECONDS,
                max_retries=0,
            )
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None

    def system_prompt(self, sender_name: Optional[str] = None) -> str:
        return build_system_prompt(self.display_name, self.business_data, self.bot_mode, sender_name)

    def describe_file(self, file_info: FileInfo) -> str:
        return file_info.describe()

    def clear_history(self, conversation_id: str) -> None:
        self.history.clear(conversation_id)

    async def _complete(self, messages: list[dict], model: str) -> str:
        if self._client is None:
            raise CompletionAuthError("no completion API key configured")
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except openai.OpenAIError as exc:
            raise classify_completion_error(exc) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise CompletionUnavailableError("completion backend returned an empty reply")
        return content.strip()

    async def generate(self, message: str, context: CompletionContext) -> str:
        """
        Produce the assistant reply for one customer message.

        Returns the reply text, or an apology string on any backend failure.
        """
        conversation_id = context.conversation_id or "default"
        user_content = message or ""
        if context.file_info is not None:
            user_content = f"{user_content}\n\n{self.describe_file(context.file_info)}".strip()

        self.history.append_user(conversation_id, user_content)
        messages = [{"role": "system", "content": self.system_prompt(context.sender_name)}]
        messages.extend(self.history.get(conversation_id))

        try:
            reply = await self.circuit_breaker.execute(self._complete, messages, self.model)
        except CompletionError as exc:
            self.history.discard_trailing_user(conversation_id)
            logger.warning(
                "Completion failed",
                extra_data={
                    "conversation_id": conversation_id,
                    "error_code": exc.error_code.value,
                    "error": exc.message,
                },
            )
            return exc.user_message
        except CircuitBreakerOpenError as exc:
            self.history.discard_trailing_user(conversation_id)
            logger.warning(
                "Completion circuit open",
                extra_data={"conversation_id": conversation_id, "details": exc.details},
            )
            return TRANSIENT_ERROR_REPLY

        self.history.append_assistant(conversation_id, reply)
        return reply

    async def describe_payment_proof(self, image: ProofImage) -> str:
        """Read a payment receipt image; falls back to a fixed note on failure"""
        encoded = base64.b64encode(image.data).decode("ascii")
        data_url = f"data:{image.mime_type or 'image/jpeg'};base64,{encoded}"
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": PAYMENT_PROOF_INSTRUCTION},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        ]
        try:
            return await self.circuit_breaker.execute(self._complete, messages, self.vision_model)
        except (CompletionError, CircuitBreakerOpenError) as exc:
            logger.warning(
                "Payment proof reading failed",
                extra_data={"reference": image.reference, "error": str(exc)},
            )
            return PAYMENT_PROOF_FALLBACK
