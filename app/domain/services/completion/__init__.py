"""
Completion Gateway - chat replies and payment-proof reading through an
OpenAI-compatible backend
"""
from app.domain.services.completion.gateway import CompletionContext, CompletionGateway
from app.domain.services.completion.prompts import build_system_prompt

__all__ = ["CompletionContext", "CompletionGateway", "build_system_prompt"]
