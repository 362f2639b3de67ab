"""LLM provider access.

Async backends for Anthropic, Gemini and OpenRouter, resolved by model
id, plus the AIClient that every pipeline stage calls through.
"""

from clipaible.llm.backends import (
    AnthropicBackend,
    GeminiBackend,
    LLMCallResult,
    ModelBackend,
    OpenRouterBackend,
)
from clipaible.llm.client import AIClient, parse_llm_json_response
from clipaible.llm.factory import get_backend

__all__ = [
    "AIClient",
    "parse_llm_json_response",
    "LLMCallResult",
    "ModelBackend",
    "AnthropicBackend",
    "GeminiBackend",
    "OpenRouterBackend",
    "get_backend",
]
