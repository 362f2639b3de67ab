"""Model-ID to backend dispatch.

A model ID names its provider by prefix: 'claude-' (Anthropic),
'gemini-' (Google) or 'openrouter/' (anything routed through OpenRouter).
Backends hold no per-call state, so one instance per model ID is kept and
shared by every stage of every job.
"""

import logging
from functools import lru_cache
from typing import Callable

from clipaible.executor.errors import ValidationError
from clipaible.llm.backends import AnthropicBackend, GeminiBackend, ModelBackend, OpenRouterBackend

logger = logging.getLogger(__name__)

# Checked in order; the first matching prefix wins
BACKEND_PREFIXES: tuple[tuple[str, Callable[[str], ModelBackend]], ...] = (
    ("claude-", AnthropicBackend),
    ("gemini-", GeminiBackend),
    ("openrouter/", OpenRouterBackend),
)


def supported_prefixes() -> list[str]:
    return [prefix for prefix, _ in BACKEND_PREFIXES]


@lru_cache(maxsize=None)
def get_backend(model_id: str) -> ModelBackend:
    """Backend for a model ID, created on first use.

    Raises:
        ValidationError: If no provider prefix matches
    """
    model_id = (model_id or "").strip()
    for prefix, backend_cls in BACKEND_PREFIXES:
        if model_id.startswith(prefix) and len(model_id) > len(prefix):
            logger.debug(f"Model {model_id} -> {backend_cls.__name__}")
            return backend_cls(model_id)
    raise ValidationError(
        f"Unknown model {model_id!r}; expected an ID starting with one of: "
        f"{', '.join(supported_prefixes())}"
    )
