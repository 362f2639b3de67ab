"""AI provider client shared by every pipeline stage that calls a model.

Wraps model backends with the retry executor and JSON parsing, so
selector inference, AI extraction, translation and summaries all get
the same retry schedule and the same handling of fenced JSON.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from clipaible.executor.retry import call_with_retry
from clipaible.executor.schemas import RetryPolicy
from clipaible.llm.factory import get_backend

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-6"


def parse_llm_json_response(raw_text: str) -> Any:
    """Parse JSON from LLM response, handling markdown code fences.

    LLMs sometimes wrap JSON in ```json ... ``` fences despite being
    told not to, or put a sentence before the object. Fences are stripped,
    and if that still doesn't parse the outermost {...} span is tried.

    Args:
        raw_text: Raw text from LLM response

    Returns:
        Parsed JSON value

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
    """
    content = raw_text.strip()

    # Strip leading markdown fence (```json or ```)
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]

    # Strip trailing fence
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]

    content = content.strip()
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        start, end = content.find("{"), content.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(content[start:end + 1])


class AIClient:
    """Prompt in, parsed response out, through the retry executor.

    Args:
        policy: Retry schedule for every call
        backend_factory: model_id -> backend (injectable for tests)
        sleep: Awaitable sleep handed to the retry executor
        default_model: Used when a call passes no model
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        backend_factory: Callable[[str], Any] = get_backend,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        default_model: Optional[str] = None,
    ):
        self._policy = policy or RetryPolicy()
        self._backend_factory = backend_factory
        self._sleep = sleep
        self._default_model = default_model or DEFAULT_MODEL

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        structured: bool = True,
        label: str = "",
        cancellation_check: Optional[Callable[[], bool]] = None,
    ) -> Any:
        """Call a model and return parsed JSON (structured) or the raw text.

        Raises:
            AuthenticationError: Credentials rejected (not retried)
            json.JSONDecodeError: Structured response was not valid JSON
            Exception: The last upstream failure once retries are exhausted
        """
        model = model or self._default_model
        backend = self._backend_factory(model)
        label = label or model

        async def attempt():
            return await backend.complete(
                system_prompt,
                user_prompt,
                api_key=api_key,
                json_mode=structured,
                label=label,
            )

        result = await call_with_retry(
            attempt,
            self._policy,
            label=label,
            cancellation_check=cancellation_check,
            sleep=self._sleep,
        )

        if not structured:
            return result.content
        try:
            return parse_llm_json_response(result.content)
        except json.JSONDecodeError:
            logger.error(f"[{label}] Response is not valid JSON: {result.content[:300]!r}")
            raise
