"""LLM backend abstraction for multi-provider support.

Provides a unified async interface for calling different LLM providers
(Anthropic Claude, Google Gemini, OpenRouter) with a consistent response
format.

Each backend handles provider-specific concerns:
- Client creation and timeout configuration
- JSON-mode hints where the provider supports them
- Response parsing and token counting
- Mapping provider errors onto the pipeline's error taxonomy
  (AuthenticationError, TransientError with status_code/retry_after)

The AIClient (client.py) handles provider-agnostic concerns:
- Retry with the configured delay schedule
- JSON parsing of structured responses
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from clipaible.executor.errors import AuthenticationError, StepTimeout, TransientError

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Normalized response from any LLM backend."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int


# Shared timeout for provider HTTP calls
PROVIDER_TIMEOUT = httpx.Timeout(connect=30.0, read=300.0, write=60.0, pool=30.0)

DEFAULT_MAX_TOKENS = 16_000


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (integer-seconds form only)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def error_for_status(status: int, message: str, retry_after: Optional[float] = None) -> Exception:
    """Map an HTTP status from a provider to the pipeline's error types."""
    if status in (401, 403):
        return AuthenticationError(message, status_code=status)
    return TransientError(message, status_code=status, retry_after=retry_after)


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    @property
    def model_id(self) -> str: ...

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult: ...


class AnthropicBackend:
    """Anthropic Claude backend (official SDK, async client)."""

    def __init__(self, model_id: str = "claude-sonnet-4-6"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult:
        import anthropic

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise AuthenticationError("ANTHROPIC_API_KEY not set and no API key supplied")

        client = anthropic.AsyncAnthropic(api_key=key, timeout=PROVIDER_TIMEOUT, max_retries=0)
        start_time = time.time()

        logger.info(
            f"[{label}] Anthropic call: model={self._model_id}, "
            f"~{(len(system_prompt) + len(user_message)) // 4:,} input tokens"
        )

        try:
            response = await client.messages.create(
                model=self._model_id,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise AuthenticationError(str(e), status_code=e.status_code) from e
        except anthropic.APIStatusError as e:
            retry_after = parse_retry_after(e.response.headers.get("retry-after"))
            raise error_for_status(e.status_code, str(e), retry_after) from e
        except anthropic.APITimeoutError as e:
            raise StepTimeout(f"[{label}] Anthropic request timed out") from e
        except anthropic.APIConnectionError as e:
            raise TransientError(f"Network error contacting Anthropic: {e}") from e
        finally:
            await client.close()

        duration_ms = int((time.time() - start_time) * 1000)
        raw_text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not raw_text.strip():
            raise TransientError(f"[{label}] Empty response from {self._model_id}")

        logger.info(
            f"[{label}] Completed: {response.usage.input_tokens}+"
            f"{response.usage.output_tokens} tokens, {duration_ms}ms"
        )
        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=duration_ms,
        )


class GeminiBackend:
    """Google Gemini backend.

    Requires GEMINI_API_KEY (or an explicit key) and the google-genai package.
    """

    def __init__(self, model_id: str = "gemini-2.5-flash"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    def _get_client(self, api_key: Optional[str]):
        """Get a Gemini client. Lazy import to keep google-genai off the import path."""
        try:
            from google import genai
        except ImportError:
            raise RuntimeError(
                "google-genai package not installed. "
                "Install with: pip install google-genai"
            )

        key = api_key or os.environ.get("GEMINI_API_KEY")
        if not key:
            raise AuthenticationError("GEMINI_API_KEY not set and no API key supplied")
        return genai.Client(api_key=key)

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult:
        client = self._get_client(api_key)
        from google import genai
        from google.genai import errors as genai_errors

        start_time = time.time()

        config_kwargs: dict[str, Any] = {
            "system_instruction": system_prompt,
            "max_output_tokens": max_tokens,
        }
        if json_mode:
            config_kwargs["response_mime_type"] = "application/json"

        logger.info(
            f"[{label}] Gemini call: model={self._model_id}, "
            f"~{(len(system_prompt) + len(user_message)) // 4:,} input tokens"
        )

        try:
            response = await client.aio.models.generate_content(
                model=self._model_id,
                contents=user_message,
                config=genai.types.GenerateContentConfig(**config_kwargs),
            )
        except genai_errors.APIError as e:
            raise error_for_status(int(e.code or 500), str(e)) from e
        except httpx.TimeoutException as e:
            raise StepTimeout(f"[{label}] Gemini request timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"Network error contacting Gemini: {e}") from e

        duration_ms = int((time.time() - start_time) * 1000)

        raw_text = ""
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts or []:
                if not getattr(part, "thought", False):
                    raw_text += getattr(part, "text", "") or ""

        if not raw_text.strip():
            raise TransientError(f"[{label}] Empty response from {self._model_id}")

        usage = getattr(response, "usage_metadata", None)
        input_tokens = getattr(usage, "prompt_token_count", None) or len(system_prompt + user_message) // 4
        output_tokens = getattr(usage, "candidates_token_count", None) or len(raw_text) // 4

        logger.info(f"[{label}] Gemini completed: {input_tokens}+{output_tokens} tokens, {duration_ms}ms")
        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
        )


class OpenRouterBackend:
    """OpenRouter backend (OpenAI-compatible chat completions over httpx).

    Model ids look like 'openrouter/deepseek/deepseek-r1'; the prefix is
    stripped before the request.
    """

    API_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(self, model_id: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._model_id = model_id
        self._transport = transport

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider_model(self) -> str:
        return self._model_id.removeprefix("openrouter/")

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult:
        key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not key:
            raise AuthenticationError("OPENROUTER_API_KEY not set and no API key supplied")

        payload: dict[str, Any] = {
            "model": self.provider_model,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        start_time = time.time()
        logger.info(f"[{label}] OpenRouter call: model={self.provider_model}")

        try:
            async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    self.API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {key}"},
                )
        except httpx.TimeoutException as e:
            raise StepTimeout(f"[{label}] OpenRouter request timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"Network error contacting OpenRouter: {e}") from e

        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                f"OpenRouter error {response.status_code}: {response.text[:500]}",
                parse_retry_after(response.headers.get("retry-after")),
            )

        data = response.json()
        duration_ms = int((time.time() - start_time) * 1000)

        choices = data.get("choices") or []
        raw_text = (choices[0].get("message", {}).get("content") or "") if choices else ""
        if not raw_text.strip():
            raise TransientError(f"[{label}] Empty response from {self._model_id}")

        usage = data.get("usage") or {}
        logger.info(
            f"[{label}] OpenRouter completed: {usage.get('prompt_tokens', 0)}+"
            f"{usage.get('completion_tokens', 0)} tokens, {duration_ms}ms"
        )
        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            duration_ms=duration_ms,
        )
