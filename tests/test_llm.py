"""AI client: backend resolution, JSON parsing, retries through the executor."""

import asyncio
import json

import httpx
import pytest

from clipaible.executor.errors import AuthenticationError, TransientError, ValidationError
from clipaible.executor.schemas import RetryPolicy
from clipaible.llm.backends import (
    AnthropicBackend,
    GeminiBackend,
    LLMCallResult,
    OpenRouterBackend,
    parse_retry_after,
)
from clipaible.llm.client import AIClient, parse_llm_json_response
from clipaible.llm.factory import get_backend
from tests.fakes import RecordingSleep


class ScriptedBackend:
    """Backend answering from a list of texts or exceptions."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    @property
    def model_id(self):
        return "scripted"

    async def complete(self, system_prompt, user_message, *, api_key=None, max_tokens=0,
                       json_mode=False, label=""):
        self.calls.append({"json_mode": json_mode, "api_key": api_key})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return LLMCallResult(content=outcome, model_id="scripted", input_tokens=1,
                             output_tokens=1, duration_ms=1)


def client_for(backend, sleep=None):
    return AIClient(RetryPolicy(), backend_factory=lambda model: backend, sleep=sleep or RecordingSleep())


def test_factory_resolves_by_prefix():
    assert isinstance(get_backend("claude-sonnet-4-6"), AnthropicBackend)
    assert isinstance(get_backend("gemini-2.5-flash"), GeminiBackend)
    backend = get_backend("openrouter/deepseek/deepseek-r1")
    assert isinstance(backend, OpenRouterBackend)
    assert backend.provider_model == "deepseek/deepseek-r1"
    with pytest.raises(ValidationError):
        get_backend("gpt-4o")


def test_factory_reuses_backend_per_model_and_rejects_bare_prefix():
    assert get_backend("claude-sonnet-4-6") is get_backend("claude-sonnet-4-6")
    assert get_backend("gemini-2.5-flash") is not get_backend("gemini-2.5-pro")
    with pytest.raises(ValidationError) as exc_info:
        get_backend("openrouter/")
    assert "claude-" in str(exc_info.value)



def test_parse_fenced_and_prefixed_json():
    assert parse_llm_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_llm_json_response('Here you go: {"a": {"b": 2}} Hope it helps') == {"a": {"b": 2}}
    with pytest.raises(json.JSONDecodeError):
        parse_llm_json_response("no json here")


def test_parse_retry_after():
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert parse_retry_after(None) is None


def test_structured_call_retries_then_parses():
    backend = ScriptedBackend([TransientError("overloaded", 503), '{"ok": true}'])
    sleep = RecordingSleep()

    result = asyncio.run(client_for(backend, sleep).call("sys", "user", api_key="k"))

    assert result == {"ok": True}
    assert sleep.calls == [2]
    assert backend.calls[0] == {"json_mode": True, "api_key": "k"}


def test_text_call_returns_raw_content():
    backend = ScriptedBackend(["  plain text  "])
    result = asyncio.run(client_for(backend).call("sys", "user", structured=False))
    assert result == "  plain text  "
    assert backend.calls[0]["json_mode"] is False


def test_invalid_json_raises_decode_error():
    backend = ScriptedBackend(["definitely not json"])
    with pytest.raises(json.JSONDecodeError):
        asyncio.run(client_for(backend).call("sys", "user"))


def test_auth_error_is_not_retried():
    backend = ScriptedBackend([AuthenticationError("bad key", 401)])
    sleep = RecordingSleep()
    with pytest.raises(AuthenticationError):
        asyncio.run(client_for(backend, sleep).call("sys", "user"))
    assert sleep.calls == []


def _openrouter(handler):
    return OpenRouterBackend("openrouter/test/model", transport=httpx.MockTransport(handler))


def test_openrouter_success():
    def handler(request):
        body = json.loads(request.content)
        assert body["model"] == "test/model"
        assert body["response_format"] == {"type": "json_object"}
        assert request.headers["authorization"] == "Bearer key"
        return httpx.Response(200, json={
            "choices": [{"message": {"content": '{"x": 1}'}}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 3},
        })

    result = asyncio.run(_openrouter(handler).complete("s", "u", api_key="key", json_mode=True))
    assert result.content == '{"x": 1}'
    assert result.input_tokens == 5


def test_openrouter_maps_statuses():
    def rate_limited(request):
        return httpx.Response(429, headers={"retry-after": "3"}, text="slow down")

    def unauthorized(request):
        return httpx.Response(401, text="bad key")

    with pytest.raises(TransientError) as exc_info:
        asyncio.run(_openrouter(rate_limited).complete("s", "u", api_key="key"))
    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after == 3.0

    with pytest.raises(AuthenticationError):
        asyncio.run(_openrouter(unauthorized).complete("s", "u", api_key="key"))


def test_openrouter_requires_a_key(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    with pytest.raises(AuthenticationError):
        asyncio.run(_openrouter(lambda r: httpx.Response(200)).complete("s", "u"))
