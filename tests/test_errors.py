"""Error classification and normalization."""

import json

import httpx
import pytest

from clipaible.executor.errors import (
    AuthenticationError,
    ErrorCode,
    ExtractionFailure,
    StepTimeout,
    TransientError,
    ValidationError,
    get_status_code,
    is_auth_error,
    normalize_error,
)
from clipaible.executor.retry import is_retryable
from clipaible.executor.schemas import RetryPolicy


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def test_rate_limit_is_its_own_code():
    result = normalize_error(TransientError("slow down", status_code=429))
    assert result["code"] == ErrorCode.RATE_LIMIT.value


def test_transient_without_status_is_network_error():
    assert normalize_error(TransientError("connection reset"))["code"] == "network_error"


def test_auth_error_code_and_user_message():
    result = normalize_error(AuthenticationError("bad key", status_code=401))
    assert result["code"] == "auth_error"
    assert "API key" in result["message"]
    assert "bad key" in result["message"]


def test_auth_detected_from_message_pattern():
    assert is_auth_error(Exception("Error: invalid_api_key supplied"))
    assert normalize_error(Exception("401 Unauthorized"))["code"] == "auth_error"


def test_status_code_digits_in_message_are_not_auth():
    overloaded = StatusError("Service unavailable (request id req_4031a9)", status_code=503)
    assert not is_auth_error(overloaded)
    assert normalize_error(overloaded)["code"] == "provider_error"
    assert is_retryable(overloaded, RetryPolicy())


def test_page_text_mentioning_forbidden_is_not_auth():
    assert not is_auth_error(ValueError("could not translate 'Forbidden City, 403 AD'"))


def test_status_code_decides_over_message():
    assert is_auth_error(StatusError("request rejected", status_code=403))
    assert not is_auth_error(StatusError("unauthorized upstream proxy hiccup", status_code=502))



def test_json_decode_error_is_parse_error():
    with pytest.raises(json.JSONDecodeError) as exc_info:
        json.loads("{not json")
    assert normalize_error(exc_info.value)["code"] == "parse_error"


def test_timeouts():
    assert normalize_error(StepTimeout("no answer"))["code"] == "timeout"
    assert normalize_error(TimeoutError())["code"] == "timeout"


def test_validation_and_extraction_keep_their_message():
    assert normalize_error(ValidationError("bad format")) == {
        "code": "validation_error",
        "message": "bad format",
    }
    assert normalize_error(ExtractionFailure("nothing found"))["code"] == "extraction_failed"


def test_generic_status_error_is_provider_error():
    assert normalize_error(StatusError("boom", 500))["code"] == "provider_error"


def test_unknown_error_falls_back_to_class_name():
    assert normalize_error(RuntimeError()) == {"code": "unknown_error", "message": "RuntimeError"}


def test_status_code_read_from_httpx_response():
    request = httpx.Request("POST", "https://example.com")
    response = httpx.Response(503, request=request)
    error = httpx.HTTPStatusError("unavailable", request=request, response=response)
    assert get_status_code(error) == 503
