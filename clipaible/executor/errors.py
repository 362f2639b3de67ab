"""Error taxonomy for the clip pipeline.

Every failure that reaches the orchestrator's catch point is either
JobCancelled (a terminal signal, not an error) or something that
normalize_error() can turn into a stable {code, message} pair. The job's
human-readable status text is kept separate from the code.
"""

import json
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error codes stored on a failed job."""
    AUTH_ERROR = "auth_error"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    PARSE_ERROR = "parse_error"
    PROVIDER_ERROR = "provider_error"
    VALIDATION_ERROR = "validation_error"
    EXTRACTION_FAILED = "extraction_failed"
    UNKNOWN_ERROR = "unknown_error"


class ClipaibleError(Exception):
    """Base class for pipeline errors."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR


class ValidationError(ClipaibleError):
    """Request or configuration is malformed. Never retried."""

    code = ErrorCode.VALIDATION_ERROR


class AlreadyRunningError(ClipaibleError):
    """A non-terminal job already exists."""

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__(
            f"A clip job is already running ({job_id})" if job_id
            else "A clip job is already running"
        )


class ExtractionFailure(ClipaibleError):
    """No usable content could be produced from the page."""

    code = ErrorCode.EXTRACTION_FAILED


class CacheFailure(ClipaibleError):
    """Selector cache I/O failed. Always swallowed by the cache itself."""


class AuthenticationError(ClipaibleError):
    """Upstream rejected the credentials. Never retried, fatal in optional stages."""

    code = ErrorCode.AUTH_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(ClipaibleError):
    """Upstream failure that may succeed on retry (rate limit, 5xx, network).

    Args:
        status_code: HTTP status returned by the upstream, if any.
        retry_after: Seconds the upstream asked us to wait, if it said so.
    """

    code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class JobCancelled(ClipaibleError):
    """Cooperative cancellation signal raised at a stage or call boundary."""


class StepTimeout(ClipaibleError, TimeoutError):
    """An external call did not finish within its time limit."""

    code = ErrorCode.TIMEOUT


# Message fragments that identify credential problems when an SDK raises
# something without a status code. Errors with a status are judged on it alone.
AUTH_PATTERNS = (
    "authentication_error",
    "authentication failed",
    "invalid_api_key",
    "invalid api key",
    "incorrect api key",
    "unauthorized",
)

NETWORK_PATTERNS = (
    "network",
    "fetch failed",
    "connection",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
)

_USER_MESSAGES = {
    ErrorCode.AUTH_ERROR: "The AI provider rejected the API key. Check the key and try again.",
    ErrorCode.RATE_LIMIT: "The AI provider is rate limiting requests. Try again in a moment.",
    ErrorCode.TIMEOUT: "The request took too long to complete.",
    ErrorCode.NETWORK_ERROR: "Network error while contacting an upstream service.",
    ErrorCode.PARSE_ERROR: "The AI response could not be parsed.",
    ErrorCode.PROVIDER_ERROR: "The AI provider returned an error.",
}


def get_status_code(error: BaseException) -> Optional[int]:
    """Pull an HTTP status code off an exception, if it carries one.

    Handles our own errors, anthropic's APIStatusError (status_code) and
    httpx.HTTPStatusError (response.status_code).
    """
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_auth_error(error: BaseException) -> bool:
    """True when the error means the credentials are bad."""
    if isinstance(error, AuthenticationError):
        return True
    status = get_status_code(error)
    if status is not None:
        return status in (401, 403)
    message = str(error).lower()
    return any(p in message for p in AUTH_PATTERNS)


def is_network_error(error: BaseException) -> bool:
    """True for connection-level failures (no HTTP response at all)."""
    if isinstance(error, ConnectionError):
        return True
    message = str(error).lower()
    return any(p in message for p in NETWORK_PATTERNS)


def normalize_error(error: BaseException) -> dict:
    """Map any exception to a {code, message} pair for the job record.

    Args:
        error: The exception that ended the job

    Returns:
        Dict with "code" (an ErrorCode value) and "message" (user-facing text)
    """
    code = _classify(error)
    detail = str(error).strip()

    if code in (ErrorCode.VALIDATION_ERROR, ErrorCode.EXTRACTION_FAILED, ErrorCode.UNKNOWN_ERROR):
        message = detail or error.__class__.__name__
    else:
        message = _USER_MESSAGES[code]
        if detail:
            message = f"{message} ({detail})"

    return {"code": code.value, "message": message}


def _classify(error: BaseException) -> ErrorCode:
    if isinstance(error, ClipaibleError) and error.code is not ErrorCode.UNKNOWN_ERROR:
        if isinstance(error, TransientError) and get_status_code(error) == 429:
            return ErrorCode.RATE_LIMIT
        if isinstance(error, TransientError) and get_status_code(error) is None:
            return ErrorCode.NETWORK_ERROR
        return error.code

    if isinstance(error, json.JSONDecodeError):
        return ErrorCode.PARSE_ERROR
    if isinstance(error, TimeoutError):
        return ErrorCode.TIMEOUT
    if is_auth_error(error):
        return ErrorCode.AUTH_ERROR

    status = get_status_code(error)
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status is not None and status >= 400:
        return ErrorCode.PROVIDER_ERROR

    if is_network_error(error):
        return ErrorCode.NETWORK_ERROR

    return ErrorCode.UNKNOWN_ERROR
