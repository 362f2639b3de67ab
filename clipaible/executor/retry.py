"""Bounded retry with a delay schedule for upstream calls.

Every AI provider call goes through call_with_retry(). Failures are
classified against a RetryPolicy: retryable HTTP statuses, timeouts and
network-level errors are retried after policy.delays[n] seconds (the last
delay is reused once the list runs out); anything else is re-raised on
the spot. When attempts run out the last failure is re-raised unchanged,
so callers see the real upstream error rather than a wrapper.

Cancellations and credential errors are never retried.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from clipaible.executor.errors import (
    AuthenticationError,
    ExtractionFailure,
    JobCancelled,
    TransientError,
    ValidationError,
    get_status_code,
    is_auth_error,
    is_network_error,
)
from clipaible.executor.schemas import RetryPolicy

logger = logging.getLogger(__name__)

MIN_JITTERED_DELAY = 0.1  # seconds

_NEVER_RETRY = (JobCancelled, AuthenticationError, ValidationError, ExtractionFailure)


def is_retryable(error: BaseException, policy: RetryPolicy) -> bool:
    """Decide whether an upstream failure is worth another attempt."""
    if isinstance(error, _NEVER_RETRY):
        return False
    if is_auth_error(error):
        return False

    status = get_status_code(error)
    if status is not None:
        return status in policy.retryable_status_codes

    if isinstance(error, (TransientError, TimeoutError)):
        return True
    if policy.retry_network_errors and is_network_error(error):
        return True
    return False


def compute_delay(
    policy: RetryPolicy,
    retry_number: int,
    error: Optional[BaseException] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before the given retry (1-indexed).

    An upstream Retry-After hint on the error replaces the scheduled delay.
    """
    retry_after = getattr(error, "retry_after", None)
    if isinstance(retry_after, (int, float)) and retry_after > 0:
        return float(retry_after)

    delay = policy.delay_for(retry_number)
    if policy.jitter and delay > 0:
        delay = delay * (1 + policy.jitter * (2 * rng() - 1))
        delay = max(MIN_JITTERED_DELAY, delay)
    return delay


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    *,
    label: str = "",
    cancellation_check: Optional[Callable[[], bool]] = None,
    retryable: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Run an async operation, retrying transient failures.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Retry schedule (defaults to RetryPolicy())
        label: Log prefix
        cancellation_check: Polled before every attempt; True raises JobCancelled
        retryable: Override for the classification predicate
        on_retry: Called with (retry_number, delay, error) before each wait
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Whatever the operation returns on its first successful attempt

    Raises:
        JobCancelled: If cancellation_check fires
        Exception: The first non-retryable failure, or the last failure
            once max_attempts is exhausted
    """
    policy = policy or RetryPolicy()
    should_retry = retryable or (lambda e: is_retryable(e, policy))
    last_error: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        if cancellation_check and cancellation_check():
            raise JobCancelled(f"[{label}] Cancelled before attempt {attempt + 1}")

        if attempt > 0:
            delay = compute_delay(policy, attempt, last_error)
            logger.warning(
                f"[{label}] Retry {attempt}/{policy.max_attempts - 1} after {delay:.1f}s "
                f"(previous error: {last_error})"
            )
            if on_retry:
                on_retry(attempt, delay, last_error)
            await sleep(delay)

            if cancellation_check and cancellation_check():
                raise JobCancelled(f"[{label}] Cancelled while waiting to retry")

        try:
            return await operation()

        except JobCancelled:
            raise

        except Exception as e:
            last_error = e
            if not should_retry(e):
                logger.error(f"[{label}] Attempt {attempt + 1} failed (not retrying): {e}")
                raise
            logger.warning(f"[{label}] Attempt {attempt + 1}/{policy.max_attempts} failed: {e}")

    logger.error(f"[{label}] Failed after {policy.max_attempts} attempts. Last error: {last_error}")
    raise last_error
