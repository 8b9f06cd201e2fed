"""
Retry utilities with exponential backoff.

Provider calls (embeddings and text completion) share one error taxonomy
and one retry policy: only rate-limit failures are retried, with a delay
that doubles on each attempt up to a small attempt ceiling. Everything
else propagates on the first failure.
"""
import time
import random
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """
    Raised when an external provider (embedding or completion) fails.

    Attributes:
        transient: True when the same call may succeed later
        status_code: HTTP status code, when the failure came from a response
    """

    def __init__(self, message: str, transient: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Raised when a provider rejects a call with HTTP 429."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, transient=True, status_code=429)
        self.retry_after = retry_after


class DeadlineExceeded(ProviderError):
    """Raised when a caller-supplied deadline runs out before a call could finish."""

    def __init__(self, message: str = "Deadline exceeded"):
        super().__init__(message, transient=True)


class RetryExhausted(ProviderError):
    """Raised when all retries have been exhausted."""

    def __init__(self, message: str, attempts: int, last_exception: Exception):
        super().__init__(message, transient=True)
        self.attempts = attempts
        self.last_exception = last_exception


# Retry configuration for rate-limited provider calls
RATE_LIMIT_RETRY_CONFIG = {
    'max_retries': 2,        # Total 3 attempts (1 initial + 2 retries)
    'initial_backoff': 2.0,  # 2 seconds, then 4
    'backoff_multiplier': 2.0,
    'max_backoff': 30.0,
    'jitter_percent': 0.0,
}


def calculate_backoff(
    attempt: int,
    initial_backoff: float,
    backoff_multiplier: float,
    max_backoff: float,
    jitter_percent: float
) -> float:
    """
    Calculate backoff time with exponential increase and jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        initial_backoff: Base backoff in seconds
        backoff_multiplier: Exponential multiplier
        max_backoff: Maximum backoff cap
        jitter_percent: Random jitter range (0.25 = ±25%)

    Returns:
        Backoff time in seconds
    """
    backoff = initial_backoff * (backoff_multiplier ** attempt)
    backoff = min(backoff, max_backoff)

    if jitter_percent:
        jitter_range = backoff * jitter_percent
        backoff += random.uniform(-jitter_range, jitter_range)

    return max(0.0, backoff)


def is_retriable_error(exception: Exception) -> bool:
    """
    Determine if an exception is retriable.

    Only rate-limit failures qualify. Timeouts, 5xx responses, auth
    failures and malformed payloads all propagate immediately.
    """
    return isinstance(exception, RateLimitError)


def remaining_time(deadline: Optional[float]) -> Optional[float]:
    """
    Seconds left until a time.monotonic() deadline.

    Returns None when there is no deadline.

    Raises:
        DeadlineExceeded: If the deadline has already passed
    """
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DeadlineExceeded()
    return remaining


def deadline_after(timeout: Optional[float]) -> Optional[float]:
    """Turn a relative timeout in seconds into a time.monotonic() deadline."""
    if timeout is None:
        return None
    return time.monotonic() + timeout


def retry_with_backoff(
    func: Callable,
    config: Optional[dict] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    deadline: Optional[float] = None,
):
    """
    Execute a function with retry and exponential backoff.

    Args:
        func: Callable to execute
        config: Retry configuration dict (defaults to RATE_LIMIT_RETRY_CONFIG)
        on_retry: Optional callback(attempt, exception, backoff) called before each retry
        deadline: time.monotonic() value after which no attempt is started and
            no backoff is slept; func is expected to bound itself by
            remaining_time(deadline)

    Returns:
        Result of func() if successful

    Raises:
        RetryExhausted: If every attempt was rate limited
        DeadlineExceeded: If the deadline ran out before a call succeeded
        Exception: Any non-retriable exception, unchanged
    """
    config = config or RATE_LIMIT_RETRY_CONFIG
    max_retries = config['max_retries']
    attempt = 0
    last_exception = None

    while attempt <= max_retries:
        remaining_time(deadline)
        try:
            return func()
        except ProviderError as e:
            last_exception = e

            if not is_retriable_error(e):
                logger.warning(f"Non-retriable error on attempt {attempt + 1}: {e}")
                raise

            if attempt >= max_retries:
                break

            backoff = calculate_backoff(
                attempt,
                config['initial_backoff'],
                config['backoff_multiplier'],
                config['max_backoff'],
                config['jitter_percent']
            )
            if e.retry_after is not None:
                backoff = max(backoff, min(e.retry_after, config['max_backoff']))

            if deadline is not None and time.monotonic() + backoff >= deadline:
                logger.warning(f"Rate limited on attempt {attempt + 1}; no time left to retry")
                raise DeadlineExceeded(
                    f"Deadline exceeded after {attempt + 1} attempts. Last error: {e}"
                ) from e

            logger.warning(
                f"Rate limited on attempt {attempt + 1}/{max_retries + 1}: {e}. "
                f"Retrying in {backoff:.2f}s"
            )

            if on_retry:
                on_retry(attempt, e, backoff)

            time.sleep(backoff)
            attempt += 1

    raise RetryExhausted(
        f"All {max_retries + 1} attempts failed. Last error: {last_exception}",
        attempts=attempt + 1,
        last_exception=last_exception
    )
