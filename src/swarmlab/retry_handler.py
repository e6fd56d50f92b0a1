"""Retry logic with fixed or exponential backoff for transient failures.

This module provides:
- RetryPolicy: the single policy object used by the deployment executor
  (max attempts, backoff, per-call timeouts)
- retry_with_exponential_backoff: decorator for transient errors on remote
  calls (ssh round trips, swarm joins)

Design Philosophy:
- Ruthless simplicity: One policy object, one decorator
- Configurable: Max attempts, delays, jitter can be tuned
- Observable: Clear logging of retry attempts

Usage:
    @retry_with_exponential_backoff(max_attempts=3)
    def join_node():
        # Remote call that might fail transiently
        ...

    policy = RetryPolicy(max_attempts=5, backoff=10.0)
    policy.delay_for(2)  # seconds to sleep after attempt 2
"""

import functools
import logging
import random
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from swarmlab.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

# Type variable for generic function wrapping
F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for a stack deployment.

    Attributes:
        max_attempts: Attempts before giving up (>= 1)
        backoff: Base delay between attempts in seconds
        exponential: Double the delay after each failed attempt
        max_delay: Upper bound for any single delay
        timeout: Timeout for the apply call in seconds
        validate_timeout: Timeout for the validate call in seconds
    """

    max_attempts: int = 5
    backoff: float = 10.0
    exponential: bool = False
    max_delay: float = 120.0
    timeout: int = 120
    validate_timeout: int = 60

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")
        if self.timeout < 1 or self.validate_timeout < 1:
            raise ValueError("timeouts must be >= 1 second")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        if self.exponential:
            delay = self.backoff * (2 ** max(attempt - 1, 0))
        else:
            delay = self.backoff
        return min(delay, self.max_delay)


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add random jitter to delays to prevent thundering herd (default: True)
        retryable_exceptions: Tuple of exception types to retry
            (default: timeouts and connection errors)

    Returns:
        Decorated function that will retry on transient failures

    Raises:
        ValueError: If max_attempts < 1
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if retryable_exceptions is None:
        retryable_exceptions = _get_default_retryable_exceptions()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )

                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: "
                            f"{LogSanitizer.sanitize(str(e))}"
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        # ±25% of delay
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)

                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {LogSanitizer.sanitize(str(e))}"
                    )

                    time.sleep(actual_delay)
                    delay *= 2

        return wrapper  # type: ignore

    return decorator


def _get_default_retryable_exceptions() -> tuple[type[Exception], ...]:
    """Timeouts and connection errors."""
    return (
        TimeoutError,
        ConnectionError,
        subprocess.TimeoutExpired,
    )


__all__ = [
    "RetryPolicy",
    "retry_with_exponential_backoff",
]
