"""
Bounded retry with exponential backoff for transient store failures
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import asyncio
import logging
import random

from core.config import settings
from core.exceptions import (
    ConfigurationError,
    LoadEngineException,
    RetryExhaustedError,
    classify_db_error,
    is_retryable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    How many times, and how patiently, a retryable operation is re-run.

    max_attempts counts the first call: max_attempts=1 means no retries.
    """
    max_attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 10.0
    jitter: bool = True
    retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1", context={"max_attempts": self.max_attempts})
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError(
                "Retry delays must be non-negative",
                context={"base_delay": self.base_delay, "max_delay": self.max_delay}
            )

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay in seconds before retrying after the given (1-based) failed attempt.

    Exponential: base_delay * 2^(attempt-1), capped at max_delay, with ±25%
    jitter when enabled. Never exceeds max_delay.
    """
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)

    if policy.jitter:
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, min(delay, policy.max_delay))


class RetryCoordinator:
    """
    Re-runs an async operation while it fails with retryable errors.

    Non-retryable failures propagate immediately (classified into the
    load-engine taxonomy); retryable ones are retried until the policy's
    attempts are exhausted, then surface as RetryExhaustedError.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.sleep = sleep

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> T:
        policy = policy or RetryPolicy.from_settings()
        context = dict(context or {})
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if not policy.retryable(e):
                    if isinstance(e, LoadEngineException):
                        raise
                    raise classify_db_error(e, context) from e

                if attempt >= policy.max_attempts:
                    logger.error(f"Giving up after {attempt} attempts: {e}")
                    raise RetryExhaustedError(
                        f"Retryable failure persisted after {attempt} attempts",
                        context=context,
                        original_exception=e,
                        attempts=attempt
                    ) from e

                delay = compute_backoff(attempt, policy)
                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed with "
                    f"{type(e).__name__}; retrying in {delay:.2f}s"
                )
                await self.sleep(delay)
