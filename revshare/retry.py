"""
Retry Handler - bounded retry with exponential backoff.

Every upstream call (RPC, balance indexer, price oracle) goes through
``retry_async``. The budget is per call and finite; once it is spent the
caller's cycle is skipped and retried on the next scheduled run.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import ProviderError, RetryExhaustedError, RpcRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryStrategy(Enum):
    """Retry strategies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    retryable_exceptions: Tuple[Type[BaseException], ...] = (
        ProviderError,
        asyncio.TimeoutError,
        ConnectionError,
    )

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        """Build from ``config.RetrySettings``."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based)."""
        if self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        else:
            delay = self.base_delay * (2 ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            delay += delay * self.jitter * random.random()
        return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the retry budget is exhausted.

    Only ``policy.retryable_exceptions`` are retried; anything else propagates
    immediately. A rate-limit error with ``retry_after`` waits at least that
    long (still capped by ``max_delay``).

    Raises:
        RetryExhaustedError: after ``max_attempts`` retryable failures.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except policy.retryable_exceptions as e:
            last_error = e
            if attempt >= policy.max_attempts:
                break

            delay = policy.calculate_delay(attempt)
            if isinstance(e, RpcRateLimitError) and e.retry_after:
                delay = min(max(delay, float(e.retry_after)), policy.max_delay)

            logger.warning(
                f"{name} failed (attempt {attempt}/{policy.max_attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)

    logger.error(f"{name} gave up after {policy.max_attempts} attempts: {last_error}")
    raise RetryExhaustedError(name, policy.max_attempts, last_error)
