"""
Retry with bounded exponential backoff for enrollment submissions.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ConfigurationError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryAborted(Exception):
    """The wait between two attempts was interrupted (e.g. the job is stopping)."""

    def __init__(self, last_error: BaseException):
        self.last_error = last_error
        super().__init__(f"retry aborted after: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.base_delay <= 0 or self.backoff_factor <= 1:
            raise ConfigurationError("base_delay must be > 0 and backoff_factor > 1")
        # The longest wait happens before the last attempt; it must stay under the cap
        # so that every delay is strictly larger than the previous one.
        if self.max_attempts > 1 and self.delay_for(self.max_attempts - 1) > self.max_delay:
            raise ConfigurationError(
                f"{self.max_attempts} attempts exceed max_delay={self.max_delay:g}s"
            )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.base_delay * self.backoff_factor ** (attempt - 1)


async def _sleep(delay: float) -> bool:
    await asyncio.sleep(delay)
    return True


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    wait: Callable[[float], Awaitable[bool]] = _sleep,
) -> T:
    """
    Run `operation` until it succeeds, fails with a non-retryable error, or
    `policy.max_attempts` is used up. `wait(delay)` returning False aborts
    with `RetryAborted`.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retry %d/%d after %.2fs: %s", attempt, policy.max_attempts - 1, delay, exc
            )
            if on_retry:
                on_retry(attempt, exc, delay)
            if not await wait(delay):
                raise RetryAborted(exc) from exc
