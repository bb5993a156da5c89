"""
Enrollment submission with retry.

A submission that has reached the gateway is never cancelled by a stop
request; only the wait before the *next* retry is interruptible.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .client import RegistrationClient
from .credentials import CredentialHolder
from .errors import MonitorError, TransportError
from .models import SectionRef
from .retry import RetryAborted, RetryPolicy, retry_async
from .stats import EnrollmentStats

logger = logging.getLogger(__name__)


@dataclass
class EnrollOutcome:
    section: SectionRef
    success: bool
    attempts: int
    error: Optional[BaseException] = None


async def wait_unless_stopped(stop_event: asyncio.Event, delay: float) -> bool:
    """Sleep for `delay`; False if `stop_event` fired first."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False


async def try_enroll(
    client: RegistrationClient,
    term: str,
    section: SectionRef,
    token: str,
    timeout: float,
) -> None:
    try:
        await asyncio.wait_for(client.enroll(term, section, token), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError(f"enroll {section}: timed out after {timeout:g}s") from exc


async def try_enroll_with_retry(
    client: RegistrationClient,
    term: str,
    section: SectionRef,
    credentials: CredentialHolder,
    stats: EnrollmentStats,
    policy: RetryPolicy,
    *,
    timeout: float,
    stop_event: asyncio.Event,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> EnrollOutcome:
    """Each submission counts as one enrollment attempt in `stats`."""
    attempts = 0

    async def submit() -> None:
        nonlocal attempts
        attempts += 1
        stats.record_attempt()
        logger.info("Enrollment attempt %d for %s", attempts, section)
        # Re-read the token on every attempt: the refresh loop may have rotated it.
        await try_enroll(client, term, section, credentials.snapshot().value, timeout)

    try:
        await retry_async(
            submit,
            policy,
            on_retry=on_retry,
            wait=lambda delay: wait_unless_stopped(stop_event, delay),
        )
    except RetryAborted as exc:
        logger.info("Stopping before retrying %s: %s", section, exc.last_error)
        return EnrollOutcome(section, False, attempts, exc.last_error)
    except MonitorError as exc:
        logger.error("Enrollment for %s failed after %d attempt(s): %s", section, attempts, exc)
        return EnrollOutcome(section, False, attempts, exc)

    logger.info("Enrolled in %s after %d attempt(s)", section, attempts)
    return EnrollOutcome(section, True, attempts)
