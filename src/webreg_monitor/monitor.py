"""
One poll -> verify -> enroll -> notify pass over a job's sections.

Seat counts race: a section only reaches the enrollment step if it satisfies
the trigger policy on the first reading *and* on an immediate second reading.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Tuple, TypeVar

from . import notifier as messages
from .client import RegistrationClient
from .credentials import CredentialHolder
from .enroll import EnrollOutcome, try_enroll_with_retry
from .errors import AuthenticationError, MonitorError, TransportError
from .models import Job, SeatCount, SectionRef
from .notifier import Notifier
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CycleReport:
    checked: List[str] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    confirmed: List[str] = field(default_factory=list)
    false_positives: List[str] = field(default_factory=list)
    enrolled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    auth_failed: bool = False
    interrupted: bool = False


class MonitorCycle:
    def __init__(
        self,
        job: Job,
        client: RegistrationClient,
        credentials: CredentialHolder,
        notifier: Notifier,
        policy: RetryPolicy,
        *,
        call_timeout: float,
        failure_notice_limit: int,
        stop_event: asyncio.Event,
    ):
        self.job = job
        self.client = client
        self.credentials = credentials
        self.notifier = notifier
        self.retry_policy = policy
        self.call_timeout = call_timeout
        self.failure_notice_limit = failure_notice_limit
        self.stop_event = stop_event

    @property
    def _stopping(self) -> bool:
        return self.stop_event.is_set()

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{what}: timed out after {self.call_timeout:g}s") from exc

    async def _check(
        self, section: SectionRef, token: str, report: CycleReport
    ) -> Optional[SeatCount]:
        """One availability reading; a failure is recorded against the section only."""
        try:
            seat = await self._call(
                self.client.check_availability(self.job.config.term, section, token),
                f"check {section}",
            )
        except MonitorError as exc:
            self.job.stats.record_section_failure(section.key)
            report.errors.append(f"{section}: {exc}")
            if isinstance(exc, AuthenticationError):
                report.auth_failed = True
            logger.warning("[%s] Check failed for %s: %s", self.job.id, section, exc)
            return None
        logger.debug(
            "[%s] %s: %d/%d seats available (%d enrolled, %d waitlisted)",
            self.job.id, section, seat.available, seat.total, seat.enrolled, seat.waitlist,
        )
        return seat

    async def run(self) -> CycleReport:
        report = CycleReport()
        try:
            await self._run(report)
        finally:
            self.job.stats.record_check()
            self.job.status.last_check = datetime.now(timezone.utc)
        return report

    async def _run(self, report: CycleReport) -> None:
        policy = self.job.config.policy
        pending = self.job.pending_sections()
        if not pending:
            return

        token = self.credentials.snapshot().value
        readings = await asyncio.gather(*(self._check(s, token, report) for s in pending))
        report.checked = [s.key for s in pending]

        triggered: List[Tuple[SectionRef, SeatCount]] = [
            (section, seat)
            for section, seat in zip(pending, readings)
            if seat is not None and policy.fires(seat.available)
        ]
        if not triggered:
            return

        self.job.stats.record_opening()
        report.triggered = [section.key for section, _ in triggered]

        for section, first in triggered:
            if self._stopping:
                report.interrupted = True
                return
            second = await self._check(section, self.credentials.snapshot().value, report)
            if second is None or not policy.fires(second.available):
                report.false_positives.append(section.key)
                logger.info(
                    "[%s] False positive: %s showed %d seats, recheck showed %s",
                    self.job.id, section, first.available,
                    second.available if second else "an error",
                )
                continue
            report.confirmed.append(section.key)
            logger.info(
                "[%s] %s has %d seats available (verified)",
                self.job.id, section, second.available,
            )
            if self._stopping:
                report.interrupted = True
                return
            outcome = await try_enroll_with_retry(
                self.client,
                self.job.config.term,
                section,
                self.credentials,
                self.job.stats,
                self.retry_policy,
                timeout=self.call_timeout,
                stop_event=self.stop_event,
            )
            await self._handle_outcome(outcome, second, report)

    async def _handle_outcome(
        self, outcome: EnrollOutcome, seat: SeatCount, report: CycleReport
    ) -> None:
        section = outcome.section
        if outcome.success:
            self.job.stats.record_success(section.key)
            report.enrolled.append(section.key)
            group_done = self.job.mark_enrolled(section)
            await self.notifier.notify(messages.enrolled(section, seat))
            if group_done:
                course, group = self.job.find_group(section)
                logger.info("[%s] %s section group %s complete", self.job.id, course.label, group.lecture)
                await self.notifier.notify(messages.group_complete(course.label, group.members()))
            return

        self.job.stats.record_section_failure(section.key)
        report.failed.append(section.key)
        if isinstance(outcome.error, AuthenticationError):
            report.auth_failed = True
        if self.job.stats.should_notify_failure(section.key, self.failure_notice_limit):
            await self.notifier.notify(messages.enrollment_failed(section, outcome.error))
        else:
            logger.info(
                "[%s] Suppressing failure notification for %s (daily limit reached)",
                self.job.id, section,
            )
