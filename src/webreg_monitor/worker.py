"""
Per-job worker: a poll loop and a session-refresh loop running side by side.

Both loops share only the job record and its `CredentialHolder`; the refresh
loop is the only writer of the token. Stopping is cooperative: the stop event
interrupts the sleeps and an in-flight cycle always runs to completion. A
pending session refresh is cancelled instead, and the poll loop waits for the
refresh loop to finish before it reports the worker as gone.
"""

import asyncio
import logging
from typing import Callable, Optional

from . import notifier as messages
from .client import RegistrationClient
from .config import Settings
from .credentials import CredentialHolder
from .enroll import wait_unless_stopped
from .errors import InternalError, JobConnectionError, MonitorError, TransportError
from .models import Job, JobState
from .monitor import CycleReport, MonitorCycle
from .notifier import Notifier
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class JobWorker:
    def __init__(
        self,
        job: Job,
        client: RegistrationClient,
        credentials: CredentialHolder,
        notifier: Notifier,
        settings: Settings,
        *,
        retry_policy: RetryPolicy,
        seal: Callable[[str], str],
        on_change: Optional[Callable[[Job], None]] = None,
        on_exit: Optional[Callable[["JobWorker"], None]] = None,
    ):
        self.job = job
        self.client = client
        self.credentials = credentials
        self.notifier = notifier
        self.settings = settings
        self.retry_policy = retry_policy
        self._seal = seal
        self._on_change = on_change
        self._on_exit = on_exit
        self._stop = asyncio.Event()
        self._wake_refresh = asyncio.Event()
        self._poll_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return any(t is not None and not t.done() for t in (self._poll_task, self._refresh_task))

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def validate(self) -> None:
        """Initial credential check; raises JobConnectionError on failure."""
        try:
            token = await self._refresh_call()
        except MonitorError as exc:
            self.job.status.connected = False
            self.job.status.last_error = f"connection failed: {exc}"
            raise JobConnectionError(f"Job {self.job.id}: {exc}") from exc
        self._apply_token(token)

    def launch(self) -> None:
        if self._poll_task is not None:
            raise InternalError(f"worker for job {self.job.id} was already launched")
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"poll-{self.job.id}")
        self._refresh_task = asyncio.create_task(
            self._refresh_loop(), name=f"refresh-{self.job.id}"
        )

    async def stop(self) -> None:
        """Signal both loops and wait until the in-flight cycle has finished."""
        self._stop.set()
        self._wake_refresh.set()
        tasks = [t for t in (self._poll_task, self._refresh_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self.job)

    def _apply_token(self, token: str) -> None:
        current = self.credentials.update(token)
        self.job.sealed_token = self._seal(token)
        self.job.token_refreshed_at = current.refreshed_at
        self.job.status.connected = True
        self.job.status.last_error = None

    async def _refresh_call(self) -> str:
        token = self.credentials.snapshot().value
        try:
            return await asyncio.wait_for(
                self.client.refresh_session(token), timeout=self.settings.call_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"session refresh timed out after {self.settings.call_timeout:g}s"
            ) from exc

    async def refresh_once(self) -> bool:
        try:
            token = await self._refresh_call()
        except MonitorError as exc:
            if self._stop.is_set():
                return False
            was_connected = self.job.status.connected
            self.job.status.connected = False
            self.job.status.last_error = f"session refresh failed: {exc}"
            self.job.stats.record_error()
            logger.error("[%s] Session refresh failed: %s", self.job.id, exc)
            if was_connected:
                await self.notifier.notify(messages.session_expired(self.job.id, exc))
            self._changed()
            return False
        if self._stop.is_set():
            return False
        self._apply_token(token)
        logger.info("[%s] Session refreshed", self.job.id)
        self._changed()
        return True

    def _check_freshness(self) -> None:
        if self.credentials.is_fresh():
            return
        if self.job.status.connected:
            logger.warning(
                "[%s] Session token is %s old; marking job disconnected",
                self.job.id, self.credentials.age(),
            )
        self.job.status.connected = False
        self.job.status.last_error = (
            f"session token not refreshed within {self.settings.session_max_age:g}s"
        )

    def _make_cycle(self) -> MonitorCycle:
        return MonitorCycle(
            self.job,
            self.client,
            self.credentials,
            self.notifier,
            self.retry_policy,
            call_timeout=self.settings.call_timeout,
            failure_notice_limit=self.settings.max_failure_notices_per_day,
            stop_event=self._stop,
        )

    def _after_cycle(self, report: CycleReport) -> None:
        if report.auth_failed:
            self.job.status.connected = False
            self.job.status.last_error = "authentication rejected during poll"
            self._wake_refresh.set()
        logger.info(
            "[%s] Cycle done: %d checked, %d triggered, %d confirmed, %d enrolled, %d failed",
            self.job.id, len(report.checked), len(report.triggered),
            len(report.confirmed), len(report.enrolled), len(report.failed),
        )

    async def _poll_loop(self) -> None:
        logger.info(
            "[%s] Monitoring %d section(s) every %gs (%s mode, threshold %d)",
            self.job.id, len(self.job.pending_sections()), self.job.config.polling_interval,
            self.job.config.policy.mode, self.job.config.threshold,
        )
        try:
            while not self._stop.is_set():
                self._check_freshness()
                try:
                    report = await self._make_cycle().run()
                except Exception as exc:
                    self.job.stats.record_error()
                    self.job.status.last_error = f"cycle failed: {exc}"
                    logger.error(
                        "[%s] Cycle failed: %s", self.job.id, exc,
                        exc_info=not isinstance(exc, MonitorError),
                    )
                else:
                    self._after_cycle(report)
                self._changed()

                if self.job.all_satisfied():
                    logger.info("[%s] Every target section is enrolled; stopping", self.job.id)
                    self.job.status.active = False
                    await self.notifier.notify(messages.all_enrolled(self.job.id))
                    break
                if not await wait_unless_stopped(self._stop, self.job.config.polling_interval):
                    break
        finally:
            self._stop.set()
            self._wake_refresh.set()
            await self._finish_refresh()
            self.job.status.state = JobState.STOPPED
            self.job.status.connected = False
            self._changed()
            logger.info("[%s] Worker stopped", self.job.id)
            if self._on_exit is not None:
                self._on_exit(self)

    async def _finish_refresh(self) -> None:
        task = self._refresh_task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._wake_refresh.wait(), timeout=self.settings.refresh_interval
                )
            except asyncio.TimeoutError:
                pass
            self._wake_refresh.clear()
            if self._stop.is_set():
                return
            await self.refresh_once()
