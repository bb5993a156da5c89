"""
Registry of every user's jobs and the public management operations.

Each job has its own asyncio lock that serializes start/stop/update/delete for
that job, so N concurrent `start` calls yield exactly one worker while other
jobs are never held up by a slow credential check.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .client import RegistrationClient, WebRegClient
from .config import Settings
from .credentials import CredentialHolder, SecretBox
from .errors import (
    ConfigurationError,
    JobAccessDenied,
    JobConnectionError,
    JobNotFoundError,
    JobStateError,
)
from .models import Job, JobConfig, JobSnapshot, JobState, NotificationSettings
from .notifier import Notifier, build_notifier
from .retry import RetryPolicy
from .storage import JsonJobStore
from .worker import JobWorker

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    job: Job
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    worker: Optional[JobWorker] = None
    deleted: bool = False


class JobManager:
    def __init__(
        self,
        client: RegistrationClient,
        store: JsonJobStore,
        settings: Settings,
        box: SecretBox,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.store = store
        self.settings = settings
        self.box = box
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            backoff_factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay,
        )
        self._jobs: Dict[str, _Entry] = {}
        self._prefs: Dict[str, NotificationSettings] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobManager":
        if not settings.encryption_key:
            raise ConfigurationError(
                "ENCRYPTION_KEY is not set (generate one with `webreg-monitor genkey`)"
            )
        manager = cls(
            WebRegClient(settings.api_url, timeout=settings.call_timeout),
            JsonJobStore(settings.data_file),
            settings,
            SecretBox(settings.encryption_key),
        )
        manager.load()
        return manager

    # ------------------------------------------------------------------ #
    # persistence
    # ------------------------------------------------------------------ #
    def load(self) -> None:
        """Restore jobs from the store. Nothing is running after a restore."""
        for job in self.store.load_jobs():
            job.status.state = JobState.STOPPED
            job.status.connected = False
            self._jobs[job.id] = _Entry(job)
        self._prefs.update(self.store.load_settings())
        logger.info("Restored %d job(s)", len(self._jobs))

    def _save(self, job: Job) -> None:
        entry = self._jobs.get(job.id)
        if entry is None or entry.deleted or entry.job is not job:
            logger.debug("Not persisting job %s: no longer registered", job.id)
            return
        try:
            self.store.save_job(job)
        except OSError as e:
            logger.error("Failed to persist job %s: %s", job.id, e)

    # ------------------------------------------------------------------ #
    # lookups
    # ------------------------------------------------------------------ #
    def _entry(self, user_id: str, job_id: str) -> _Entry:
        entry = self._jobs.get(job_id)
        if entry is None or entry.deleted:
            raise JobNotFoundError(job_id)
        if entry.job.user_id != user_id:
            raise JobAccessDenied(job_id, user_id)
        return entry

    def get(self, user_id: str, job_id: str) -> JobSnapshot:
        return self._entry(user_id, job_id).job.snapshot()

    def list(self, user_id: str) -> List[JobSnapshot]:
        jobs = [e.job for e in self._jobs.values() if e.job.user_id == user_id and not e.deleted]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [job.snapshot() for job in jobs]

    def all_jobs(self) -> List[JobSnapshot]:
        return [e.job.snapshot() for e in self._jobs.values() if not e.deleted]

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    async def create(self, user_id: str, config: JobConfig, session_token: str) -> str:
        config.validate(self.settings.min_polling_interval)
        if not session_token or not session_token.strip():
            raise ConfigurationError("session token is required")
        job = Job(
            id=uuid.uuid4().hex,
            user_id=user_id,
            config=config,
            sealed_token=self.box.seal(session_token.strip()),
        )
        self._jobs[job.id] = _Entry(job)
        self._save(job)
        logger.info("User %s created job %s (term %s)", user_id, job.id, config.term)
        return job.id

    async def update(
        self,
        user_id: str,
        job_id: str,
        config: Optional[JobConfig] = None,
        session_token: Optional[str] = None,
    ) -> JobSnapshot:
        """Replace configuration and/or session token; only while Stopped."""
        entry = self._entry(user_id, job_id)
        async with entry.lock:
            self._ensure_live(entry)
            if entry.job.status.state != JobState.STOPPED:
                raise JobStateError(f"Job {job_id} must be stopped before it can be changed")
            if config is not None:
                config.validate(self.settings.min_polling_interval)
                entry.job.config = config
            if session_token:
                entry.job.sealed_token = self.box.seal(session_token.strip())
                entry.job.token_refreshed_at = None
            self._save(entry.job)
            logger.info("User %s updated job %s", user_id, job_id)
            return entry.job.snapshot()

    async def start(self, user_id: str, job_id: str) -> JobSnapshot:
        entry = self._entry(user_id, job_id)
        async with entry.lock:
            self._ensure_live(entry)
            await self._start_entry(entry)
            return entry.job.snapshot()

    async def stop(self, user_id: str, job_id: str) -> JobSnapshot:
        entry = self._entry(user_id, job_id)
        async with entry.lock:
            self._ensure_live(entry)
            await self._stop_entry(entry, keep_active=False)
            return entry.job.snapshot()

    async def delete(self, user_id: str, job_id: str) -> None:
        entry = self._entry(user_id, job_id)
        async with entry.lock:
            self._ensure_live(entry)
            await self._stop_entry(entry, keep_active=False)
            entry.deleted = True
            self._jobs.pop(job_id, None)
            try:
                self.store.delete_job(job_id)
            except OSError as e:
                logger.error("Failed to remove job %s from storage: %s", job_id, e)
        logger.info("User %s deleted job %s", user_id, job_id)

    async def resume_active_jobs(self) -> List[str]:
        """Restart jobs that were running when the process last stopped."""
        resumed = []
        for entry in list(self._jobs.values()):
            if not entry.job.status.active:
                continue
            async with entry.lock:
                if entry.deleted:
                    continue
                try:
                    await self._start_entry(entry)
                except JobConnectionError as e:
                    logger.warning("Could not resume job %s: %s", entry.job.id, e)
                    continue
            resumed.append(entry.job.id)
        return resumed

    async def shutdown(self) -> None:
        """Stop every worker but remember which jobs to resume next time."""
        for entry in list(self._jobs.values()):
            async with entry.lock:
                await self._stop_entry(entry, keep_active=True)
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()

    def _ensure_live(self, entry: _Entry) -> None:
        if entry.deleted:
            raise JobNotFoundError(entry.job.id)

    async def _start_entry(self, entry: _Entry) -> None:
        job = entry.job
        if entry.worker is not None and entry.worker.is_active:
            logger.debug("Job %s is already running", job.id)
            return

        job.status.state = JobState.STARTING
        credentials = CredentialHolder(
            self.box.open(job.sealed_token),
            self.settings.session_max_age,
            job.token_refreshed_at,
        )
        worker = JobWorker(
            job,
            self.client,
            credentials,
            self._notifier_for(job.user_id),
            self.settings,
            retry_policy=self.retry_policy,
            seal=self.box.seal,
            on_change=self._save,
            on_exit=self._on_worker_exit,
        )
        try:
            await worker.validate()
        except JobConnectionError:
            job.status.state = JobState.STOPPED
            job.status.active = False
            self._save(job)
            raise

        entry.worker = worker
        job.status.state = JobState.RUNNING
        job.status.active = True
        worker.launch()
        self._save(job)
        logger.info("Job %s started for user %s", job.id, job.user_id)

    async def _stop_entry(self, entry: _Entry, keep_active: bool) -> None:
        job = entry.job
        worker = entry.worker
        if worker is not None and worker.is_active:
            job.status.state = JobState.STOPPING
            logger.info("Stopping job %s", job.id)
            await worker.stop()
        entry.worker = None
        job.status.state = JobState.STOPPED
        job.status.active = keep_active and job.status.active
        self._save(job)

    def _on_worker_exit(self, worker: JobWorker) -> None:
        entry = self._jobs.get(worker.job.id)
        if entry is not None and entry.worker is worker:
            entry.worker = None

    # ------------------------------------------------------------------ #
    # notifications
    # ------------------------------------------------------------------ #
    def _notifier_for(self, user_id: str) -> Notifier:
        try:
            return build_notifier(self._prefs.get(user_id), self.settings, self.box)
        except ConfigurationError as e:
            logger.error("Notification settings for user %s are unusable: %s", user_id, e)
            return Notifier()

    def get_notification_settings(self, user_id: str) -> Dict[str, Any]:
        return self._prefs.get(user_id, NotificationSettings()).redacted()

    async def update_notification_settings(
        self,
        user_id: str,
        *,
        email_recipients: Optional[List[str]] = None,
        smtp_sender: Optional[str] = None,
        smtp_password: Optional[str] = None,
        webhook_url: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Replace a user's notification channels. `smtp_password=None` keeps the
        stored password; an empty string clears it.
        """
        current = self._prefs.get(user_id, NotificationSettings())
        if smtp_password is None:
            sealed = current.smtp_password_sealed
        elif smtp_password == "":
            sealed = None
        else:
            sealed = self.box.seal(smtp_password)
        prefs = NotificationSettings(
            email_recipients=[r.strip() for r in (email_recipients or []) if r.strip()],
            smtp_sender=smtp_sender or None,
            smtp_password_sealed=sealed,
            webhook_url=webhook_url or None,
            telegram_chat_id=telegram_chat_id or None,
        )
        self._prefs[user_id] = prefs
        self.store.save_settings(user_id, prefs)

        notifier = self._notifier_for(user_id)
        for entry in self._jobs.values():
            if entry.job.user_id == user_id and entry.worker is not None:
                entry.worker.notifier = notifier
        logger.info("User %s updated notification settings", user_id)
        return prefs.redacted()
