import asyncio
from datetime import datetime, timedelta, timezone

from fakes import FakeChannel, FakeClient, key, make_job
from webreg_monitor.config import Settings
from webreg_monitor.credentials import CredentialHolder
from webreg_monitor.errors import AuthenticationError
from webreg_monitor.models import JobState
from webreg_monitor.monitor import CycleReport
from webreg_monitor.notifier import Notifier
from webreg_monitor.retry import RetryPolicy
from webreg_monitor.worker import JobWorker


def make_worker(client, channel, credentials=None, settings=None, on_exit=None, **job_kwargs):
    job = make_job(**job_kwargs)
    settings = settings or Settings()
    worker = JobWorker(
        job,
        client,
        credentials or CredentialHolder("session=abc", settings.session_max_age),
        Notifier([channel]),
        settings,
        retry_policy=RetryPolicy(),
        seal=lambda value: f"sealed:{value}",
        on_exit=on_exit,
    )
    return job, worker


def test_refresh_failure_notifies_once_per_disconnect():
    client = FakeClient(refresh_error=AuthenticationError("cookie expired"))
    channel = FakeChannel()
    job, worker = make_worker(client, channel)
    job.status.connected = True

    async def go():
        assert await worker.refresh_once() is False
        assert await worker.refresh_once() is False
        client.refresh_error = None
        assert await worker.refresh_once() is True

    asyncio.run(go())

    assert channel.subjects == ["Session expired"]
    assert job.stats.errors == 2
    assert job.status.connected
    assert job.status.last_error is None
    assert worker.credentials.snapshot().value == "session-3"
    assert job.sealed_token == "sealed:session-3"
    assert job.token_refreshed_at is not None


def test_validate_applies_the_refreshed_token():
    client = FakeClient()
    job, worker = make_worker(client, FakeChannel())

    asyncio.run(worker.validate())

    assert job.status.connected
    assert worker.credentials.snapshot().value == "session-1"


def test_stale_token_marks_job_degraded():
    stale_since = datetime.now(timezone.utc) - timedelta(hours=1)
    settings = Settings()
    credentials = CredentialHolder("session=abc", settings.session_max_age, stale_since)
    job, worker = make_worker(FakeClient(), FakeChannel(), credentials)
    job.status.state = JobState.RUNNING
    job.status.connected = True

    worker._check_freshness()

    assert not job.status.connected
    assert job.status.degraded
    assert "not refreshed" in job.status.last_error


def test_auth_failure_in_cycle_wakes_refresh():
    job, worker = make_worker(FakeClient(), FakeChannel())
    job.status.connected = True

    worker._after_cycle(CycleReport(auth_failed=True))

    assert not job.status.connected
    assert worker._wake_refresh.is_set()


def test_refresh_timeout_counts_as_a_failed_refresh():
    client = FakeClient(refresh_delay=5)
    channel = FakeChannel()
    job, worker = make_worker(client, channel, settings=Settings(call_timeout=0.02))
    job.status.connected = True

    assert asyncio.run(worker.refresh_once()) is False

    assert not job.status.connected
    assert "timed out" in job.status.last_error
    assert job.stats.errors == 1
    assert channel.subjects == ["Session expired"]
    assert worker.credentials.snapshot().value == "session=abc"


def test_worker_that_enrolls_everything_shuts_down_both_loops():
    client = FakeClient(readings={key("A00"): [0]})
    channel = FakeChannel()
    exits = []

    def on_exit(w):
        exits.append((w._refresh_task.done(), w.job.status.state))

    job, worker = make_worker(
        client,
        channel,
        settings=Settings(refresh_interval=0.01),
        on_exit=on_exit,
        polling_interval=0.02,
    )
    job.status.state = JobState.RUNNING
    job.status.active = True

    async def go():
        client.refresh_gate = asyncio.Event()
        client.refresh_entered = asyncio.Event()
        worker.launch()
        await asyncio.wait_for(client.refresh_entered.wait(), timeout=2)
        # A refresh is now pending; open the seat so the next cycle enrolls.
        client.readings[key("A00")] = [1]
        await asyncio.wait_for(worker._poll_task, timeout=2)
        assert not worker.is_active
        client.refresh_gate.set()
        await asyncio.sleep(0.05)

    asyncio.run(go())

    assert exits == [(True, JobState.STOPPED)]
    assert job.enrolled == {key("A00")}
    assert not job.status.active
    assert not job.status.connected
    assert channel.subjects[-1] == "All targets enrolled"
    # The refresh that was pending at exit never landed.
    assert worker.credentials.snapshot().value == "session=abc"
    assert job.sealed_token == "sealed"
    assert job.token_refreshed_at is None


def test_stop_cancels_a_pending_refresh():
    client = FakeClient()
    job, worker = make_worker(client, FakeChannel(), settings=Settings(refresh_interval=0.01))

    async def go():
        client.refresh_gate = asyncio.Event()
        client.refresh_entered = asyncio.Event()
        worker.launch()
        await asyncio.wait_for(client.refresh_entered.wait(), timeout=2)
        await asyncio.wait_for(worker.stop(), timeout=2)
        assert not worker.is_active

    asyncio.run(go())

    assert job.status.state == JobState.STOPPED
    assert worker.credentials.snapshot().value == "session=abc"
