import asyncio
import json

import pytest

import webreg_monitor.manager as manager_module
from fakes import FakeChannel, FakeClient, key, make_config
from webreg_monitor.config import Settings
from webreg_monitor.credentials import SecretBox
from webreg_monitor.errors import (
    AuthenticationError,
    ConfigurationError,
    JobAccessDenied,
    JobConnectionError,
    JobNotFoundError,
    JobStateError,
)
from webreg_monitor.manager import JobManager
from webreg_monitor.models import JobState
from webreg_monitor.notifier import Notifier
from webreg_monitor.retry import RetryPolicy
from webreg_monitor.storage import JsonJobStore

FAST = RetryPolicy(max_attempts=3, base_delay=0.001, backoff_factor=2.0, max_delay=1.0)
KEY = SecretBox.generate_key()


def make_manager(client, path=None, settings=None, store=None) -> JobManager:
    manager = JobManager(
        client,
        store or JsonJobStore(path),
        settings or Settings(),
        SecretBox(KEY),
        retry_policy=FAST,
    )
    manager.load()
    return manager


async def wait_for_state(manager, user, job_id, state, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while manager.get(user, job_id).status.state != state:
        if loop.time() > deadline:
            raise AssertionError(f"job never reached {state}")
        await asyncio.sleep(0.01)


def test_create_validates_config():
    async def go():
        manager = make_manager(FakeClient())
        with pytest.raises(ConfigurationError):
            await manager.create("alice", make_config(polling_interval=5), "session=abc")
        with pytest.raises(ConfigurationError):
            await manager.create("alice", make_config(), "  ")

    asyncio.run(go())


def test_create_starts_stopped_with_zeroed_stats():
    async def go():
        manager = make_manager(FakeClient())
        job_id = await manager.create("alice", make_config(), "session=abc")
        snap = manager.get("alice", job_id)
        assert snap.status.state == JobState.STOPPED
        assert snap.stats.total_checks == 0
        assert [s.id for s in manager.list("alice")] == [job_id]

    asyncio.run(go())


def test_concurrent_starts_create_one_worker():
    async def go():
        client = FakeClient()
        manager = make_manager(client)
        job_id = await manager.create("alice", make_config(), "session=abc")

        snaps = await asyncio.gather(*(manager.start("alice", job_id) for _ in range(10)))

        assert all(s.status.state == JobState.RUNNING for s in snaps)
        assert client.refresh_calls == 1
        await manager.stop("alice", job_id)
        assert manager.get("alice", job_id).status.state == JobState.STOPPED

    asyncio.run(go())


def test_start_and_stop_are_idempotent():
    async def go():
        client = FakeClient()
        manager = make_manager(client)
        job_id = await manager.create("alice", make_config(), "session=abc")

        await manager.stop("alice", job_id)
        await manager.start("alice", job_id)
        await manager.start("alice", job_id)
        assert client.refresh_calls == 1
        await manager.stop("alice", job_id)
        snap = await manager.stop("alice", job_id)
        assert snap.status.state == JobState.STOPPED
        assert not snap.status.active

    asyncio.run(go())


def test_stop_during_enrollment_waits_for_the_outcome():
    async def go():
        client = FakeClient(readings={key("A00"): [1, 1]})
        client.enroll_gate = asyncio.Event()
        client.enroll_entered = asyncio.Event()
        manager = make_manager(client)
        job_id = await manager.create("alice", make_config(), "session=abc")
        await manager.start("alice", job_id)

        await asyncio.wait_for(client.enroll_entered.wait(), timeout=2)
        stopping = asyncio.create_task(manager.stop("alice", job_id))
        await asyncio.sleep(0.01)
        assert manager.get("alice", job_id).status.state == JobState.STOPPING

        client.enroll_gate.set()
        snap = await stopping

        assert snap.status.state == JobState.STOPPED
        assert snap.stats.enrollment_attempts == 1
        assert snap.stats.successful_enrollments == 1
        assert snap.enrolled == (key("A00"),)

    asyncio.run(go())


def test_failed_credential_check_leaves_job_stopped():
    async def go():
        client = FakeClient(refresh_error=AuthenticationError("cookie expired"))
        manager = make_manager(client)
        job_id = await manager.create("alice", make_config(), "session=abc")

        with pytest.raises(JobConnectionError):
            await manager.start("alice", job_id)

        snap = manager.get("alice", job_id)
        assert snap.status.state == JobState.STOPPED
        assert not snap.status.connected
        assert "cookie expired" in snap.status.last_error

    asyncio.run(go())


def test_jobs_are_scoped_to_their_owner():
    async def go():
        manager = make_manager(FakeClient())
        job_id = await manager.create("alice", make_config(), "session=abc")

        assert manager.list("bob") == []
        with pytest.raises(JobAccessDenied):
            manager.get("bob", job_id)
        for op in (manager.start, manager.stop, manager.delete):
            with pytest.raises(JobAccessDenied):
                await op("bob", job_id)
        with pytest.raises(JobAccessDenied):
            await manager.update("bob", job_id, make_config())
        assert manager.get("alice", job_id).status.state == JobState.STOPPED

    asyncio.run(go())


def test_delete_stops_and_forgets_the_job():
    async def go():
        manager = make_manager(FakeClient())
        job_id = await manager.create("alice", make_config(), "session=abc")
        await manager.start("alice", job_id)

        await manager.delete("alice", job_id)

        with pytest.raises(JobNotFoundError):
            manager.get("alice", job_id)
        with pytest.raises(JobNotFoundError):
            await manager.start("alice", job_id)
        assert manager.list("alice") == []

    asyncio.run(go())


class ReadOnlyStore(JsonJobStore):
    def delete_job(self, job_id):
        raise OSError("read-only file system")


def test_delete_survives_a_storage_failure(caplog):
    async def go():
        manager = make_manager(FakeClient(), store=ReadOnlyStore())
        job_id = await manager.create("alice", make_config(), "session=abc")

        await manager.delete("alice", job_id)

        with pytest.raises(JobNotFoundError):
            manager.get("alice", job_id)
        assert manager.list("alice") == []

    asyncio.run(go())
    assert "Failed to remove job" in caplog.text


def test_update_only_while_stopped():
    async def go():
        manager = make_manager(FakeClient())
        job_id = await manager.create("alice", make_config(), "session=abc")
        await manager.start("alice", job_id)

        with pytest.raises(JobStateError):
            await manager.update("alice", job_id, make_config(threshold=2))

        await manager.stop("alice", job_id)
        snap = await manager.update("alice", job_id, make_config(threshold=2))
        assert snap.config.threshold == 2
        assert snap.config.policy.mode == "exclude"

    asyncio.run(go())


def test_worker_stops_itself_once_everything_is_enrolled(monkeypatch):
    channel = FakeChannel()
    monkeypatch.setattr(manager_module, "build_notifier", lambda *args: Notifier([channel]))

    async def go():
        client = FakeClient(readings={key("A00"): [1, 1], key("A01"): [1, 1]})
        manager = make_manager(client)
        job_id = await manager.create("alice", make_config(groups=[("A00", ["A01"])]), "session=abc")
        await manager.start("alice", job_id)

        await wait_for_state(manager, "alice", job_id, JobState.STOPPED)
        snap = manager.get("alice", job_id)
        assert snap.enrolled == (key("A00"), key("A01"))
        assert not snap.status.active
        await manager.shutdown()

    asyncio.run(go())
    assert channel.subjects[-2:] == ["CSE 110 complete", "All targets enrolled"]


def test_refresh_pending_at_self_exit_cannot_bring_back_a_deleted_job(monkeypatch, tmp_path):
    monkeypatch.setattr(manager_module, "build_notifier", lambda *args: Notifier([FakeChannel()]))
    path = tmp_path / "jobs.json"
    settings = Settings(refresh_interval=0.01, min_polling_interval=0.01)

    async def go():
        client = FakeClient(readings={key("A00"): [0]})
        manager = make_manager(client, path, settings)
        job_id = await manager.create("alice", make_config(polling_interval=0.02), "session=abc")
        await manager.start("alice", job_id)

        client.refresh_gate = asyncio.Event()
        client.refresh_entered = asyncio.Event()
        await asyncio.wait_for(client.refresh_entered.wait(), timeout=2)
        client.readings[key("A00")] = [1]
        await wait_for_state(manager, "alice", job_id, JobState.STOPPED)

        await manager.delete("alice", job_id)
        client.refresh_gate.set()
        await asyncio.sleep(0.05)

        assert manager.list("alice") == []
        assert manager.store.load_jobs() == []
        await manager.shutdown()

    asyncio.run(go())
    assert json.loads(path.read_text("utf-8"))["jobs"] == {}


def test_shutdown_persists_and_resume_restarts(tmp_path):
    path = tmp_path / "jobs.json"

    async def first_run():
        manager = make_manager(FakeClient(), path)
        job_id = await manager.create("alice", make_config(), "session=secret-cookie")
        idle_id = await manager.create("alice", make_config(), "session=other")
        await manager.start("alice", job_id)
        await manager.shutdown()
        return job_id, idle_id

    job_id, idle_id = asyncio.run(first_run())
    stored = path.read_text("utf-8")
    assert "secret-cookie" not in stored
    assert json.loads(stored)["jobs"][job_id]["status"]["active"] is True

    async def second_run():
        client = FakeClient()
        manager = make_manager(client, path)
        snap = manager.get("alice", job_id)
        assert snap.status.state == JobState.STOPPED
        resumed = await manager.resume_active_jobs()
        assert resumed == [job_id]
        assert manager.get("alice", job_id).status.state == JobState.RUNNING
        assert manager.get("alice", idle_id).status.state == JobState.STOPPED
        await manager.shutdown()

    asyncio.run(second_run())


def test_notification_settings_are_redacted_and_sealed(tmp_path):
    path = tmp_path / "jobs.json"

    async def go():
        manager = make_manager(FakeClient(), path)
        result = await manager.update_notification_settings(
            "alice",
            email_recipients=["alice@example.com"],
            smtp_sender="bot@example.com",
            smtp_password="app-password",
            webhook_url="https://discord.example/webhook",
        )
        assert result["smtp_password_set"] is True
        assert "smtp_password" not in result
        assert manager.get_notification_settings("bob")["email_recipients"] == []

        kept = await manager.update_notification_settings(
            "alice", email_recipients=["alice@example.com"], smtp_sender="bot@example.com"
        )
        assert kept["smtp_password_set"] is True

    asyncio.run(go())
    assert "app-password" not in path.read_text("utf-8")
