import pytest

from fakes import make_job
from webreg_monitor.errors import ConfigurationError
from webreg_monitor.models import NotificationSettings
from webreg_monitor.storage import JsonJobStore


def test_jobs_and_settings_survive_a_reload(tmp_path):
    path = tmp_path / "data" / "jobs.json"
    store = JsonJobStore(path)
    job = make_job()
    job.stats.record_check()
    store.save_job(job)
    store.save_settings("alice", NotificationSettings(webhook_url="https://hooks.example/x"))

    reloaded = JsonJobStore(path)
    jobs = reloaded.load_jobs()

    assert [j.id for j in jobs] == [job.id]
    assert jobs[0].stats.total_checks == 1
    assert reloaded.load_settings()["alice"].webhook_url == "https://hooks.example/x"


def test_delete_job(tmp_path):
    store = JsonJobStore(tmp_path / "jobs.json")
    store.save_job(make_job())
    store.delete_job("job1")
    store.delete_job("job1")
    assert JsonJobStore(tmp_path / "jobs.json").load_jobs() == []


def test_in_memory_store_writes_nothing(tmp_path):
    store = JsonJobStore()
    store.save_job(make_job())
    assert [j.id for j in store.load_jobs()] == ["job1"]
    assert list(tmp_path.iterdir()) == []


def test_corrupt_file_is_a_configuration_error(tmp_path):
    path = tmp_path / "jobs.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        JsonJobStore(path)
