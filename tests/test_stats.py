from datetime import datetime, timedelta, timezone

import pytest

from webreg_monitor.stats import EnrollmentStats, format_duration


def test_success_rate():
    stats = EnrollmentStats()
    assert stats.snapshot().success_rate == 0.0
    for _ in range(4):
        stats.record_attempt()
    stats.record_success("CSE_110_A00")
    assert stats.snapshot().success_rate == pytest.approx(25.0)


def test_section_failures_also_count_as_errors():
    stats = EnrollmentStats()
    stats.record_section_failure("CSE_110_A00")
    stats.record_section_failure("CSE_110_A00")
    stats.record_error()
    assert stats.errors == 3
    assert stats.section_failures == {"CSE_110_A00": 2}


def test_snapshot_is_read_only():
    stats = EnrollmentStats()
    stats.record_section_failure("CSE_110_A00")
    snap = stats.snapshot()
    with pytest.raises(TypeError):
        snap.section_failures["CSE_110_A00"] = 0
    stats.record_section_failure("CSE_110_A00")
    assert snap.section_failures["CSE_110_A00"] == 1


def test_failure_notices_capped_per_day_and_reset_by_success():
    stats = EnrollmentStats()
    day1 = datetime(2025, 9, 1, 9, tzinfo=timezone.utc)
    day2 = day1 + timedelta(days=1)

    sent = [stats.should_notify_failure("A", 3, now=day1) for _ in range(5)]
    assert sent == [True, True, True, False, False]
    assert stats.should_notify_failure("B", 3, now=day1)
    assert stats.should_notify_failure("A", 3, now=day2)

    stats.record_success("A")
    assert [stats.should_notify_failure("A", 3, now=day2) for _ in range(4)] == [True, True, True, False]


def test_roundtrip_keeps_counters():
    stats = EnrollmentStats()
    stats.record_check()
    stats.record_opening()
    stats.record_attempt()
    stats.record_section_failure("CSE_110_A00")

    restored = EnrollmentStats.from_dict(stats.to_dict())

    assert restored.snapshot().to_dict() == stats.snapshot().to_dict()


def test_format_duration():
    assert format_duration(timedelta(hours=2, minutes=3, seconds=4)) == "2h 3m 4s"
    assert format_duration(timedelta(seconds=-5)) == "0h 0m 0s"
