"""
Per-job enrollment counters.

Counters only ever go up. The job's own worker is the only writer; front ends
read through `snapshot()`.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


def format_duration(duration: timedelta) -> str:
    seconds = max(int(duration.total_seconds()), 0)
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h {minutes}m {seconds}s"


@dataclass(frozen=True)
class StatsSnapshot:
    total_checks: int
    openings_found: int
    enrollment_attempts: int
    successful_enrollments: int
    errors: int
    section_failures: Mapping[str, int]
    start_time: datetime
    last_updated: datetime

    @property
    def success_rate(self) -> float:
        if not self.enrollment_attempts:
            return 0.0
        return self.successful_enrollments / self.enrollment_attempts * 100.0

    def uptime(self, now: Optional[datetime] = None) -> str:
        return format_duration((now or datetime.now(timezone.utc)) - self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_checks": self.total_checks,
            "openings_found": self.openings_found,
            "enrollment_attempts": self.enrollment_attempts,
            "successful_enrollments": self.successful_enrollments,
            "errors": self.errors,
            "section_failures": dict(self.section_failures),
            "success_rate": round(self.success_rate, 2),
            "start_time": self.start_time.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass
class EnrollmentStats:
    total_checks: int = 0
    openings_found: int = 0
    enrollment_attempts: int = 0
    successful_enrollments: int = 0
    errors: int = 0
    section_failures: Dict[str, int] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # section key -> (day, failure notices sent that day); not persisted.
    _notices: Dict[str, Tuple[date, int]] = field(default_factory=dict, repr=False)

    def _touch(self) -> None:
        self.last_updated = datetime.now(timezone.utc)

    def record_check(self) -> None:
        self.total_checks += 1
        self._touch()

    def record_opening(self) -> None:
        self.openings_found += 1
        self._touch()

    def record_attempt(self) -> None:
        self.enrollment_attempts += 1
        self._touch()

    def record_success(self, section_key: str) -> None:
        self.successful_enrollments += 1
        self._notices.pop(section_key, None)
        self._touch()

    def record_error(self) -> None:
        self.errors += 1
        self._touch()

    def record_section_failure(self, section_key: str) -> None:
        self.section_failures[section_key] = self.section_failures.get(section_key, 0) + 1
        self.errors += 1
        self._touch()

    def should_notify_failure(
        self, section_key: str, daily_limit: int, now: Optional[datetime] = None
    ) -> bool:
        """
        Rate-limit failure notices per section: at most `daily_limit` per
        calendar day. The failure itself is always counted elsewhere.
        """
        today = (now or datetime.now(timezone.utc)).date()
        day, sent = self._notices.get(section_key, (today, 0))
        if day != today:
            sent = 0
        if sent >= daily_limit:
            return False
        self._notices[section_key] = (today, sent + 1)
        return True

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            total_checks=self.total_checks,
            openings_found=self.openings_found,
            enrollment_attempts=self.enrollment_attempts,
            successful_enrollments=self.successful_enrollments,
            errors=self.errors,
            section_failures=MappingProxyType(dict(self.section_failures)),
            start_time=self.start_time,
            last_updated=self.last_updated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.snapshot().to_dict()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrollmentStats":
        stats = cls(
            total_checks=int(data.get("total_checks", 0)),
            openings_found=int(data.get("openings_found", 0)),
            enrollment_attempts=int(data.get("enrollment_attempts", 0)),
            successful_enrollments=int(data.get("successful_enrollments", 0)),
            errors=int(data.get("errors", 0)),
            section_failures={k: int(v) for k, v in data.get("section_failures", {}).items()},
        )
        if data.get("start_time"):
            stats.start_time = datetime.fromisoformat(data["start_time"])
        if data.get("last_updated"):
            stats.last_updated = datetime.fromisoformat(data["last_updated"])
        return stats
