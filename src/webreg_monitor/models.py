"""
Data model: what to watch, how to trigger, and the per-job runtime record.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import ConfigurationError
from .stats import EnrollmentStats, StatsSnapshot


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class SectionRef:
    """One schedulable unit: a lecture or a discussion of a course."""

    department: str
    course_code: str
    section_code: str

    @property
    def key(self) -> str:
        return f"{self.department}_{self.course_code}_{self.section_code}"

    def __str__(self) -> str:
        return f"{self.department} {self.course_code} {self.section_code}"


@dataclass
class SectionGroup:
    """A lecture together with the discussions that must accompany it."""

    lecture: str
    discussions: List[str] = field(default_factory=list)

    def members(self) -> List[str]:
        return [self.lecture, *self.discussions]


@dataclass
class Course:
    department: str
    course_code: str
    groups: List[SectionGroup] = field(default_factory=list)

    def ref(self, section_code: str) -> SectionRef:
        return SectionRef(self.department, self.course_code, section_code)

    @property
    def label(self) -> str:
        return f"{self.department} {self.course_code}"


@dataclass(frozen=True)
class TriggerPolicy:
    """
    threshold == 0 -> include mode: any open seat fires.
    threshold > 0  -> exclude mode: fires only while 0 < available <= threshold.
    """

    threshold: int = 0

    @property
    def mode(self) -> str:
        return "include" if self.threshold == 0 else "exclude"

    def fires(self, available: int) -> bool:
        if available <= 0:
            return False
        return self.threshold == 0 or available <= self.threshold


@dataclass(frozen=True)
class SeatCount:
    section_id: str
    section_code: str
    available: int
    total: int
    enrolled: int
    waitlist: int = 0


@dataclass
class JobConfig:
    term: str
    polling_interval: float
    courses: List[Course]
    threshold: int = 0

    @property
    def policy(self) -> TriggerPolicy:
        return TriggerPolicy(self.threshold)

    def validate(self, min_polling_interval: float) -> None:
        """Reject a job definition before it can ever reach a worker."""
        if not self.term or not self.term.strip():
            raise ConfigurationError("term is required")
        if self.polling_interval < min_polling_interval:
            raise ConfigurationError(
                f"polling_interval must be at least {min_polling_interval:g} seconds"
            )
        if self.threshold < 0:
            raise ConfigurationError("threshold cannot be negative")
        if not self.courses:
            raise ConfigurationError("at least one course is required")

        for course in self.courses:
            if not course.department.strip() or not course.course_code.strip():
                raise ConfigurationError("course department and code are required")
            if not course.groups:
                raise ConfigurationError(f"{course.label} has no sections")
            seen: Set[str] = set()
            for group in course.groups:
                if not group.lecture.strip():
                    raise ConfigurationError(f"{course.label} has a group without a lecture")
                for code in group.members():
                    if not code.strip():
                        raise ConfigurationError(f"{course.label} has an empty section code")
                    if code in seen:
                        raise ConfigurationError(
                            f"section {code} appears twice in {course.label}"
                        )
                    seen.add(code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "polling_interval": self.polling_interval,
            "threshold": self.threshold,
            "courses": [
                {
                    "department": c.department,
                    "course_code": c.course_code,
                    "sections": [
                        {"lecture": g.lecture, "discussions": list(g.discussions)}
                        for g in c.groups
                    ],
                }
                for c in self.courses
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobConfig":
        return cls(
            term=str(data["term"]),
            polling_interval=float(data["polling_interval"]),
            threshold=int(data.get("threshold", 0)),
            courses=[
                Course(
                    department=c["department"].upper().strip(),
                    course_code=c["course_code"].upper().strip(),
                    groups=[
                        SectionGroup(
                            lecture=s["lecture"].strip(),
                            discussions=[d.strip() for d in s.get("discussions", [])],
                        )
                        for s in c.get("sections", [])
                    ],
                )
                for c in data.get("courses", [])
            ],
        )


@dataclass
class JobStatus:
    state: JobState = JobState.STOPPED
    connected: bool = False
    last_check: Optional[datetime] = None
    last_error: Optional[str] = None
    # Set while the job should come back after a process restart.
    active: bool = False

    @property
    def degraded(self) -> bool:
        return self.state == JobState.RUNNING and not self.connected

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "degraded": self.degraded,
            "last_check": _format_dt(self.last_check),
            "last_error": self.last_error,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStatus":
        return cls(
            state=JobState(data.get("state", JobState.STOPPED.value)),
            connected=bool(data.get("connected", False)),
            last_check=_parse_dt(data.get("last_check")),
            last_error=data.get("last_error"),
            active=bool(data.get("active", False)),
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only copy of a job handed out to front ends."""

    id: str
    user_id: str
    config: JobConfig
    status: JobStatus
    stats: StatsSnapshot
    enrolled: Tuple[str, ...]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            **self.config.to_dict(),
            "mode": self.config.policy.mode,
            "status": self.status.to_dict(),
            "stats": self.stats.to_dict(),
            "enrolled": list(self.enrolled),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Job:
    id: str
    user_id: str
    config: JobConfig
    sealed_token: str
    token_refreshed_at: Optional[datetime] = None
    status: JobStatus = field(default_factory=JobStatus)
    stats: EnrollmentStats = field(default_factory=EnrollmentStats)
    enrolled: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)

    def pending_sections(self) -> List[SectionRef]:
        """Every configured section that has not been enrolled yet, in config order."""
        pending = []
        for course in self.config.courses:
            for group in course.groups:
                for code in group.members():
                    ref = course.ref(code)
                    if ref.key not in self.enrolled:
                        pending.append(ref)
        return pending

    def find_group(self, ref: SectionRef) -> Optional[Tuple[Course, SectionGroup]]:
        for course in self.config.courses:
            if (course.department, course.course_code) != (ref.department, ref.course_code):
                continue
            for group in course.groups:
                if ref.section_code in group.members():
                    return course, group
        return None

    def is_group_satisfied(self, course: Course, group: SectionGroup) -> bool:
        return all(course.ref(code).key in self.enrolled for code in group.members())

    def mark_enrolled(self, ref: SectionRef) -> bool:
        """Record a successful enrollment; True when it completed its group."""
        self.enrolled.add(ref.key)
        found = self.find_group(ref)
        return found is not None and self.is_group_satisfied(*found)

    def all_satisfied(self) -> bool:
        return not self.pending_sections()

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            user_id=self.user_id,
            config=copy.deepcopy(self.config),
            status=copy.copy(self.status),
            stats=self.stats.snapshot(),
            enrolled=tuple(sorted(self.enrolled)),
            created_at=self.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "config": self.config.to_dict(),
            "sealed_token": self.sealed_token,
            "token_refreshed_at": _format_dt(self.token_refreshed_at),
            "status": self.status.to_dict(),
            "stats": self.stats.to_dict(),
            "enrolled": sorted(self.enrolled),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            config=JobConfig.from_dict(data["config"]),
            sealed_token=data["sealed_token"],
            token_refreshed_at=_parse_dt(data.get("token_refreshed_at")),
            status=JobStatus.from_dict(data.get("status", {})),
            stats=EnrollmentStats.from_dict(data.get("stats", {})),
            enrolled=set(data.get("enrolled", [])),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class NotificationSettings:
    email_recipients: List[str] = field(default_factory=list)
    smtp_sender: Optional[str] = None
    smtp_password_sealed: Optional[str] = None
    webhook_url: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    def redacted(self) -> Dict[str, Any]:
        return {
            "email_recipients": list(self.email_recipients),
            "smtp_sender": self.smtp_sender,
            "smtp_password_set": bool(self.smtp_password_sealed),
            "webhook_url": self.webhook_url,
            "telegram_chat_id": self.telegram_chat_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email_recipients": list(self.email_recipients),
            "smtp_sender": self.smtp_sender,
            "smtp_password_sealed": self.smtp_password_sealed,
            "webhook_url": self.webhook_url,
            "telegram_chat_id": self.telegram_chat_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationSettings":
        return cls(
            email_recipients=list(data.get("email_recipients", [])),
            smtp_sender=data.get("smtp_sender"),
            smtp_password_sealed=data.get("smtp_password_sealed"),
            webhook_url=data.get("webhook_url"),
            telegram_chat_id=data.get("telegram_chat_id"),
        )
