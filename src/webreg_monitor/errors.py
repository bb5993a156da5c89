"""
Exception taxonomy shared by the engine, the client and the front ends.
"""

from enum import Enum
from typing import Optional


class MonitorError(Exception):
    """Base class for every error raised by webreg_monitor."""


class TransportError(MonitorError):
    """Network failure, timeout or transient server error. Retryable."""


class RateLimitedError(TransportError):
    """The registration gateway replied 429."""


class ServerError(TransportError):
    """The registration gateway replied 5xx."""


class AuthenticationError(MonitorError):
    """Session token expired or was rejected."""


class SectionNotFoundError(MonitorError):
    """The requested section does not exist for the term."""


class RequestRejected(MonitorError):
    """The gateway refused the request itself (an unexpected 4xx). Never retried."""


class RejectionReason(str, Enum):
    FULL = "full"
    REQUISITE_NOT_MET = "requisite_not_met"
    TIME_CONFLICT = "time_conflict"
    UNIT_CAP_EXCEEDED = "unit_cap_exceeded"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RejectionReason":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.OTHER


class EnrollmentRejected(MonitorError):
    """Business-rule rejection from the registration system. Never retried."""

    def __init__(self, reason: RejectionReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class ConfigurationError(MonitorError, ValueError):
    """Invalid job definition or settings."""


class InternalError(MonitorError):
    """Invariant violation inside the engine."""


class JobNotFoundError(MonitorError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobAccessDenied(MonitorError):
    def __init__(self, job_id: str, user_id: str):
        self.job_id = job_id
        self.user_id = user_id
        super().__init__(f"User {user_id} may not access job {job_id}")


class JobStateError(MonitorError):
    """Operation not allowed in the job's current lifecycle state."""


class JobConnectionError(MonitorError):
    """Starting a job failed because its session could not be validated."""


class DeliveryFailed(MonitorError):
    """A notification channel could not deliver a message."""


def is_retryable(exc: BaseException) -> bool:
    """Only transport-level failures are worth another attempt."""
    return isinstance(exc, TransportError)
