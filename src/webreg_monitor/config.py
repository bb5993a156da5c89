"""
Runtime settings, read from the environment (and a .env file if present).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Final, Optional, TypeVar

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_API_URL: Final[str] = "http://localhost:8000"
DEFAULT_DATA_FILE: Final[str] = "jobs.json"
DEFAULT_SMTP_SERVER: Final[str] = "smtp.gmail.com"

T = TypeVar("T")


@dataclass(frozen=True)
class Settings:
    api_url: str = DEFAULT_API_URL
    data_file: Path = Path(DEFAULT_DATA_FILE)
    encryption_key: Optional[str] = None
    min_polling_interval: float = 10.0
    default_polling_interval: float = 30.0
    refresh_interval: float = 480.0
    call_timeout: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay: float = 60.0
    max_failure_notices_per_day: int = 3
    smtp_server: str = DEFAULT_SMTP_SERVER
    smtp_port: int = 587
    telegram_bot_token: Optional[str] = None

    def __post_init__(self) -> None:
        if self.min_polling_interval <= 0:
            raise ConfigurationError("min_polling_interval must be positive")
        if self.refresh_interval <= 0:
            raise ConfigurationError("refresh_interval must be positive")
        if self.call_timeout <= 0:
            raise ConfigurationError("call_timeout must be positive")
        if self.retry_max_attempts < 1:
            raise ConfigurationError("retry_max_attempts must be at least 1")
        if self.max_failure_notices_per_day < 0:
            raise ConfigurationError("max_failure_notices_per_day cannot be negative")

    @property
    def session_max_age(self) -> float:
        """Age after which a session token counts as stale."""
        return self.refresh_interval + self.call_timeout

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)
        return cls(
            api_url=os.getenv("WEBREG_API_URL", DEFAULT_API_URL).rstrip("/"),
            data_file=Path(os.getenv("DATA_FILE", DEFAULT_DATA_FILE)),
            encryption_key=os.getenv("ENCRYPTION_KEY") or None,
            min_polling_interval=_env("MIN_POLLING_INTERVAL", float, 10.0),
            default_polling_interval=_env("DEFAULT_POLLING_INTERVAL", float, 30.0),
            refresh_interval=_env("SESSION_REFRESH_INTERVAL", float, 480.0),
            call_timeout=_env("CALL_TIMEOUT", float, 30.0),
            retry_max_attempts=_env("RETRY_MAX_ATTEMPTS", int, 3),
            retry_base_delay=_env("RETRY_BASE_DELAY", float, 1.0),
            retry_backoff_factor=_env("RETRY_BACKOFF_FACTOR", float, 2.0),
            retry_max_delay=_env("RETRY_MAX_DELAY", float, 60.0),
            max_failure_notices_per_day=_env("MAX_FAILURE_NOTICES_PER_DAY", int, 3),
            smtp_server=os.getenv("SMTP_SERVER", DEFAULT_SMTP_SERVER),
            smtp_port=_env("SMTP_PORT", int, 587),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
        )


def _env(name: str, cast: Callable[[str], T], default: T) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name}={raw!r} is not a valid {cast.__name__}") from exc
