"""
JSON-file persistence for jobs, stats and per-user notification settings.

Only sealed secrets ever reach the file.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError
from .models import Job, NotificationSettings

logger = logging.getLogger(__name__)


class JsonJobStore:
    """
    Whole-document store: every write rewrites the file. `path=None` keeps
    everything in memory.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = {"jobs": {}, "settings": {}}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text("utf-8"))
        except (json.JSONDecodeError, ValueError) as e:
            raise ConfigurationError(f"Cannot read job store {self.path}: {e}") from e
        self._data["jobs"] = dict(data.get("jobs", {}))
        self._data["settings"] = dict(data.get("settings", {}))
        logger.info(
            "Loaded %d job(s) and %d notification profile(s) from %s",
            len(self._data["jobs"]), len(self._data["settings"]), self.path,
        )

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.debug("Saved %d job(s) to %s", len(self._data["jobs"]), self.path)

    def load_jobs(self) -> List[Job]:
        with self._lock:
            raw = list(self._data["jobs"].values())
        return [Job.from_dict(item) for item in raw]

    def save_job(self, job: Job) -> None:
        record = job.to_dict()
        with self._lock:
            self._data["jobs"][job.id] = record
            self._save()

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            if self._data["jobs"].pop(job_id, None) is not None:
                self._save()

    def load_settings(self) -> Dict[str, NotificationSettings]:
        with self._lock:
            raw = dict(self._data["settings"])
        return {user: NotificationSettings.from_dict(item) for user, item in raw.items()}

    def save_settings(self, user_id: str, prefs: NotificationSettings) -> None:
        with self._lock:
            self._data["settings"][user_id] = prefs.to_dict()
            self._save()
