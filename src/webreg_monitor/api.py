"""
HTTP front end for the job manager.

Every request carries the caller's identity in the `X-User-Id` header; the
manager scopes all lookups to that user.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import (
    ConfigurationError,
    JobAccessDenied,
    JobConnectionError,
    JobNotFoundError,
    JobStateError,
)
from .manager import JobManager
from .models import JobConfig, JobState

logger = logging.getLogger(__name__)


class SectionGroupIn(BaseModel):
    lecture: str
    discussions: List[str] = Field(default_factory=list)


class CourseIn(BaseModel):
    department: str
    course_code: str
    sections: List[SectionGroupIn]


class JobConfigIn(BaseModel):
    term: str
    polling_interval: Optional[float] = None
    threshold: int = 0
    courses: List[CourseIn]

    def to_config(self, default_interval: float) -> JobConfig:
        data = self.model_dump()
        if data["polling_interval"] is None:
            data["polling_interval"] = default_interval
        return JobConfig.from_dict(data)


class JobCreateIn(JobConfigIn):
    session_token: str


class JobUpdateIn(JobConfigIn):
    session_token: Optional[str] = None


class NotificationsIn(BaseModel):
    email_recipients: List[str] = Field(default_factory=list)
    smtp_sender: Optional[str] = None
    # None keeps the stored password, "" clears it.
    smtp_password: Optional[str] = None
    webhook_url: Optional[str] = None
    telegram_chat_id: Optional[str] = None


def _error_handler(code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, code, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    return handler


def current_user(x_user_id: str = Header(...)) -> str:
    user = x_user_id.strip()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id is empty")
    return user


def create_app(manager: JobManager, resume: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resume:
            resumed = await manager.resume_active_jobs()
            if resumed:
                logger.info("Resumed %d job(s): %s", len(resumed), ", ".join(resumed))
        yield
        logger.info("Shutting down job manager")
        await manager.shutdown()

    app = FastAPI(title="WebReg Monitor", version="1.0", lifespan=lifespan)
    app.state.manager = manager

    app.add_exception_handler(JobNotFoundError, _error_handler(status.HTTP_404_NOT_FOUND))
    app.add_exception_handler(JobAccessDenied, _error_handler(status.HTTP_403_FORBIDDEN))
    app.add_exception_handler(JobStateError, _error_handler(status.HTTP_409_CONFLICT))
    app.add_exception_handler(ConfigurationError, _error_handler(422))
    app.add_exception_handler(JobConnectionError, _error_handler(status.HTTP_502_BAD_GATEWAY))

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        jobs = manager.all_jobs()
        return {
            "status": "ok",
            "jobs": len(jobs),
            "running": sum(1 for j in jobs if j.status.state == JobState.RUNNING),
        }

    @app.post("/api/jobs", status_code=status.HTTP_201_CREATED)
    async def create_job(body: JobCreateIn, user: str = Depends(current_user)) -> Dict[str, Any]:
        config = body.to_config(manager.settings.default_polling_interval)
        job_id = await manager.create(user, config, body.session_token)
        return manager.get(user, job_id).to_dict()

    @app.get("/api/jobs")
    async def list_jobs(user: str = Depends(current_user)) -> List[Dict[str, Any]]:
        return [snap.to_dict() for snap in manager.list(user)]

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str, user: str = Depends(current_user)) -> Dict[str, Any]:
        return manager.get(user, job_id).to_dict()

    @app.put("/api/jobs/{job_id}")
    async def update_job(
        job_id: str, body: JobUpdateIn, user: str = Depends(current_user)
    ) -> Dict[str, Any]:
        config = body.to_config(manager.settings.default_polling_interval)
        snap = await manager.update(user, job_id, config, session_token=body.session_token)
        return snap.to_dict()

    @app.delete("/api/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_job(job_id: str, user: str = Depends(current_user)) -> None:
        await manager.delete(user, job_id)

    @app.post("/api/jobs/{job_id}/start")
    async def start_job(job_id: str, user: str = Depends(current_user)) -> Dict[str, Any]:
        return (await manager.start(user, job_id)).to_dict()

    @app.post("/api/jobs/{job_id}/stop")
    async def stop_job(job_id: str, user: str = Depends(current_user)) -> Dict[str, Any]:
        return (await manager.stop(user, job_id)).to_dict()

    @app.get("/api/notifications")
    async def get_notifications(user: str = Depends(current_user)) -> Dict[str, Any]:
        return manager.get_notification_settings(user)

    @app.post("/api/notifications")
    async def update_notifications(
        body: NotificationsIn, user: str = Depends(current_user)
    ) -> Dict[str, Any]:
        return await manager.update_notification_settings(user, **body.model_dump())

    return app
