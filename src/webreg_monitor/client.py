"""
Registration gateway client.

The engine only depends on the `RegistrationClient` protocol; `WebRegClient`
talks JSON over HTTP to a gateway service (see `mock_server` for the shape).
"""

import asyncio
import logging
from typing import Any, List, Optional, Protocol

import aiohttp

from .errors import (
    AuthenticationError,
    EnrollmentRejected,
    RateLimitedError,
    RequestRejected,
    RejectionReason,
    SectionNotFoundError,
    ServerError,
    TransportError,
)
from .models import SeatCount, SectionRef

logger = logging.getLogger(__name__)


class RegistrationClient(Protocol):
    async def check_availability(self, term: str, section: SectionRef, token: str) -> SeatCount:
        ...

    async def refresh_session(self, token: str) -> str:
        ...

    async def enroll(self, term: str, section: SectionRef, token: str) -> None:
        ...


def raise_for_status(status: int, payload: Any, what: str) -> None:
    """Translate a gateway HTTP status into the engine's error taxonomy."""
    if 200 <= status < 300:
        return
    detail = ""
    reason = None
    if isinstance(payload, dict):
        detail = str(payload.get("detail") or "")
        reason = payload.get("reason")
    if status in (401, 403):
        raise AuthenticationError(f"{what}: session rejected (HTTP {status})")
    if status == 404:
        raise SectionNotFoundError(f"{what}: not found")
    if status in (409, 422):
        raise EnrollmentRejected(RejectionReason.parse(reason), detail)
    if status == 429:
        raise RateLimitedError(f"{what}: rate limited")
    if status >= 500:
        raise ServerError(f"{what}: HTTP {status} {detail}".rstrip())
    if 400 <= status < 500:
        raise RequestRejected(f"{what}: HTTP {status} {detail}".rstrip())
    raise TransportError(f"{what}: unexpected HTTP {status}")


def parse_sections(payload: Any) -> List[SeatCount]:
    if not isinstance(payload, list):
        raise TransportError("malformed section listing")
    return [
        SeatCount(
            section_id=str(s["section_id"]),
            section_code=str(s["section_code"]),
            available=int(s["available_seats"]),
            total=int(s["total_seats"]),
            enrolled=int(s["enrolled"]),
            waitlist=int(s.get("waitlist", 0)),
        )
        for s in payload
    ]


class WebRegClient:
    """aiohttp implementation of `RegistrationClient`."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Tokens travel per request; never let one job's cookies leak into another's.
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, cookie_jar=aiohttp.DummyCookieJar()
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, token: str, what: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method, url, headers={"Cookie": token}, **kwargs
            ) as resp:
                try:
                    payload = await resp.json(encoding="utf-8")
                except (aiohttp.ContentTypeError, ValueError):
                    payload = None
                if resp.status >= 400:
                    logger.debug("Gateway returned HTTP %d for %s %s", resp.status, method, url)
                raise_for_status(resp.status, payload, what)
                return payload
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{what}: request timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{what}: {exc}") from exc

    async def check_availability(self, term: str, section: SectionRef, token: str) -> SeatCount:
        path = f"/terms/{term}/courses/{section.department}/{section.course_code}/sections"
        payload = await self._request("GET", path, token, f"check {section}")
        for seat in parse_sections(payload):
            if seat.section_code == section.section_code:
                return seat
        raise SectionNotFoundError(f"check {section}: section not listed")

    async def refresh_session(self, token: str) -> str:
        payload = await self._request("POST", "/session/refresh", token, "refresh session")
        if not isinstance(payload, dict) or not payload.get("token"):
            raise AuthenticationError("refresh session: no token returned")
        return str(payload["token"])

    async def enroll(self, term: str, section: SectionRef, token: str) -> None:
        body = {
            "department": section.department,
            "course_code": section.course_code,
            "section_code": section.section_code,
        }
        payload = await self._request(
            "POST", f"/terms/{term}/enroll", token, f"enroll {section}", json=body
        )
        if not isinstance(payload, dict) or not payload.get("enrolled"):
            detail = payload.get("detail", "") if isinstance(payload, dict) else ""
            raise EnrollmentRejected(RejectionReason.OTHER, detail or "enrollment not confirmed")
