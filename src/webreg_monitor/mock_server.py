"""
Mock registration gateway for local end-to-end runs.

Each section alternates between full and one open seat every second listing
request, so a monitor pointed at it sees both verified openings and false
positives.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

app = FastAPI(title="Mock WebReg Gateway", version="1.0")

MOCK_DATA: List[Dict[str, Any]] = [
    {"section_id": "079913", "department": "CSE", "course_code": "110", "section_code": "A00", "total_seats": 200},
    {"section_id": "079914", "department": "CSE", "course_code": "110", "section_code": "A01", "total_seats": 35},
    {"section_id": "079915", "department": "CSE", "course_code": "110", "section_code": "A02", "total_seats": 35},
    {"section_id": "081207", "department": "MATH", "course_code": "20C", "section_code": "B00", "total_seats": 150},
    {"section_id": "081208", "department": "MATH", "course_code": "20C", "section_code": "B01", "total_seats": 30},
    {"section_id": "090122", "department": "COGS", "course_code": "9", "section_code": "C00", "total_seats": 300},
]

_REQUESTS: Dict[str, int] = {item["section_id"]: 0 for item in MOCK_DATA}
# Seats shown by the latest listing; enrollment succeeds only against these.
_OPEN: Dict[str, int] = {item["section_id"]: 0 for item in MOCK_DATA}


class EnrollIn(BaseModel):
    department: str
    course_code: str
    section_code: str


def _require_session(cookie: Optional[str]) -> str:
    if not cookie:
        raise HTTPException(status_code=401, detail="missing session cookie")
    return cookie


def _find(department: str, course_code: str, section_code: Optional[str] = None) -> List[Dict[str, Any]]:
    return [
        item
        for item in MOCK_DATA
        if item["department"] == department.upper()
        and item["course_code"] == course_code.upper()
        and (section_code is None or item["section_code"] == section_code.upper())
    ]


def _seats(item: Dict[str, Any]) -> int:
    return _OPEN[item["section_id"]]


@app.post("/session/refresh")
async def refresh_session(request: Request) -> Dict[str, str]:
    _require_session(request.headers.get("cookie"))
    return {"token": f"session={uuid.uuid4().hex}"}


@app.get("/terms/{term}/courses/{department}/{course_code}/sections")
async def list_sections(term: str, department: str, course_code: str, request: Request) -> List[Dict[str, Any]]:
    _require_session(request.headers.get("cookie"))
    data = _find(department, course_code)
    if not data:
        raise HTTPException(status_code=404, detail=f"No mock data for {department} {course_code}")

    result = []
    for item in data:
        count = _REQUESTS[item["section_id"]]
        _REQUESTS[item["section_id"]] = count + 1
        available = (count // 2) % 2
        _OPEN[item["section_id"]] = available
        total = item["total_seats"]
        result.append(
            {
                "section_id": item["section_id"],
                "section_code": item["section_code"],
                "available_seats": available,
                "total_seats": total,
                "enrolled": total - available,
                "waitlist": 0 if available else 3,
                "term": term,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
    return result


@app.post("/terms/{term}/enroll")
async def enroll(term: str, body: EnrollIn, request: Request):
    _require_session(request.headers.get("cookie"))
    matches = _find(body.department, body.course_code, body.section_code)
    if not matches:
        raise HTTPException(status_code=404, detail="section not found")
    item = matches[0]
    if _seats(item) <= 0:
        return _rejected("full", f"{body.department} {body.course_code} {body.section_code} is full")
    _OPEN[item["section_id"]] = 0
    return {"enrolled": True, "section_id": item["section_id"], "term": term}


def _rejected(reason: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=409, content={"reason": reason, "detail": detail})


def run(host: str = "127.0.0.1", port: int = 8000) -> None:
    uvicorn.run(app, host=host, port=port)
