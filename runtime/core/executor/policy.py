"""Policy enforcement helpers for job admission.

This module enforces *static* boundaries on an admission request:
- The request schema (via SchemaValidator)
- Global hard limits (executor.max_time_ms)
- Schedule sanity (run_date strictly in the future)

It does not touch storage. It only proves whether a request may be admitted
and derives the values admission needs (request hash, price, event name).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from errors import InvalidSchedule, MalformedRequest
from models import JobRequest
from utils import canonical_hash, price_msats, unix_seconds
from validation.schema_validator import SchemaValidator


def _as_dict(v: Any) -> dict[str, Any]:
    if isinstance(v, dict):
        return v
    raise MalformedRequest("Expected a JSON object")


def parse_job_request(payload: Any, *, validator: SchemaValidator, max_time_ms: int) -> JobRequest:
    """Validate the admission payload and return a typed request."""
    validator.validate("JobRequest", payload)
    doc = _as_dict(payload)

    time_ms = doc["time"]
    if time_ms <= 0:
        raise MalformedRequest("time must be positive")
    if time_ms > max_time_ms:
        raise MalformedRequest(f"time must be at most {max_time_ms}ms")

    return JobRequest.from_document(doc)


def enforce_schedule(request: JobRequest, *, now: datetime) -> None:
    """Reject run dates at or before the current time."""
    if request.schedule is None:
        return
    if request.schedule.run_date <= unix_seconds(now):
        raise InvalidSchedule(f"run_date must be in the future (got {request.schedule.run_date})")


def request_hash(requester: str, payload: dict[str, Any]) -> str:
    """Content hash of the canonical request; the job's identity."""
    return canonical_hash({"requester": requester, "request": payload})


def job_price_msats(request: JobRequest, *, msats_per_ms: float) -> int:
    return price_msats(request.time_ms, msats_per_ms)


def attested_event_name(request: JobRequest, job_id: str) -> str:
    """Event name for an attested request; generated from the job id when the request names none."""
    if request.schedule is not None and request.schedule.name:
        return request.schedule.name
    return f"job-{job_id[:16]}"
