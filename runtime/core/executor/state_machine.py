"""Job lifecycle state machine.

Canonical lifecycle:
received -> admitted -> awaiting_trigger -> executing -> completed | failed
failed -> refunded (pre-paid jobs only)

Notes:
- `received` exists only in memory; the first persisted state is `admitted`.
- Leaving `awaiting_trigger` is the exactly-once point: stores apply it as a
  conditional update on the previous state, so concurrent triggers cannot both win.
- A job is immutable once a result identifier is attached.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from errors import InvalidTransition
from models import JobRecord

RECEIVED = "received"
ADMITTED = "admitted"
AWAITING_TRIGGER = "awaiting_trigger"
EXECUTING = "executing"
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"

# States in which a job has a final outcome to publish.
_OUTCOME_STATES = {COMPLETED, FAILED, REFUNDED}

# Allowed transitions excluding no-op transitions.
_ALLOWED: dict[str, set[str]] = {
    RECEIVED: {ADMITTED},
    ADMITTED: {AWAITING_TRIGGER},
    AWAITING_TRIGGER: {EXECUTING},
    EXECUTING: {COMPLETED, FAILED},
    FAILED: {REFUNDED},
    COMPLETED: set(),
    REFUNDED: set(),
}


@dataclass(frozen=True)
class TransitionRequest:
    new_state: str
    now: datetime
    output: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None


def has_outcome(state: str) -> bool:
    return state in _OUTCOME_STATES


def is_terminal(state: str) -> bool:
    return not _ALLOWED.get(state)


def apply_transition(job: JobRecord, req: TransitionRequest) -> JobRecord:
    """Return a new JobRecord moved to `req.new_state`."""
    current_state = job.state
    new_state = req.new_state

    if job.result_id is not None:
        raise InvalidTransition(f"Job {job.job_id} is immutable once a result is attached")

    allowed = _ALLOWED.get(current_state)
    if allowed is None or new_state not in allowed:
        raise InvalidTransition(f"Invalid job state transition: {current_state} -> {new_state}")

    changes: dict = {"state": new_state, "updated_at": req.now}

    if new_state == EXECUTING:
        changes["started_at"] = req.now

    if new_state == COMPLETED:
        if req.output is None:
            raise InvalidTransition("output is required for completed jobs")
        changes["output"] = req.output
        changes["terminal_at"] = req.now

    if new_state == FAILED:
        if not req.failure_code:
            raise InvalidTransition("failure_code is required for failed jobs")
        changes["failure_code"] = req.failure_code
        changes["failure_reason"] = req.failure_reason
        changes["terminal_at"] = req.now

    return replace(job, **changes)
