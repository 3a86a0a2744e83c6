"""Domain records shared by the stores, the lifecycle engine and the API layer.

Records are immutable snapshots of rows. State changes go through the stores,
which return fresh records.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from utils import format_rfc3339

# Trigger classifications.
TRIGGER_IMMEDIATE = "immediate"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_ATTESTED = "attested"

# How a job was paid for.
FUNDING_PAY_PER_USE = "pay_per_use"
FUNDING_PREPAID = "prepaid"

# Settlement / invoice purposes.
PURPOSE_JOB = "job"
PURPOSE_DEPOSIT = "deposit"


@dataclass(frozen=True)
class ScheduleSpec:
    run_date: int
    name: str | None = None
    expected_outputs: tuple[str, ...] | None = None

    @property
    def is_attested(self) -> bool:
        return self.name is not None or self.expected_outputs is not None


@dataclass(frozen=True)
class JobRequest:
    """A validated admission request (the JSON payload carried on the event bus)."""

    url: str
    function: str
    input: str
    time_ms: int
    checksum: str
    schedule: ScheduleSpec | None = None
    encrypted: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "JobRequest":
        """Build from an already-validated request document."""
        schedule = None
        schedule_raw = doc.get("schedule")
        if schedule_raw is not None:
            outputs = schedule_raw.get("expected_outputs")
            schedule = ScheduleSpec(
                run_date=int(schedule_raw["run_date"]),
                name=schedule_raw.get("name"),
                expected_outputs=tuple(str(o) for o in outputs) if outputs is not None else None,
            )
        return cls(
            url=str(doc["url"]),
            function=str(doc["function"]),
            input=str(doc["input"]),
            time_ms=int(math.ceil(doc["time"])),
            checksum=str(doc["checksum"]).lower(),
            schedule=schedule,
            encrypted=bool(doc.get("encrypted", False)),
            raw=doc,
        )

    @property
    def trigger(self) -> str:
        if self.schedule is None:
            return TRIGGER_IMMEDIATE
        if self.schedule.is_attested:
            return TRIGGER_ATTESTED
        return TRIGGER_SCHEDULED


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    payment_hash: str
    requester: str
    state: str
    trigger: str
    funding: str
    amount_msats: int
    request: JobRequest
    created_at: datetime
    updated_at: datetime
    run_date: int | None = None
    started_at: datetime | None = None
    terminal_at: datetime | None = None
    output: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None
    result_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "payment_hash": self.payment_hash,
            "requester": self.requester,
            "state": self.state,
            "trigger": self.trigger,
            "funding": self.funding,
            "amount_msats": self.amount_msats,
            "request": self.request.raw,
            "run_date": self.run_date,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "terminal_at": _iso(self.terminal_at),
            "output": self.output,
            "failure_code": self.failure_code,
            "failure_reason": self.failure_reason,
            "result_id": self.result_id,
        }


@dataclass(frozen=True)
class AccountRecord:
    requester: str
    balance_msats: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"requester": self.requester, "balance_msats": self.balance_msats, "created_at": _iso(self.created_at)}


@dataclass(frozen=True)
class SettlementRecord:
    payment_hash: str
    requester: str
    amount_msats: int
    purpose: str
    request: dict[str, Any] | None
    job_id: str | None
    result_id: str | None
    created_at: datetime
    credited_at: datetime | None = None


@dataclass(frozen=True)
class Invoice:
    """An invoice issued by the payment collaborator."""

    payment_hash: str
    bolt11: str
    amount_msats: int


@dataclass(frozen=True)
class InvoiceRecord:
    invoice: Invoice
    requester: str
    purpose: str
    request: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class NonceRecord:
    index: int
    nonce: str
    outcome: str | None = None
    signature: str | None = None


@dataclass(frozen=True)
class OracleEventRecord:
    event_id: int
    name: str
    is_enum: bool
    outcomes: tuple[str, ...] | None
    nb_digits: int | None
    maturity: int | None
    announcement: dict[str, Any]
    announcement_signature: str | None
    nonces: tuple[NonceRecord, ...]
    created_at: datetime
    outcome: str | None = None
    attested_at: datetime | None = None
    announcement_event_id: str | None = None
    attestation_event_id: str | None = None

    @property
    def is_attested(self) -> bool:
        return self.outcome is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "name": self.name,
            "is_enum": self.is_enum,
            "outcomes": list(self.outcomes) if self.outcomes is not None else None,
            "nb_digits": self.nb_digits,
            "maturity": self.maturity,
            "announcement": self.announcement,
            "announcement_signature": self.announcement_signature,
            "announcement_event_id": self.announcement_event_id,
            "attestation_event_id": self.attestation_event_id,
            "outcome": self.outcome,
            "signatures": [n.signature for n in self.nonces] if self.is_attested else None,
            "attested_at": _iso(self.attested_at),
            "created_at": _iso(self.created_at),
        }


def _iso(dt: datetime | None) -> str | None:
    return format_rfc3339(dt) if dt is not None else None
