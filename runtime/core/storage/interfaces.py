"""DB-agnostic storage interfaces.

The runtime is stateless except for DB-backed state. These interfaces define
the persistence boundary for:
- Jobs, their lifecycle updates and the append-only audit log
- The balance ledger (accounts, settled payments, pending invoices)
- Oracle events, their nonces and write-once attestations

Every mutating method accepts an optional `conn`: when given, the write joins
the caller's open transaction, so writes across stores commit as one unit.
Concrete drivers live in `storage/` (SQLite default).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from models import (
    AccountRecord,
    InvoiceRecord,
    JobRecord,
    OracleEventRecord,
    SettlementRecord,
)


class JobStore(ABC):
    @abstractmethod
    def create(self, job: JobRecord, *, conn: Any = None) -> None:
        """Insert a new job. Must fail if the request hash or payment hash already exists."""

    @abstractmethod
    def get(self, job_id: str, *, conn: Any = None) -> JobRecord:
        """Fetch a job by id. Must raise if not found."""

    @abstractmethod
    def exists(self, job_id: str, *, conn: Any = None) -> bool:
        """Whether a job with this id or payment hash exists."""

    @abstractmethod
    def compare_and_set(self, job: JobRecord, *, expected_state: str, conn: Any = None) -> bool:
        """Persist `job` only if the stored state still equals `expected_state`."""

    @abstractmethod
    def reschedule(self, job_id: str, run_date: int, *, now: datetime, conn: Any = None) -> bool:
        """Move the run date of a job still awaiting its scheduled trigger."""

    @abstractmethod
    def attach_result(self, job_id: str, result_id: str, *, now: datetime, conn: Any = None) -> bool:
        """Attach the published result identifier. The job is immutable afterwards."""

    @abstractmethod
    def list_by_state(self, state: str, *, trigger: str | None = None) -> list[JobRecord]:
        """List jobs in a state, oldest first."""

    @abstractmethod
    def list_unpublished(self, states: tuple[str, ...]) -> list[JobRecord]:
        """List jobs in the given states that have no result identifier yet."""

    @abstractmethod
    def link_event(self, job_id: str, event_id: int, *, conn: Any = None) -> None:
        """Link a job to the oracle event gating it. One link per job."""

    @abstractmethod
    def linked_jobs(self, event_id: int, *, conn: Any = None) -> list[str]:
        """Job ids linked to an event, in link-creation order."""

    @abstractmethod
    def linked_event_id(self, job_id: str, *, conn: Any = None) -> int | None:
        """The event id a job is linked to, if any."""

    @abstractmethod
    def record_event(
        self, *, job_id: str, event_type: str, details: dict[str, Any] | None = None, conn: Any = None
    ) -> None:
        """Append an audit event for a job (append-only)."""

    @abstractmethod
    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        """Audit events for a job in insertion order."""


class Ledger(ABC):
    @abstractmethod
    def get_account(self, requester: str, *, conn: Any = None) -> AccountRecord | None:
        """Fetch an account, or None if the requester never held a balance."""

    @abstractmethod
    def balance(self, requester: str) -> int:
        """Current balance in msats (0 for unknown accounts)."""

    @abstractmethod
    def debit(self, requester: str, amount_msats: int, *, conn: Any = None) -> int:
        """Atomically decrement. Must raise InsufficientFunds instead of going negative."""

    @abstractmethod
    def credit(self, requester: str, amount_msats: int, *, conn: Any = None) -> int:
        """Atomically increment, creating the account if needed."""

    @abstractmethod
    def record_settlement(
        self,
        payment_hash: str,
        requester: str,
        amount_msats: int,
        *,
        purpose: str,
        request: dict[str, Any] | None = None,
        conn: Any = None,
    ) -> SettlementRecord:
        """Record a settled payment. Must raise DuplicatePayment if the hash exists."""

    @abstractmethod
    def record_deposit(self, payment_hash: str, requester: str, amount_msats: int) -> int:
        """Record a deposit settlement and credit the account in one unit."""

    @abstractmethod
    def get_settlement(self, payment_hash: str, *, conn: Any = None) -> SettlementRecord | None:
        """Fetch a settled payment by hash."""

    @abstractmethod
    def claim_settlement(
        self, payment_hash: str, *, requester: str, job_id: str, amount_msats: int, conn: Any = None
    ) -> SettlementRecord:
        """Bind a settled payment to the one job it funds. Only the payer may claim it."""

    @abstractmethod
    def credit_unclaimed_settlement(self, payment_hash: str, *, conn: Any = None) -> bool:
        """Move an unclaimed job payment to the payer's balance. False if it was already claimed or credited."""

    @abstractmethod
    def list_unclaimed_settlements(self) -> list[SettlementRecord]:
        """Job payments that fund no job and were not credited to a balance."""

    @abstractmethod
    def link_settlement_result(self, payment_hash: str, result_id: str, *, conn: Any = None) -> None:
        """Record the published result of the job a settlement funded."""

    @abstractmethod
    def save_invoice(self, invoice: InvoiceRecord, *, conn: Any = None) -> None:
        """Persist a pending invoice keyed by its payment hash."""

    @abstractmethod
    def get_invoice(self, payment_hash: str, *, conn: Any = None) -> InvoiceRecord | None:
        """Fetch a pending invoice."""


class OracleStore(ABC):
    @abstractmethod
    def pin_identity(self, public_key: str, name: str) -> None:
        """Bind the database to one oracle key. Must raise if bound to another."""

    @abstractmethod
    def create_event(
        self,
        *,
        name: str,
        is_enum: bool,
        outcomes: tuple[str, ...] | None,
        nb_digits: int | None,
        maturity: int | None,
        announcement: dict[str, Any],
        announcement_signature: str | None,
        nonces: list[str],
        conn: Any = None,
    ) -> OracleEventRecord:
        """Create an event and its nonces. Must raise DuplicateEventName if the name exists."""

    @abstractmethod
    def get_event(self, name: str, *, conn: Any = None) -> OracleEventRecord | None:
        """Fetch an event by name."""

    @abstractmethod
    def get_event_by_id(self, event_id: int, *, conn: Any = None) -> OracleEventRecord | None:
        """Fetch an event by id."""

    @abstractmethod
    def save_attestation(
        self,
        event_id: int,
        *,
        outcome: str,
        nonce_outcomes: list[str],
        signatures: list[str],
        now: datetime,
        conn: Any = None,
    ) -> bool:
        """Write the outcome once. Returns False if the event was already attested."""

    @abstractmethod
    def set_announcement_event_id(self, event_id: int, announcement_event_id: str) -> None:
        """Store the identifier of the published announcement."""

    @abstractmethod
    def set_attestation_event_id(self, event_id: int, attestation_event_id: str) -> None:
        """Store the identifier of the published attestation."""


class StoreSet(ABC):
    """The stores of one database, plus the transaction that spans them."""

    jobs: JobStore
    ledger: Ledger
    oracle: OracleStore

    @abstractmethod
    def transaction(self) -> AbstractContextManager[Any]:
        """Open a write transaction; yields the connection to pass as `conn`."""

    @abstractmethod
    def now(self) -> datetime:
        """The clock the database enforces temporal invariants against."""
