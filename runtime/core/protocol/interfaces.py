"""Collaborator interfaces consumed by the lifecycle engine.

The event-protocol transport, Lightning invoicing, payload encryption and the
oracle's signing internals live outside the core. The engine only depends on
these contracts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from models import Invoice, JobRecord, OracleEventRecord


class ProtocolAdapter(ABC):
    @abstractmethod
    def publish_result(self, job: JobRecord, content: str) -> str:
        """Publish a job's result payload; returns the published result identifier."""

    @abstractmethod
    def publish_payment_required(self, requester: str, job_id: str, invoice: Invoice) -> None:
        """Tell a requester which invoice funds their job."""

    @abstractmethod
    def publish_announcement(self, event: OracleEventRecord) -> str:
        """Publish an oracle announcement; returns its identifier."""

    @abstractmethod
    def publish_attestation(self, event: OracleEventRecord) -> str:
        """Publish an oracle attestation; returns its identifier."""


class PaymentGateway(ABC):
    @abstractmethod
    def issue_invoice(self, amount_msats: int, *, description: str, expiry_seconds: int) -> Invoice:
        """Create an invoice for `amount_msats`."""


class PayloadCipher(ABC):
    """Opaque transforms for requests flagged as encrypted."""

    @abstractmethod
    def decrypt(self, requester: str, payload: str) -> str: ...

    @abstractmethod
    def encrypt(self, requester: str, payload: str) -> str: ...


class AnnouncementSigner(ABC):
    @abstractmethod
    def sign(self, announcement: dict[str, Any]) -> str:
        """Signature over the canonical announcement payload."""
