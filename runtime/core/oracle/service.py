"""Oracle events: announcement, write-once attestation and trigger fan-out.

An event's outcome space is either a list of outcomes (enum event, one nonce)
or a digit count (unsigned base-10 numeric event, one nonce per digit).

Attesting an event is the signal that releases every job linked to it. Linked
jobs are handed to the trigger handler one by one, in link-creation order.
Events that never attest are not an error: their jobs simply keep waiting.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
from typing import Any, Callable, Sequence

from config.settings import OracleIdentity
from errors import AlreadyAttested, InvalidOutcome, UnknownEvent
from models import OracleEventRecord
from protocol.interfaces import AnnouncementSigner, ProtocolAdapter
from storage.interfaces import JobStore, OracleStore
from utils import Clock, utcnow
from validation.schema_validator import SchemaValidator

logger = logging.getLogger("oracle")

TriggerHandler = Callable[[str], Any]
OutcomeSpace = Sequence[str] | int


def _new_nonce() -> str:
    return secrets.token_hex(32)


def _descriptor(outcomes: tuple[str, ...] | None, nb_digits: int | None) -> dict[str, Any]:
    if outcomes is not None:
        return {"type": "enum", "outcomes": list(outcomes)}
    return {"type": "digit_decomposition", "base": 10, "is_signed": False, "nb_digits": nb_digits}


class OracleService:
    def __init__(
        self,
        *,
        store: OracleStore,
        jobs: JobStore,
        identity: OracleIdentity,
        validator: SchemaValidator,
        adapter: ProtocolAdapter | None = None,
        signer: AnnouncementSigner | None = None,
        clock: Clock = utcnow,
        nonce_factory: Callable[[], str] = _new_nonce,
    ):
        self._store = store
        self._jobs = jobs
        self._identity = identity
        self._validator = validator
        self._adapter = adapter
        self._signer = signer
        self._clock = clock
        self._nonce_factory = nonce_factory
        self._trigger_handler: TriggerHandler | None = None

    def set_trigger_handler(self, handler: TriggerHandler) -> None:
        self._trigger_handler = handler

    def get_event(self, name: str) -> OracleEventRecord:
        event = self._store.get_event(name)
        if event is None:
            raise UnknownEvent(f"Unknown oracle event: {name}")
        return event

    def find_event(self, name: str, *, conn: sqlite3.Connection | None = None) -> OracleEventRecord | None:
        return self._store.get_event(name, conn=conn)

    def register_from_document(self, document: Any) -> OracleEventRecord:
        """Register an event from an API document (validated against its schema)."""
        self._validator.validate("OracleEventRegistration", document)
        space: OutcomeSpace = document["outcomes"] if "outcomes" in document else int(document["nb_digits"])
        return self.register_event(document["name"], space, maturity=document.get("maturity"))

    def register_event(self, name: str, outcome_space: OutcomeSpace, *, maturity: int | None = None) -> OracleEventRecord:
        event = self.create_event(name, outcome_space, maturity=maturity)
        return self.publish_announcement(event)

    def create_event(
        self,
        name: str,
        outcome_space: OutcomeSpace,
        *,
        maturity: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> OracleEventRecord:
        """Create the event without publishing it. Callers holding a transaction
        publish with `publish_announcement` once it commits."""
        if isinstance(outcome_space, bool):
            raise InvalidOutcome("outcome space must be a list of outcomes or a digit count")
        if isinstance(outcome_space, int):
            if outcome_space < 1:
                raise InvalidOutcome("nb_digits must be positive")
            outcomes, nb_digits = None, outcome_space
            nonce_count = nb_digits
        else:
            outcomes = tuple(str(o) for o in outcome_space)
            if not outcomes or len(set(outcomes)) != len(outcomes):
                raise InvalidOutcome("enum outcomes must be non-empty and unique")
            nb_digits = None
            nonce_count = 1

        nonces = [self._nonce_factory() for _ in range(nonce_count)]
        announcement = {
            "oracle_public_key": self._identity.public_key,
            "oracle_name": self._identity.name,
            "event_name": name,
            "maturity": maturity,
            "descriptor": _descriptor(outcomes, nb_digits),
            "nonces": nonces,
        }
        signature = self._signer.sign(announcement) if self._signer is not None else None

        event = self._store.create_event(
            name=name,
            is_enum=outcomes is not None,
            outcomes=outcomes,
            nb_digits=nb_digits,
            maturity=maturity,
            announcement=announcement,
            announcement_signature=signature,
            nonces=nonces,
            conn=conn,
        )
        logger.info("oracle_event_created", extra={"event": "oracle_event_created", "event_name": name})
        return event

    def publish_announcement(self, event: OracleEventRecord) -> OracleEventRecord:
        if self._adapter is None or event.announcement_event_id is not None:
            return event
        try:
            announcement_id = self._adapter.publish_announcement(event)
        except Exception:
            logger.exception(
                "announcement_publish_failed", extra={"event": "announcement_publish_failed", "event_name": event.name}
            )
            return event
        self._store.set_announcement_event_id(event.event_id, announcement_id)
        return self._store.get_event_by_id(event.event_id) or event

    def attest_from_document(self, name: str, document: Any) -> OracleEventRecord:
        self._validator.validate("Attestation", document)
        return self.attest(name, document["outcome"], document["signature"])

    def attest(self, name: str, outcome: str | int, signature: str | Sequence[str]) -> OracleEventRecord:
        event = self.get_event(name)
        if event.is_attested:
            raise AlreadyAttested(f"Oracle event already attested: {name}")

        outcome_str = str(outcome)
        nonce_outcomes = self._nonce_outcomes(event, outcome_str)
        signatures = [signature] if isinstance(signature, str) else [str(s) for s in signature]
        if len(signatures) != len(event.nonces):
            raise InvalidOutcome(f"Expected {len(event.nonces)} signature(s) for {name}, got {len(signatures)}")

        saved = self._store.save_attestation(
            event.event_id,
            outcome=outcome_str,
            nonce_outcomes=nonce_outcomes,
            signatures=signatures,
            now=self._clock(),
        )
        if not saved:
            raise AlreadyAttested(f"Oracle event already attested: {name}")
        logger.info("oracle_event_attested", extra={"event": "oracle_event_attested", "event_name": name})

        attested = self._store.get_event_by_id(event.event_id) or event
        attested = self._publish_attestation(attested)
        self.fan_out(attested)
        return attested

    def fan_out(self, event: OracleEventRecord) -> list[str]:
        """Hand every job linked to an attested event to the trigger handler."""
        job_ids = self._jobs.linked_jobs(event.event_id)
        if self._trigger_handler is None:
            logger.warning("oracle_no_trigger_handler", extra={"event": "oracle_no_trigger_handler", "event_name": event.name})
            return job_ids
        for job_id in job_ids:
            try:
                self._trigger_handler(job_id)
            except Exception:
                # The job stays awaiting_trigger; restart recovery dispatches it again.
                logger.exception(
                    "oracle_trigger_failed",
                    extra={"event": "oracle_trigger_failed", "event_name": event.name, "job_id": job_id},
                )
        return job_ids

    def _publish_attestation(self, event: OracleEventRecord) -> OracleEventRecord:
        if self._adapter is None:
            return event
        try:
            attestation_id = self._adapter.publish_attestation(event)
        except Exception:
            logger.exception(
                "attestation_publish_failed", extra={"event": "attestation_publish_failed", "event_name": event.name}
            )
            return event
        self._store.set_attestation_event_id(event.event_id, attestation_id)
        return self._store.get_event_by_id(event.event_id) or event

    @staticmethod
    def _nonce_outcomes(event: OracleEventRecord, outcome: str) -> list[str]:
        if event.is_enum:
            if event.outcomes is None or outcome not in event.outcomes:
                raise InvalidOutcome(f"Outcome {outcome!r} is not one of the outcomes of {event.name}")
            return [outcome]

        nb_digits = int(event.nb_digits or 0)
        if not (outcome.isascii() and outcome.isdigit()):
            raise InvalidOutcome(f"Outcome {outcome!r} is not a non-negative integer")
        digits = str(int(outcome))
        if len(digits) > nb_digits:
            raise InvalidOutcome(f"Outcome {outcome} does not fit in {nb_digits} digit(s)")
        return list(digits.zfill(nb_digits))
