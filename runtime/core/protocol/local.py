"""In-process protocol adapter.

Keeps the most recent publications in memory and logs them. Used when the
service runs without a relay transport attached, and by tests.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any

from models import Invoice, JobRecord, OracleEventRecord
from protocol.interfaces import ProtocolAdapter
from utils import canonical_hash

logger = logging.getLogger("protocol")


@dataclass(frozen=True)
class Publication:
    kind: str
    identifier: str
    payload: dict[str, Any]


class LocalProtocolAdapter(ProtocolAdapter):
    def __init__(self, max_publications: int = 1000) -> None:
        self._lock = threading.Lock()
        self.publications: deque[Publication] = deque(maxlen=max_publications)

    def _publish(self, kind: str, payload: dict[str, Any]) -> str:
        identifier = canonical_hash({"kind": kind, "payload": payload})
        with self._lock:
            self.publications.append(Publication(kind=kind, identifier=identifier, payload=payload))
        logger.info("published_" + kind, extra={"event": "published_" + kind})
        return identifier

    def of_kind(self, kind: str) -> list[Publication]:
        with self._lock:
            return [p for p in self.publications if p.kind == kind]

    def publish_result(self, job: JobRecord, content: str) -> str:
        return self._publish(
            "result",
            {"job_id": job.job_id, "payment_hash": job.payment_hash, "requester": job.requester, "content": content},
        )

    def publish_payment_required(self, requester: str, job_id: str, invoice: Invoice) -> None:
        self._publish(
            "payment_required",
            {"requester": requester, "job_id": job_id, "bolt11": invoice.bolt11, "amount_msats": invoice.amount_msats},
        )

    def publish_announcement(self, event: OracleEventRecord) -> str:
        return self._publish(
            "announcement",
            {"name": event.name, "announcement": event.announcement, "signature": event.announcement_signature},
        )

    def publish_attestation(self, event: OracleEventRecord) -> str:
        return self._publish(
            "attestation",
            {
                "name": event.name,
                "outcome": event.outcome,
                "signatures": [n.signature for n in event.nonces],
            },
        )
