"""Job lifecycle engine.

This engine:
- Validates admission requests and enforces hard limits
- Ties admission to a settled payment or a balance debit, atomically
- Registers jobs with their trigger (worker pool, scheduler or oracle event)
- Runs triggered jobs in the sandbox exactly once
- Commits terminal outcomes, refunds failed pre-paid jobs and publishes results

It holds no state of its own. Every transition is a conditional update in one
store transaction together with its audit event, so a crash leaves either the
old state or the new one, never a half-written job.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from config.settings import ExecutorConfig, PricingConfig
from errors import (
    ConfigError,
    DuplicateEventName,
    DuplicateJob,
    DuplicatePayment,
    ExecutionError,
    ExecutionFault,
    InsufficientFunds,
    InvalidSchedule,
    InvalidTransition,
    MalformedRequest,
    NotFoundError,
    UnknownEvent,
)
from executor.dispatch import Dispatcher
from executor.policy import (
    attested_event_name,
    enforce_schedule,
    job_price_msats,
    parse_job_request,
    request_hash,
)
from executor.state_machine import (
    ADMITTED,
    AWAITING_TRIGGER,
    COMPLETED,
    EXECUTING,
    FAILED,
    RECEIVED,
    REFUNDED,
    TransitionRequest,
    apply_transition,
)
from models import (
    FUNDING_PAY_PER_USE,
    FUNDING_PREPAID,
    PURPOSE_DEPOSIT,
    PURPOSE_JOB,
    TRIGGER_ATTESTED,
    TRIGGER_IMMEDIATE,
    TRIGGER_SCHEDULED,
    AccountRecord,
    Invoice,
    InvoiceRecord,
    JobRecord,
    JobRequest,
    OracleEventRecord,
    SettlementRecord,
)
from oracle.service import OracleService
from protocol.interfaces import PayloadCipher, PaymentGateway, ProtocolAdapter
from sandbox.executor import SandboxedExecutor
from scheduler.runner import Scheduler
from storage.interfaces import StoreSet
from utils import unix_seconds
from validation.schema_validator import SchemaValidator

logger = logging.getLogger("engine")

INTERRUPTED_REASON = "execution interrupted"


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of an admission attempt.

    `job` is None when the request is waiting for an invoice to be paid.
    `execution` is set when the job was handed to the worker pool right away.
    """

    job: JobRecord | None
    execution: Future | None = None
    invoice: Invoice | None = None


class JobEngine:
    def __init__(
        self,
        *,
        stores: StoreSet,
        schema_validator: SchemaValidator,
        executor: SandboxedExecutor,
        dispatcher: Dispatcher,
        scheduler: Scheduler,
        oracle: OracleService,
        limits: ExecutorConfig,
        pricing: PricingConfig,
        adapter: ProtocolAdapter | None = None,
        gateway: PaymentGateway | None = None,
        cipher: PayloadCipher | None = None,
    ):
        self._stores = stores
        self._jobs = stores.jobs
        self._ledger = stores.ledger
        self._schemas = schema_validator
        self._executor = executor
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._oracle = oracle
        self._limits = limits
        self._pricing = pricing
        self._adapter = adapter
        self._gateway = gateway
        self._cipher = cipher

        scheduler.set_trigger_handler(self._on_schedule_due)
        oracle.set_trigger_handler(self.on_trigger_ready)

    # Admission

    def submit(self, requester: str, payload: Any, *, payment_hash: str | None = None) -> SubmitResult:
        """Admit a request funded by `payment_hash` (pay-per-use) or the requester's balance."""
        now = self._stores.now()
        request = parse_job_request(payload, validator=self._schemas, max_time_ms=self._limits.max_time_ms)
        if request.encrypted and self._cipher is None:
            raise MalformedRequest("encrypted requests are not supported by this service")
        enforce_schedule(request, now=now)

        job_id = request_hash(requester, request.raw)
        price = job_price_msats(request, msats_per_ms=self._pricing.msats_per_ms)
        funding = FUNDING_PAY_PER_USE if payment_hash is not None else FUNDING_PREPAID

        received = JobRecord(
            job_id=job_id,
            payment_hash=payment_hash if payment_hash is not None else job_id,
            requester=requester,
            state=RECEIVED,
            trigger=request.trigger,
            funding=funding,
            amount_msats=price,
            request=request,
            created_at=now,
            updated_at=now,
            run_date=request.schedule.run_date if request.schedule is not None else None,
        )
        admitted = apply_transition(received, TransitionRequest(new_state=ADMITTED, now=now))
        waiting = apply_transition(admitted, TransitionRequest(new_state=AWAITING_TRIGGER, now=now))

        event: OracleEventRecord | None = None
        event_created = False
        with self._stores.transaction() as conn:
            if self._jobs.exists(job_id, conn=conn):
                raise DuplicateJob(f"Job already exists: {job_id}")

            if payment_hash is not None:
                self._ledger.claim_settlement(
                    payment_hash, requester=requester, job_id=job_id, amount_msats=price, conn=conn
                )
            else:
                self._ledger.debit(requester, price, conn=conn)

            self._jobs.create(admitted, conn=conn)
            self._jobs.record_event(
                job_id=job_id,
                event_type="job_admitted",
                details={"funding": funding, "amount_msats": price, "trigger": request.trigger},
                conn=conn,
            )

            if request.trigger == TRIGGER_ATTESTED:
                event, event_created = self._resolve_event(request, job_id, conn=conn)
                self._jobs.link_event(job_id, event.event_id, conn=conn)

            if not self._jobs.compare_and_set(waiting, expected_state=ADMITTED, conn=conn):
                raise InvalidTransition(f"Job {job_id} changed during admission")
            self._jobs.record_event(job_id=job_id, event_type="job_awaiting_trigger", details={}, conn=conn)

        logger.info(
            "job_admitted",
            extra={
                "event": "job_admitted",
                "job_id": job_id,
                "requester": requester,
                "payment_hash": waiting.payment_hash,
                "state": AWAITING_TRIGGER,
            },
        )

        execution = self._register_trigger(waiting, event)
        if event is not None and event_created:
            self._oracle.publish_announcement(event)
        return SubmitResult(job=self._jobs.get(job_id), execution=execution)

    def _resolve_event(self, request: JobRequest, job_id: str, *, conn: Any) -> tuple[OracleEventRecord, bool]:
        """Find or create the oracle event gating an attested request."""
        schedule = request.schedule
        name = attested_event_name(request, job_id)
        existing = self._oracle.find_event(name, conn=conn)
        if existing is not None:
            if schedule.expected_outputs is not None and existing.outcomes != schedule.expected_outputs:
                raise DuplicateEventName(f"Oracle event {name} exists with different outcomes")
            return existing, False
        if schedule.expected_outputs is None:
            raise UnknownEvent(f"Unknown oracle event: {name}")
        created = self._oracle.create_event(name, list(schedule.expected_outputs), maturity=schedule.run_date, conn=conn)
        return created, True

    def _register_trigger(self, job: JobRecord, event: OracleEventRecord | None) -> Future | None:
        if job.trigger == TRIGGER_IMMEDIATE:
            return self.on_trigger_ready(job.job_id)
        if job.trigger == TRIGGER_SCHEDULED:
            self._scheduler.schedule(job.job_id, int(job.run_date))
            return None
        if event is not None and event.is_attested:
            return self.on_trigger_ready(job.job_id)
        return None

    def handle_request(self, requester: str, payload: Any) -> SubmitResult:
        """Inbound protocol path: pre-paid admission, else an invoice for the job."""
        try:
            return self.submit(requester, payload)
        except InsufficientFunds as e:
            if self._gateway is None:
                raise
            job_id = request_hash(requester, payload)
            invoice = self._issue_invoice(
                requester,
                purpose=PURPOSE_JOB,
                amount_msats=int(e.required_msats or 0),
                request=payload,
                description=f"DVM job {job_id[:16]}",
            )
            if self._adapter is not None:
                self._adapter.publish_payment_required(requester, job_id, invoice)
            logger.info(
                "job_payment_required",
                extra={"event": "job_payment_required", "job_id": job_id, "payment_hash": invoice.payment_hash},
            )
            return SubmitResult(job=None, invoice=invoice)

    def request_deposit(self, requester: str, amount_msats: int) -> Invoice:
        """Issue an invoice whose settlement credits the requester's balance."""
        if amount_msats <= 0:
            raise MalformedRequest("deposit amount must be positive")
        return self._issue_invoice(
            requester,
            purpose=PURPOSE_DEPOSIT,
            amount_msats=amount_msats,
            request=None,
            description="DVM balance deposit",
        )

    def _issue_invoice(
        self, requester: str, *, purpose: str, amount_msats: int, request: Any, description: str
    ) -> Invoice:
        if self._gateway is None:
            raise ConfigError("No payment gateway configured")
        invoice = self._gateway.issue_invoice(
            amount_msats, description=description, expiry_seconds=self._pricing.invoice_expiry_seconds
        )
        self._ledger.save_invoice(
            InvoiceRecord(
                invoice=invoice,
                requester=requester,
                purpose=purpose,
                request=request,
                created_at=self._stores.now(),
            )
        )
        logger.info(
            "invoice_issued",
            extra={"event": "invoice_issued", "requester": requester, "payment_hash": invoice.payment_hash},
        )
        return invoice

    def on_payment_settled(self, payment_hash: str, amount_msats: int | None = None) -> SubmitResult | None:
        """Settlement notification. Job invoices admit their request; deposits credit the balance.

        Redelivery of a job payment that never got its job admitted retries the
        admission. A request that can no longer be admitted is credited to the
        payer's balance.
        """
        pending = self._ledger.get_invoice(payment_hash)
        if pending is None:
            logger.warning("payment_unknown", extra={"event": "payment_unknown", "payment_hash": payment_hash})
            return None

        amount = int(amount_msats) if amount_msats is not None else pending.invoice.amount_msats
        if pending.purpose == PURPOSE_DEPOSIT:
            balance = self._ledger.record_deposit(payment_hash, pending.requester, amount)
            logger.info(
                "deposit_settled",
                extra={"event": "deposit_settled", "requester": pending.requester, "payment_hash": payment_hash},
            )
            logger.debug("balance after deposit: %s msats", balance)
            return None

        existing = self._ledger.get_settlement(payment_hash)
        if existing is None:
            settlement = self._ledger.record_settlement(
                payment_hash, pending.requester, amount, purpose=PURPOSE_JOB, request=pending.request
            )
        elif existing.job_id is not None or existing.credited_at is not None:
            raise DuplicatePayment(f"Payment already settled: {payment_hash}")
        else:
            # Recorded by an earlier delivery that never got the job admitted.
            settlement = existing
        return self._admit_settled(settlement)

    def _admit_settled(self, settlement: SettlementRecord) -> SubmitResult:
        """Admit the job a settled payment funds, or credit the payment to the balance."""
        try:
            return self.submit(settlement.requester, settlement.request, payment_hash=settlement.payment_hash)
        except (MalformedRequest, InvalidSchedule, DuplicateJob, InsufficientFunds, UnknownEvent, DuplicateEventName) as e:
            logger.warning(
                "settled_payment_unadmitted",
                extra={"event": "settled_payment_unadmitted", "payment_hash": settlement.payment_hash, "code": e.code},
            )
        if self._ledger.credit_unclaimed_settlement(settlement.payment_hash):
            logger.info(
                "settled_payment_credited",
                extra={
                    "event": "settled_payment_credited",
                    "requester": settlement.requester,
                    "payment_hash": settlement.payment_hash,
                },
            )
            return SubmitResult(job=None)
        # A concurrent delivery got there first.
        current = self._ledger.get_settlement(settlement.payment_hash)
        if current is not None and current.job_id is not None:
            return SubmitResult(job=self._jobs.get(current.job_id))
        return SubmitResult(job=None)

    # Triggering

    def on_trigger_ready(self, job_id: str) -> Future:
        """The job's trigger condition holds: hand it to the worker pool."""
        logger.info("job_trigger_ready", extra={"event": "job_trigger_ready", "job_id": job_id})
        return self._dispatcher.submit(self.run_job, job_id)

    def _on_schedule_due(self, job_id: str) -> Future | None:
        job = self._jobs.get(job_id)
        if job.state != AWAITING_TRIGGER:
            return None
        # A rescheduled job leaves its old heap entry behind.
        if job.run_date is not None and job.run_date > unix_seconds(self._stores.now()):
            return None
        return self.on_trigger_ready(job_id)

    def trigger(self, job_id: str) -> Future:
        """Operator re-trigger. Races safely with the scheduler and the oracle."""
        job = self._jobs.get(job_id)
        if job.state != AWAITING_TRIGGER:
            raise InvalidTransition(f"Job {job_id} is not awaiting a trigger (state={job.state})")
        return self.on_trigger_ready(job_id)

    def reschedule(self, job_id: str, run_date: int) -> JobRecord:
        job = self._jobs.get(job_id)
        if job.trigger != TRIGGER_SCHEDULED or job.state != AWAITING_TRIGGER:
            raise InvalidTransition(f"Only scheduled jobs awaiting their trigger can be rescheduled (job {job_id})")
        now = self._stores.now()
        if run_date <= unix_seconds(now):
            raise InvalidSchedule(f"run_date must be in the future (got {run_date})")

        with self._stores.transaction() as conn:
            if not self._jobs.reschedule(job_id, run_date, now=now, conn=conn):
                raise InvalidTransition(f"Job {job_id} is no longer awaiting its trigger")
            self._jobs.record_event(
                job_id=job_id,
                event_type="job_rescheduled",
                details={"from": job.run_date, "to": run_date},
                conn=conn,
            )
        self._scheduler.schedule(job_id, run_date)
        logger.info("job_rescheduled", extra={"event": "job_rescheduled", "job_id": job_id})
        return self._jobs.get(job_id)

    # Execution

    def run_job(self, job_id: str) -> JobRecord | None:
        """Execute a triggered job. Returns None when another trigger already won."""
        job = self._jobs.get(job_id)
        if job.state != AWAITING_TRIGGER:
            logger.info("job_trigger_ignored", extra={"event": "job_trigger_ignored", "job_id": job_id, "state": job.state})
            return None

        executing = apply_transition(job, TransitionRequest(new_state=EXECUTING, now=self._stores.now()))
        with self._stores.transaction() as conn:
            won = self._jobs.compare_and_set(executing, expected_state=AWAITING_TRIGGER, conn=conn)
            if won:
                self._jobs.record_event(job_id=job_id, event_type="job_executing", details={}, conn=conn)
        if not won:
            logger.info("job_trigger_ignored", extra={"event": "job_trigger_ignored", "job_id": job_id})
            return None
        logger.info("job_executing", extra={"event": "job_executing", "job_id": job_id, "state": EXECUTING})

        try:
            output = self._execute(executing)
        except ExecutionError as e:
            return self._finish_failed(executing, e.code, str(e))
        except Exception as e:
            logger.exception("job_execution_crashed", extra={"event": "job_execution_crashed", "job_id": job_id})
            return self._finish_failed(executing, ExecutionFault.code, f"{type(e).__name__}: {e}")
        return self._finish_completed(executing, output)

    def _execute(self, job: JobRecord) -> str:
        request = job.request
        input_payload = request.input
        if request.encrypted:
            input_payload = self._cipher.decrypt(job.requester, input_payload)
        return self._executor.execute(request.url, request.checksum, request.function, input_payload, request.time_ms)

    def _finish_completed(self, job: JobRecord, output: str) -> JobRecord:
        completed = apply_transition(job, TransitionRequest(new_state=COMPLETED, now=self._stores.now(), output=output))
        with self._stores.transaction() as conn:
            if not self._jobs.compare_and_set(completed, expected_state=EXECUTING, conn=conn):
                raise InvalidTransition(f"Job {job.job_id} left executing unexpectedly")
            self._jobs.record_event(job_id=job.job_id, event_type="job_completed", details={}, conn=conn)
        logger.info("job_completed", extra={"event": "job_completed", "job_id": job.job_id, "state": COMPLETED})
        return self.publish(completed)

    def _finish_failed(self, job: JobRecord, code: str, reason: str) -> JobRecord:
        now = self._stores.now()
        failed = apply_transition(
            job, TransitionRequest(new_state=FAILED, now=now, failure_code=code, failure_reason=reason)
        )
        final = failed
        with self._stores.transaction() as conn:
            if not self._jobs.compare_and_set(failed, expected_state=EXECUTING, conn=conn):
                raise InvalidTransition(f"Job {job.job_id} left executing unexpectedly")
            self._jobs.record_event(
                job_id=job.job_id, event_type="job_failed", details={"code": code, "reason": reason}, conn=conn
            )
            # Pay-per-use jobs paid for the attempt; only balance debits are returned.
            if job.funding == FUNDING_PREPAID:
                final = apply_transition(failed, TransitionRequest(new_state=REFUNDED, now=now))
                self._jobs.compare_and_set(final, expected_state=FAILED, conn=conn)
                self._ledger.credit(job.requester, job.amount_msats, conn=conn)
                self._jobs.record_event(
                    job_id=job.job_id, event_type="job_refunded", details={"amount_msats": job.amount_msats}, conn=conn
                )
        logger.info(
            "job_failed",
            extra={"event": "job_failed", "job_id": job.job_id, "code": code, "state": final.state},
        )
        return self.publish(final)

    # Publication

    def publish(self, job: JobRecord) -> JobRecord:
        """Publish a terminal job's result and attach the result identifier."""
        if self._adapter is None or job.result_id is not None:
            return job
        if job.state == COMPLETED:
            content = job.output or ""
        else:
            content = f"{job.failure_code}: {job.failure_reason}"
        try:
            if job.request.encrypted:
                content = self._cipher.encrypt(job.requester, content)
            result_id = self._adapter.publish_result(job, content)
        except Exception:
            # Left without a result id; recovery publishes it again.
            logger.exception("result_publish_failed", extra={"event": "result_publish_failed", "job_id": job.job_id})
            return job

        with self._stores.transaction() as conn:
            if self._jobs.attach_result(job.job_id, result_id, now=self._stores.now(), conn=conn):
                if job.funding == FUNDING_PAY_PER_USE:
                    self._ledger.link_settlement_result(job.payment_hash, result_id, conn=conn)
                self._jobs.record_event(
                    job_id=job.job_id, event_type="job_published", details={"result_id": result_id}, conn=conn
                )
        logger.info("job_published", extra={"event": "job_published", "job_id": job.job_id})
        return self._jobs.get(job.job_id)

    # Queries

    def get_job(self, job_id: str) -> JobRecord:
        return self._jobs.get(job_id)

    def get_account(self, requester: str) -> AccountRecord:
        account = self._ledger.get_account(requester)
        if account is None:
            raise NotFoundError("Account", requester)
        return account

    # Lifecycle

    def recover(self) -> dict[str, int]:
        """Bring persisted jobs back under management after a restart."""
        counts = {"interrupted": 0, "dispatched": 0, "scheduled": 0, "readmitted": 0, "republished": 0}

        for job in self._jobs.list_by_state(EXECUTING):
            self._finish_failed(job, ExecutionFault.code, INTERRUPTED_REASON)
            counts["interrupted"] += 1

        for job in self._jobs.list_by_state(AWAITING_TRIGGER):
            if job.trigger == TRIGGER_IMMEDIATE:
                self.on_trigger_ready(job.job_id)
                counts["dispatched"] += 1
            elif job.trigger == TRIGGER_SCHEDULED:
                self._scheduler.schedule(job.job_id, int(job.run_date))
                counts["scheduled"] += 1
            else:
                event_id = self._jobs.linked_event_id(job.job_id)
                event = self._stores.oracle.get_event_by_id(event_id) if event_id is not None else None
                if event is not None and event.is_attested:
                    self.on_trigger_ready(job.job_id)
                    counts["dispatched"] += 1

        for settlement in self._ledger.list_unclaimed_settlements():
            if self._admit_settled(settlement).job is not None:
                counts["readmitted"] += 1

        if self._adapter is not None:
            for job in self._jobs.list_unpublished((COMPLETED, FAILED, REFUNDED)):
                if self.publish(job).result_id is not None:
                    counts["republished"] += 1

        logger.info("engine_recovered", extra={"event": "engine_recovered"})
        logger.debug("recovery counts: %s", counts)
        return counts

    def close(self) -> None:
        self._scheduler.stop()
        self._dispatcher.shutdown(wait=True)
