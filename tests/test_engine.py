"""End-to-end lifecycle tests for JobEngine against real SQLite stores."""

import threading

import pytest

from conftest import JOB_PRICE, FakeExecutor, FakeGateway, HoldingDispatcher, request_payload
from errors import (
    ConfigError,
    DuplicateEventName,
    DuplicateJob,
    DuplicatePayment,
    ExecutionFault,
    ExecutionTimeout,
    InsufficientFunds,
    IntegrityMismatch,
    InvalidSchedule,
    InvalidTransition,
    MalformedRequest,
    NotFoundError,
    StorageFault,
    UnknownEvent,
)
from executor.engine import INTERRUPTED_REASON
from executor.policy import request_hash
from executor.state_machine import AWAITING_TRIGGER, COMPLETED, EXECUTING, FAILED, REFUNDED, TransitionRequest, apply_transition
from models import FUNDING_PAY_PER_USE, FUNDING_PREPAID, PURPOSE_JOB, TRIGGER_ATTESTED, TRIGGER_SCHEDULED
from protocol.interfaces import PayloadCipher
from protocol.local import LocalProtocolAdapter


def fund(harness, requester="alice", amount=JOB_PRICE):
    harness.stores.ledger.credit(requester, amount)


def event_types(harness, job_id):
    return [e["event_type"] for e in harness.stores.jobs.list_events(job_id)]


class ReversingCipher(PayloadCipher):
    def decrypt(self, requester, payload):
        return payload[::-1]

    def encrypt(self, requester, payload):
        return "enc:" + payload[::-1]


class FlakyAdapter(LocalProtocolAdapter):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def publish_result(self, job, content):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("relay unreachable")
        return super().publish_result(job, content)


class TestImmediateJobs:
    def test_prepaid_job_completes(self, harness):
        fund(harness)
        result = harness.engine.submit("alice", request_payload())

        job = result.execution.result()
        assert job.state == COMPLETED
        assert job.output == "42"
        assert job.funding == FUNDING_PREPAID
        assert job.result_id == harness.adapter.of_kind("result")[0].identifier
        assert harness.adapter.of_kind("result")[0].payload["content"] == "42"
        assert harness.stores.ledger.balance("alice") == 0
        assert event_types(harness, job.job_id) == [
            "job_admitted",
            "job_awaiting_trigger",
            "job_executing",
            "job_completed",
            "job_published",
        ]

    def test_executor_receives_request(self, harness):
        fund(harness, amount=2 * JOB_PRICE)
        harness.engine.submit("alice", request_payload(time=1500.2))
        url, checksum, function, input, budget = harness.executor.calls[0]
        assert (function, input, budget) == ("run", '{"a": 1, "b": 2}', 1501)
        assert url == request_payload()["url"]

    def test_job_id_is_request_hash(self, harness):
        fund(harness)
        payload = request_payload()
        job = harness.engine.submit("alice", payload).job
        assert job.job_id == request_hash("alice", payload)

    def test_integrity_mismatch_fails_and_refunds(self, make_harness):
        harness = make_harness(executor=FakeExecutor(error=IntegrityMismatch("a" * 64, "b" * 64)))
        fund(harness)
        job = harness.engine.submit("alice", request_payload()).execution.result()

        assert job.state == REFUNDED
        assert job.failure_code == "IntegrityMismatch"
        assert harness.stores.ledger.balance("alice") == JOB_PRICE
        assert harness.adapter.of_kind("result")[0].payload["content"].startswith("IntegrityMismatch: ")
        assert "job_refunded" in event_types(harness, job.job_id)

    def test_timeout_fails(self, make_harness):
        harness = make_harness(executor=FakeExecutor(error=ExecutionTimeout(1000)))
        fund(harness)
        job = harness.engine.submit("alice", request_payload()).execution.result()
        assert job.failure_code == "ExecutionTimeout"
        assert job.failure_reason == "execution exceeded time budget of 1000ms"

    def test_unexpected_executor_error_is_a_fault(self, make_harness):
        harness = make_harness(executor=FakeExecutor(error=RuntimeError("segfault-ish")))
        fund(harness)
        job = harness.engine.submit("alice", request_payload()).execution.result()
        assert job.state == REFUNDED
        assert job.failure_code == "ExecutionFault"
        assert "segfault-ish" in job.failure_reason


class TestAdmission:
    def test_insufficient_funds_leaves_nothing(self, harness):
        fund(harness, amount=JOB_PRICE - 1)
        with pytest.raises(InsufficientFunds) as exc:
            harness.engine.submit("alice", request_payload())
        assert exc.value.required_msats == JOB_PRICE
        assert harness.stores.ledger.balance("alice") == JOB_PRICE - 1
        assert not harness.stores.jobs.exists(request_hash("alice", request_payload()))

    def test_duplicate_request(self, harness):
        fund(harness, amount=2 * JOB_PRICE)
        harness.engine.submit("alice", request_payload())
        with pytest.raises(DuplicateJob):
            harness.engine.submit("alice", request_payload())
        assert harness.stores.ledger.balance("alice") == JOB_PRICE

    def test_same_request_from_other_requester_is_distinct(self, harness):
        fund(harness, "alice")
        fund(harness, "bob")
        a = harness.engine.submit("alice", request_payload()).job
        b = harness.engine.submit("bob", request_payload()).job
        assert a.job_id != b.job_id

    def test_concurrent_duplicates_admit_once(self, make_harness):
        harness = make_harness(dispatcher=HoldingDispatcher())
        fund(harness, amount=10 * JOB_PRICE)
        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        lock = threading.Lock()

        def submit():
            barrier.wait()
            try:
                harness.engine.submit("alice", request_payload())
                outcome = "admitted"
            except DuplicateJob:
                outcome = "duplicate"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["admitted"] + ["duplicate"] * 7
        assert harness.stores.ledger.balance("alice") == 9 * JOB_PRICE

    def test_over_time_limit(self, harness):
        fund(harness)
        with pytest.raises(MalformedRequest):
            harness.engine.submit("alice", request_payload(time=600_001))

    def test_encrypted_without_cipher(self, harness):
        fund(harness)
        with pytest.raises(MalformedRequest, match="encrypted"):
            harness.engine.submit("alice", request_payload(encrypted=True))
        assert harness.stores.ledger.balance("alice") == JOB_PRICE

    def test_past_run_date(self, harness, clock):
        fund(harness)
        with pytest.raises(InvalidSchedule):
            harness.engine.submit("alice", request_payload(schedule={"run_date": clock.unix()}))
        assert harness.stores.ledger.balance("alice") == JOB_PRICE


class TestScheduledJobs:
    def test_fires_once_when_due(self, harness, clock):
        fund(harness)
        run_date = clock.unix() + 10
        job = harness.engine.submit("alice", request_payload(schedule={"run_date": run_date})).job
        assert job.state == AWAITING_TRIGGER
        assert job.trigger == TRIGGER_SCHEDULED
        assert job.run_date == run_date

        clock.advance(9)
        assert harness.scheduler.tick() == []
        assert harness.engine.get_job(job.job_id).state == AWAITING_TRIGGER

        clock.advance(1)
        assert harness.scheduler.tick() == [job.job_id]
        assert harness.engine.get_job(job.job_id).state == COMPLETED
        assert len(harness.executor.calls) == 1

        harness.scheduler.schedule(job.job_id, run_date)
        harness.scheduler.tick()
        assert len(harness.executor.calls) == 1

    def test_reschedule(self, harness, clock):
        fund(harness)
        job = harness.engine.submit("alice", request_payload(schedule={"run_date": clock.unix() + 10})).job
        moved = harness.engine.reschedule(job.job_id, clock.unix() + 100)
        assert moved.run_date == clock.unix() + 100
        assert "job_rescheduled" in event_types(harness, job.job_id)

        clock.advance(10)
        harness.scheduler.tick()
        assert harness.engine.get_job(job.job_id).state == AWAITING_TRIGGER

        clock.advance(90)
        harness.scheduler.tick()
        assert harness.engine.get_job(job.job_id).state == COMPLETED

    def test_reschedule_into_past(self, harness, clock):
        fund(harness)
        job = harness.engine.submit("alice", request_payload(schedule={"run_date": clock.unix() + 10})).job
        with pytest.raises(InvalidSchedule):
            harness.engine.reschedule(job.job_id, clock.unix())

    def test_reschedule_immediate_job(self, make_harness, clock):
        harness = make_harness(dispatcher=HoldingDispatcher())
        fund(harness)
        job = harness.engine.submit("alice", request_payload()).job
        with pytest.raises(InvalidTransition):
            harness.engine.reschedule(job.job_id, clock.unix() + 10)

    def test_operator_trigger_runs_early(self, harness, clock):
        fund(harness)
        job = harness.engine.submit("alice", request_payload(schedule={"run_date": clock.unix() + 10})).job
        assert harness.engine.trigger(job.job_id).result().state == COMPLETED

        clock.advance(10)
        harness.scheduler.tick()
        assert len(harness.executor.calls) == 1
        with pytest.raises(InvalidTransition):
            harness.engine.trigger(job.job_id)


class TestAttestedJobs:
    def attested(self, clock, **schedule):
        return {"run_date": clock.unix() + 60, **schedule}

    def test_two_jobs_fire_on_attestation(self, harness, clock):
        fund(harness, amount=2 * JOB_PRICE)
        first = harness.engine.submit(
            "alice",
            request_payload(input="1", schedule=self.attested(clock, name="X", expected_outputs=["yes", "no"])),
        ).job
        second = harness.engine.submit("alice", request_payload(input="2", schedule=self.attested(clock, name="X"))).job
        assert first.trigger == TRIGGER_ATTESTED
        assert len(harness.adapter.of_kind("announcement")) == 1

        harness.oracle.attest("X", "yes", "sig")

        assert harness.engine.get_job(first.job_id).state == COMPLETED
        assert harness.engine.get_job(second.job_id).state == COMPLETED
        assert [c[3] for c in harness.executor.calls] == ["1", "2"]

        with pytest.raises(InvalidTransition):
            harness.engine.trigger(first.job_id)
        assert len(harness.executor.calls) == 2

    def test_generated_event_name(self, harness, clock):
        fund(harness)
        payload = request_payload(schedule=self.attested(clock, expected_outputs=["up", "down"]))
        job = harness.engine.submit("alice", payload).job
        event = harness.oracle.get_event(f"job-{job.job_id[:16]}")
        assert event.outcomes == ("up", "down")
        assert event.maturity == payload["schedule"]["run_date"]

    def test_different_outputs_conflict(self, harness, clock):
        fund(harness, amount=2 * JOB_PRICE)
        harness.engine.submit("alice", request_payload(input="1", schedule=self.attested(clock, name="X", expected_outputs=["a"])))
        with pytest.raises(DuplicateEventName):
            harness.engine.submit(
                "alice", request_payload(input="2", schedule=self.attested(clock, name="X", expected_outputs=["b"]))
            )
        assert harness.stores.ledger.balance("alice") == JOB_PRICE

    def test_unknown_event_rolls_back(self, harness, clock):
        fund(harness)
        with pytest.raises(UnknownEvent):
            harness.engine.submit("alice", request_payload(schedule=self.attested(clock, name="nope")))
        assert harness.stores.ledger.balance("alice") == JOB_PRICE

    def test_already_attested_event_dispatches_immediately(self, harness, clock):
        fund(harness)
        harness.oracle.register_event("X", ["yes", "no"])
        harness.oracle.attest("X", "no", "sig")
        result = harness.engine.submit("alice", request_payload(schedule=self.attested(clock, name="X")))
        assert result.execution.result().state == COMPLETED

    def test_never_attested_stays_waiting(self, harness, clock):
        fund(harness)
        job = harness.engine.submit(
            "alice", request_payload(schedule=self.attested(clock, name="X", expected_outputs=["a", "b"]))
        ).job
        clock.advance(3600)
        harness.scheduler.tick()
        assert harness.engine.get_job(job.job_id).state == AWAITING_TRIGGER


class TestExactlyOnce:
    def test_concurrent_triggers_execute_once(self, make_harness):
        harness = make_harness(dispatcher=HoldingDispatcher())
        fund(harness)
        job = harness.engine.submit("alice", request_payload()).job
        barrier = threading.Barrier(10)
        results = []
        lock = threading.Lock()

        def race():
            barrier.wait()
            outcome = harness.engine.run_job(job.job_id)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=race) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(harness.executor.calls) == 1
        assert len([r for r in results if r is not None]) == 1
        assert event_types(harness, job.job_id).count("job_executing") == 1


class TestPayPerUse:
    def test_invoice_then_settlement(self, make_harness):
        gateway = FakeGateway()
        harness = make_harness(gateway=gateway)
        payload = request_payload()

        result = harness.engine.handle_request("alice", payload)
        assert result.job is None
        invoice = result.invoice
        assert invoice.amount_msats == JOB_PRICE
        notice = harness.adapter.of_kind("payment_required")[0].payload
        assert notice["bolt11"] == invoice.bolt11
        assert notice["job_id"] == request_hash("alice", payload)

        settled = harness.engine.on_payment_settled(invoice.payment_hash)
        job = settled.execution.result()
        assert job.state == COMPLETED
        assert job.funding == FUNDING_PAY_PER_USE
        assert job.payment_hash == invoice.payment_hash
        assert harness.stores.ledger.get_settlement(invoice.payment_hash).result_id == job.result_id

    def test_replayed_settlement(self, make_harness):
        harness = make_harness(gateway=FakeGateway())
        invoice = harness.engine.handle_request("alice", request_payload()).invoice
        harness.engine.on_payment_settled(invoice.payment_hash)
        with pytest.raises(DuplicatePayment):
            harness.engine.on_payment_settled(invoice.payment_hash)
        assert len(harness.executor.calls) == 1

    def test_pay_per_use_failure_is_not_refunded(self, make_harness):
        harness = make_harness(gateway=FakeGateway(), executor=FakeExecutor(error=ExecutionFault("trap")))
        invoice = harness.engine.handle_request("alice", request_payload()).invoice
        job = harness.engine.on_payment_settled(invoice.payment_hash).execution.result()
        assert job.state == FAILED
        assert harness.stores.ledger.balance("alice") == 0

    def test_prepaid_request_skips_invoice(self, make_harness):
        gateway = FakeGateway()
        harness = make_harness(gateway=gateway)
        fund(harness)
        result = harness.engine.handle_request("alice", request_payload())
        assert result.invoice is None
        assert gateway.issued == []

    def test_without_gateway_error_propagates(self, harness):
        with pytest.raises(InsufficientFunds):
            harness.engine.handle_request("alice", request_payload())

    def test_unknown_payment_is_ignored(self, harness):
        assert harness.engine.on_payment_settled("f" * 64) is None

    def test_settled_payment_for_stale_schedule_is_credited(self, make_harness, clock):
        harness = make_harness(gateway=FakeGateway())
        payload = request_payload(schedule={"run_date": clock.unix() + 5})
        invoice = harness.engine.handle_request("alice", payload).invoice
        clock.advance(10)
        assert harness.engine.on_payment_settled(invoice.payment_hash).job is None
        settlement = harness.stores.ledger.get_settlement(invoice.payment_hash)
        assert settlement.job_id is None
        assert settlement.credited_at is not None
        assert harness.stores.ledger.balance("alice") == JOB_PRICE
        with pytest.raises(DuplicatePayment):
            harness.engine.on_payment_settled(invoice.payment_hash)
        assert harness.stores.ledger.balance("alice") == JOB_PRICE

    def test_redelivery_after_storage_fault_admits_job(self, make_harness, monkeypatch):
        harness = make_harness(gateway=FakeGateway())
        invoice = harness.engine.handle_request("alice", request_payload()).invoice
        create = harness.stores.jobs.create
        failures = [StorageFault("disk I/O error")]

        def flaky_create(job, *, conn=None):
            if failures:
                raise failures.pop()
            return create(job, conn=conn)

        monkeypatch.setattr(harness.stores.jobs, "create", flaky_create)
        with pytest.raises(StorageFault):
            harness.engine.on_payment_settled(invoice.payment_hash)
        assert harness.stores.ledger.get_settlement(invoice.payment_hash).job_id is None

        job = harness.engine.on_payment_settled(invoice.payment_hash).execution.result()
        assert job.state == COMPLETED
        assert job.payment_hash == invoice.payment_hash
        assert len(harness.executor.calls) == 1

    def test_settled_payment_cannot_fund_another_requester(self, harness):
        harness.stores.ledger.record_settlement("h" * 64, "alice", JOB_PRICE, purpose=PURPOSE_JOB)
        payload = request_payload(input="mine")
        with pytest.raises(InsufficientFunds):
            harness.engine.submit("mallory", payload, payment_hash="h" * 64)
        assert not harness.stores.jobs.exists(request_hash("mallory", payload))
        assert harness.stores.ledger.get_settlement("h" * 64).job_id is None


class TestDeposits:
    def test_deposit_credits_balance(self, make_harness):
        harness = make_harness(gateway=FakeGateway())
        invoice = harness.engine.request_deposit("alice", 5 * JOB_PRICE)
        assert harness.engine.on_payment_settled(invoice.payment_hash) is None
        assert harness.engine.get_account("alice").balance_msats == 5 * JOB_PRICE

    def test_deposit_needs_gateway(self, harness):
        with pytest.raises(ConfigError):
            harness.engine.request_deposit("alice", 1000)

    def test_non_positive_deposit(self, make_harness):
        harness = make_harness(gateway=FakeGateway())
        with pytest.raises(MalformedRequest):
            harness.engine.request_deposit("alice", 0)

    def test_unknown_account(self, harness):
        with pytest.raises(NotFoundError):
            harness.engine.get_account("nobody")


class TestEncryption:
    def test_input_decrypted_output_encrypted(self, make_harness):
        harness = make_harness(cipher=ReversingCipher())
        fund(harness)
        job = harness.engine.submit("alice", request_payload(input="cba", encrypted=True)).execution.result()
        assert harness.executor.calls[0][3] == "abc"
        assert job.output == "42"
        assert harness.adapter.of_kind("result")[0].payload["content"] == "enc:24"


class TestPublication:
    def test_failed_publish_is_retried_by_recovery(self, make_harness):
        adapter = FlakyAdapter(failures=1)
        harness = make_harness(adapter=adapter)
        fund(harness)
        job = harness.engine.submit("alice", request_payload()).execution.result()
        assert job.state == COMPLETED
        assert job.result_id is None

        counts = harness.engine.recover()
        assert counts["republished"] == 1
        assert harness.engine.get_job(job.job_id).result_id is not None
        assert len(adapter.of_kind("result")) == 1


class TestRecovery:
    def test_queued_immediate_job_runs_after_restart(self, make_harness):
        crashed = make_harness(dispatcher=HoldingDispatcher())
        fund(crashed)
        job = crashed.engine.submit("alice", request_payload()).job
        assert crashed.executor.calls == []

        restarted = make_harness()
        counts = restarted.engine.recover()
        assert counts["dispatched"] == 1
        assert restarted.engine.get_job(job.job_id).state == COMPLETED
        assert len(restarted.executor.calls) == 1

    def test_interrupted_job_is_failed_not_rerun(self, make_harness):
        crashed = make_harness(dispatcher=HoldingDispatcher())
        fund(crashed)
        job = crashed.engine.submit("alice", request_payload()).job
        executing = apply_transition(job, TransitionRequest(new_state=EXECUTING, now=crashed.clock()))
        assert crashed.stores.jobs.compare_and_set(executing, expected_state=AWAITING_TRIGGER)

        restarted = make_harness()
        counts = restarted.engine.recover()
        recovered = restarted.engine.get_job(job.job_id)
        assert counts["interrupted"] == 1
        assert recovered.state == REFUNDED
        assert recovered.failure_reason == INTERRUPTED_REASON
        assert restarted.executor.calls == []
        assert restarted.stores.ledger.balance("alice") == JOB_PRICE

    def test_scheduled_jobs_are_reregistered(self, harness, make_harness, clock):
        fund(harness)
        job = harness.engine.submit("alice", request_payload(schedule={"run_date": clock.unix() + 10})).job

        restarted = make_harness()
        assert restarted.engine.recover()["scheduled"] == 1
        clock.advance(30)
        assert restarted.scheduler.tick() == [job.job_id]
        assert restarted.engine.get_job(job.job_id).state == COMPLETED

    def test_attested_event_without_fan_out(self, make_harness, clock):
        crashed = make_harness(dispatcher=HoldingDispatcher())
        fund(crashed)
        job = crashed.engine.submit(
            "alice", request_payload(schedule={"run_date": clock.unix() + 60, "name": "X", "expected_outputs": ["a"]})
        ).job
        crashed.oracle.attest("X", "a", "sig")
        assert crashed.engine.get_job(job.job_id).state == AWAITING_TRIGGER

        restarted = make_harness()
        assert restarted.engine.recover()["dispatched"] == 1
        assert restarted.engine.get_job(job.job_id).state == COMPLETED

    def test_settled_payment_without_job_is_readmitted(self, make_harness):
        crashed = make_harness(gateway=FakeGateway())
        payload = request_payload()
        invoice = crashed.engine.handle_request("alice", payload).invoice
        crashed.stores.ledger.record_settlement(
            invoice.payment_hash, "alice", invoice.amount_msats, purpose=PURPOSE_JOB, request=payload
        )

        restarted = make_harness(gateway=FakeGateway())
        counts = restarted.engine.recover()
        assert counts["readmitted"] == 1
        job = restarted.engine.get_job(request_hash("alice", payload))
        assert job.state == COMPLETED
        assert job.payment_hash == invoice.payment_hash
        assert len(restarted.executor.calls) == 1
        assert restarted.stores.ledger.list_unclaimed_settlements() == []

    def test_unadmittable_settlement_is_credited_on_recovery(self, make_harness, clock):
        crashed = make_harness(gateway=FakeGateway())
        payload = request_payload(schedule={"run_date": clock.unix() + 5})
        invoice = crashed.engine.handle_request("alice", payload).invoice
        crashed.stores.ledger.record_settlement(
            invoice.payment_hash, "alice", invoice.amount_msats, purpose=PURPOSE_JOB, request=payload
        )
        clock.advance(10)

        restarted = make_harness()
        assert restarted.engine.recover()["readmitted"] == 0
        assert restarted.stores.ledger.balance("alice") == JOB_PRICE
        assert restarted.stores.ledger.list_unclaimed_settlements() == []
