import hashlib
import itertools
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from config.settings import ExecutorConfig, OracleIdentity, PricingConfig, SchedulerConfig
from executor.dispatch import Dispatcher, InlineDispatcher
from executor.engine import JobEngine
from models import Invoice
from oracle.service import OracleService
from protocol.interfaces import PaymentGateway
from protocol.local import LocalProtocolAdapter
from scheduler.runner import Scheduler
from storage.sqlite import SQLiteStores
from validation.schema_validator import SchemaValidator

T0 = datetime(2030, 1, 1, tzinfo=timezone.utc)
ORACLE_KEY = "0" * 63 + "1"
ARTIFACT = b"\x00asm\x01\x00\x00\x00fake-module"
ARTIFACT_SHA256 = hashlib.sha256(ARTIFACT).hexdigest()

# time=1000ms at 1000 msats/ms
JOB_PRICE = 1_000_000


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)

    def unix(self) -> int:
        return int(self.current.timestamp())


class FakeExecutor:
    """Stands in for the sandbox; counts invocations per job input."""

    def __init__(self, output: str = "42", error: Exception | None = None):
        self.output = output
        self.error = error
        self.calls: list[tuple[str, str, str, str, int]] = []
        self._lock = threading.Lock()

    def execute(self, code_ref, checksum, function, input, time_budget_ms):
        with self._lock:
            self.calls.append((code_ref, checksum, function, input, time_budget_ms))
        if self.error is not None:
            raise self.error
        return self.output


class FakeGateway(PaymentGateway):
    def __init__(self):
        self._counter = itertools.count(1)
        self.issued: list[Invoice] = []

    def issue_invoice(self, amount_msats, *, description, expiry_seconds):
        n = next(self._counter)
        invoice = Invoice(
            payment_hash=hashlib.sha256(f"invoice-{n}".encode()).hexdigest(),
            bolt11=f"lnbc{amount_msats}n1fake{n}",
            amount_msats=amount_msats,
        )
        self.issued.append(invoice)
        return invoice


class HoldingDispatcher(Dispatcher):
    """Accepts work but never runs it, like a pool that dies before picking jobs up."""

    def __init__(self):
        self.held: list[tuple[Any, tuple]] = []

    def submit(self, fn, *args):
        self.held.append((fn, args))
        return Future()


def request_payload(**overrides) -> dict[str, Any]:
    payload = {
        "url": "https://artifacts.example.com/add.wasm",
        "function": "run",
        "input": '{"a": 1, "b": 2}',
        "time": 1000,
        "checksum": ARTIFACT_SHA256,
    }
    payload.update(overrides)
    return payload


@dataclass
class Harness:
    engine: JobEngine
    stores: SQLiteStores
    scheduler: Scheduler
    oracle: OracleService
    adapter: LocalProtocolAdapter
    executor: FakeExecutor
    clock: FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores(tmp_path, clock) -> SQLiteStores:
    return SQLiteStores(tmp_path / "dvm.sqlite", clock=clock)


@pytest.fixture(scope="session")
def validator() -> SchemaValidator:
    return SchemaValidator.load_from_dir()


@pytest.fixture
def identity() -> OracleIdentity:
    return OracleIdentity(public_key=ORACLE_KEY, name="test-oracle")


@pytest.fixture
def make_harness(stores, clock, validator, identity):
    def build(
        *,
        executor: FakeExecutor | None = None,
        dispatcher: Dispatcher | None = None,
        gateway: PaymentGateway | None = None,
        cipher=None,
        adapter: LocalProtocolAdapter | None = None,
    ) -> Harness:
        executor = executor or FakeExecutor()
        adapter = adapter or LocalProtocolAdapter()
        scheduler = Scheduler(SchedulerConfig(enabled=False, poll_interval_seconds=0.01), clock=clock)
        oracle = OracleService(
            store=stores.oracle,
            jobs=stores.jobs,
            identity=identity,
            validator=validator,
            adapter=adapter,
            clock=clock,
        )
        engine = JobEngine(
            stores=stores,
            schema_validator=validator,
            executor=executor,
            dispatcher=dispatcher or InlineDispatcher(),
            scheduler=scheduler,
            oracle=oracle,
            limits=ExecutorConfig(workers=2, max_time_ms=600_000, start_method="spawn", startup_timeout_seconds=30),
            pricing=PricingConfig(msats_per_ms=1000, invoice_expiry_seconds=86_400),
            adapter=adapter,
            gateway=gateway,
            cipher=cipher,
        )
        return Harness(
            engine=engine,
            stores=stores,
            scheduler=scheduler,
            oracle=oracle,
            adapter=adapter,
            executor=executor,
            clock=clock,
        )

    return build


@pytest.fixture
def harness(make_harness) -> Harness:
    return make_harness()
