"""FastAPI surface for the data vending machine runtime."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import requests
from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from config.logging import apply_logging_config
from config.settings import RuntimeConfig, env_config_paths, load_runtime_config
from errors import (
    AlreadyAttested,
    ConfigError,
    DuplicateEventName,
    DuplicateJob,
    DuplicatePayment,
    DvmError,
    InsufficientFunds,
    InvalidOutcome,
    InvalidSchedule,
    InvalidTransition,
    MalformedRequest,
    NotFoundError,
    StorageFault,
    UnknownEvent,
)
from executor.dispatch import Dispatcher, ThreadPoolDispatcher
from executor.engine import JobEngine
from models import Invoice
from oracle.service import OracleService
from protocol.interfaces import AnnouncementSigner, PayloadCipher, PaymentGateway, ProtocolAdapter
from protocol.local import LocalProtocolAdapter
from sandbox.executor import Runner, SandboxedExecutor
from sandbox.fetch import ArtifactFetcher
from sandbox.wasm import WasmRunner
from scheduler.runner import Scheduler
from storage.sqlite import SQLiteStores
from utils import Clock, utcnow
from validation.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)

# Most specific first.
_ERROR_STATUS: list[tuple[type[DvmError], int]] = [
    (MalformedRequest, 422),
    (InvalidSchedule, 422),
    (InvalidOutcome, 422),
    (InsufficientFunds, 402),
    (DuplicateJob, 409),
    (DuplicatePayment, 409),
    (DuplicateEventName, 409),
    (AlreadyAttested, 409),
    (InvalidTransition, 409),
    (UnknownEvent, 404),
    (NotFoundError, 404),
    (StorageFault, 503),
]


@dataclass(frozen=True)
class AppComponents:
    engine: JobEngine
    oracle: OracleService
    stores: SQLiteStores
    scheduler: Scheduler
    adapter: ProtocolAdapter


def _error_payload(err: Exception) -> dict[str, Any]:
    if not isinstance(err, DvmError):
        return {"error": "INTERNAL", "message": str(err)}
    payload: dict[str, Any] = {"error": err.code, "message": str(err)}
    if isinstance(err, MalformedRequest):
        payload["violations"] = [{"path": v.path, "message": v.message} for v in err.violations]
    if isinstance(err, NotFoundError):
        payload["resource_type"] = err.resource_type
        payload["resource_id"] = err.resource_id
    if isinstance(err, InsufficientFunds) and err.required_msats is not None:
        payload["required_msats"] = err.required_msats
    return payload


def _invoice_payload(invoice: Invoice) -> dict[str, Any]:
    return {"payment_hash": invoice.payment_hash, "bolt11": invoice.bolt11, "amount_msats": invoice.amount_msats}


def _as_dict(v: Any) -> dict[str, Any]:
    if not isinstance(v, dict):
        raise MalformedRequest("Expected a JSON object")
    return v


def _required_str(body: dict[str, Any], key: str) -> str:
    v = body.get(key)
    if not isinstance(v, str) or not v:
        raise MalformedRequest(f"{key} must be a non-empty string")
    return v


def _required_int(body: dict[str, Any], key: str) -> int:
    v = body.get(key)
    if isinstance(v, bool) or not isinstance(v, int):
        raise MalformedRequest(f"{key} must be an integer")
    return v


def build_components(
    runtime: RuntimeConfig,
    *,
    clock: Clock = utcnow,
    adapter: ProtocolAdapter | None = None,
    gateway: PaymentGateway | None = None,
    cipher: PayloadCipher | None = None,
    signer: AnnouncementSigner | None = None,
    runner: Runner | None = None,
    session: requests.Session | None = None,
    dispatcher: Dispatcher | None = None,
) -> AppComponents:
    stores = SQLiteStores(runtime.storage.sqlite_path, clock=clock)
    stores.oracle.pin_identity(runtime.oracle.public_key, runtime.oracle.name)

    schema_validator = SchemaValidator.load_from_dir()
    adapter = adapter or LocalProtocolAdapter()

    oracle = OracleService(
        store=stores.oracle,
        jobs=stores.jobs,
        identity=runtime.oracle,
        validator=schema_validator,
        adapter=adapter,
        signer=signer,
        clock=stores.now,
    )
    executor = SandboxedExecutor(
        fetcher=ArtifactFetcher(
            max_bytes=runtime.sandbox.max_artifact_bytes,
            timeout_seconds=runtime.sandbox.fetch_timeout_seconds,
            session=session,
        ),
        runner=runner
        or WasmRunner(
            allowed_hosts=runtime.sandbox.allowed_hosts,
            max_memory_pages=runtime.sandbox.max_memory_pages,
            wasi=runtime.sandbox.wasi,
        ),
        start_method=runtime.executor.start_method,
        startup_timeout_seconds=runtime.executor.startup_timeout_seconds,
    )
    scheduler = Scheduler(runtime.scheduler, clock=stores.now)

    engine = JobEngine(
        stores=stores,
        schema_validator=schema_validator,
        executor=executor,
        dispatcher=dispatcher or ThreadPoolDispatcher(runtime.executor.workers),
        scheduler=scheduler,
        oracle=oracle,
        limits=runtime.executor,
        pricing=runtime.pricing,
        adapter=adapter,
        gateway=gateway,
        cipher=cipher,
    )
    return AppComponents(engine=engine, oracle=oracle, stores=stores, scheduler=scheduler, adapter=adapter)


def _build_from_env() -> AppComponents:
    runtime_cfg_path, logging_cfg_path = env_config_paths()
    runtime = load_runtime_config(runtime_cfg_path)
    apply_logging_config(logging_cfg_path)
    return build_components(runtime)


def _error_handler(status_code: int):
    def handler(_req, exc: Exception):
        return JSONResponse(status_code=status_code, content=_error_payload(exc))

    return handler


def _unhandled_handler(_req, exc: Exception):
    logger.exception("unhandled_error", extra={"event": "unhandled_error"})
    return JSONResponse(status_code=500, content=_error_payload(exc))


def create_app(components: AppComponents | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Fail closed at startup if config, schemas or storage cannot be loaded.
        comps = components or _build_from_env()
        app.state.components = comps
        comps.engine.recover()
        comps.scheduler.start()
        logger.info("runtime_started", extra={"event": "runtime_started"})
        try:
            yield
        finally:
            comps.engine.close()
            logger.info("runtime_stopped", extra={"event": "runtime_stopped"})

    app = FastAPI(title="DVM Runtime", version="0.1.0", lifespan=lifespan)

    for exc_type, status_code in _ERROR_STATUS:
        app.add_exception_handler(exc_type, _error_handler(status_code))
    app.add_exception_handler(ConfigError, _unhandled_handler)
    app.add_exception_handler(Exception, _unhandled_handler)

    def _components() -> AppComponents:
        return app.state.components

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Health check. Returns 200 once config, schemas and storage are loaded."""
        return {"status": "ok"}

    @app.post("/jobs")
    def submit_job(body: dict[str, Any] = Body(...)) -> Any:
        body = _as_dict(body)
        requester = _required_str(body, "requester")
        engine = _components().engine
        payment_hash = body.get("payment_hash")
        if payment_hash is not None:
            res = engine.submit(requester, body.get("request"), payment_hash=str(payment_hash))
        else:
            res = engine.handle_request(requester, body.get("request"))
        if res.invoice is not None:
            return JSONResponse(
                status_code=402,
                content={"error": "PAYMENT_REQUIRED", "invoice": _invoice_payload(res.invoice)},
            )
        return {"job": res.job.to_dict()}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str) -> dict[str, Any]:
        comps = _components()
        job = comps.engine.get_job(job_id)
        return {"job": job.to_dict(), "events": comps.stores.jobs.list_events(job_id)}

    @app.post("/jobs/{job_id}/trigger")
    def trigger_job(job_id: str) -> dict[str, Any]:
        _components().engine.trigger(job_id)
        return {"job_id": job_id, "queued": True}

    @app.post("/jobs/{job_id}/reschedule")
    def reschedule_job(job_id: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        run_date = _required_int(_as_dict(body), "run_date")
        job = _components().engine.reschedule(job_id, run_date)
        return {"job": job.to_dict()}

    @app.get("/accounts/{requester}")
    def get_account(requester: str) -> dict[str, Any]:
        return {"account": _components().engine.get_account(requester).to_dict()}

    @app.post("/accounts/{requester}/deposit")
    def deposit(requester: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        amount = _required_int(_as_dict(body), "amount_msats")
        invoice = _components().engine.request_deposit(requester, amount)
        return {"invoice": _invoice_payload(invoice)}

    @app.post("/payments/settled")
    def payment_settled(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        body = _as_dict(body)
        payment_hash = _required_str(body, "payment_hash")
        amount = body.get("amount_msats")
        if amount is not None:
            amount = _required_int(body, "amount_msats")
        res = _components().engine.on_payment_settled(payment_hash, amount)
        if res is None or res.job is None:
            return {"payment_hash": payment_hash, "job": None}
        return {"payment_hash": payment_hash, "job": res.job.to_dict()}

    @app.post("/events")
    def register_event(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        event = _components().oracle.register_from_document(body)
        return {"event": event.to_dict()}

    @app.get("/events/{name}")
    def get_event(name: str) -> dict[str, Any]:
        return {"event": _components().oracle.get_event(name).to_dict()}

    @app.post("/events/{name}/attest")
    def attest_event(name: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        event = _components().oracle.attest_from_document(name, body)
        return {"event": event.to_dict()}

    return app


app = create_app()
