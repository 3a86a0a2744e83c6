"""Configuration loader for the core runtime.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
- The oracle identity is read once here and never mutated afterwards.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from errors import ConfigError

_HEX_KEY = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class ServiceConfig:
    host: str
    port: int


@dataclass(frozen=True)
class StorageConfig:
    driver: str
    sqlite_path: Path


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    poll_interval_seconds: float


@dataclass(frozen=True)
class ExecutorConfig:
    workers: int
    max_time_ms: int
    start_method: str | None
    startup_timeout_seconds: float


@dataclass(frozen=True)
class SandboxConfig:
    max_artifact_bytes: int
    fetch_timeout_seconds: float
    allowed_hosts: tuple[str, ...]
    max_memory_pages: int | None
    wasi: bool


@dataclass(frozen=True)
class PricingConfig:
    msats_per_ms: float
    invoice_expiry_seconds: int


@dataclass(frozen=True)
class OracleIdentity:
    public_key: str
    name: str


@dataclass(frozen=True)
class RuntimeConfig:
    role: str  # dev|prod
    service: ServiceConfig
    storage: StorageConfig
    scheduler: SchedulerConfig
    executor: ExecutorConfig
    sandbox: SandboxConfig
    pricing: PricingConfig
    oracle: OracleIdentity
    config_dir: Path


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _positive(name: str, value: float) -> float:
    if value <= 0:
        raise ConfigError(f"{name} must be positive (got {value})")
    return value


def load_oracle_identity(raw: dict[str, Any]) -> OracleIdentity:
    public_key = str(raw.get("public_key", "")).strip().lower()
    if not _HEX_KEY.match(public_key):
        raise ConfigError("oracle.public_key must be a 32-byte hex string")
    return OracleIdentity(public_key=public_key, name=str(raw.get("name", "dvm-oracle")))


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    runtime_raw = raw.get("runtime") or {}
    service_raw = raw.get("service") or {}
    storage_raw = raw.get("storage") or {}
    scheduler_raw = raw.get("scheduler") or {}
    executor_raw = raw.get("executor") or {}
    sandbox_raw = raw.get("sandbox") or {}
    pricing_raw = raw.get("pricing") or {}
    oracle_raw = raw.get("oracle") or {}

    service = ServiceConfig(
        host=str(service_raw.get("host", "0.0.0.0")),
        port=int(service_raw.get("port", 3000)),
    )

    sqlite_path = _resolve_path(cfg_dir, str((storage_raw.get("sqlite") or {}).get("path", "../state/dvm.sqlite")))
    driver = str(storage_raw.get("driver", "sqlite"))
    if driver != "sqlite":
        raise ConfigError(f"Unsupported storage driver: {driver}")
    storage = StorageConfig(driver=driver, sqlite_path=sqlite_path)

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_raw.get("enabled", True)),
        poll_interval_seconds=_positive("scheduler.poll_interval_seconds", float(scheduler_raw.get("poll_interval_seconds", 1))),
    )

    start_method = executor_raw.get("start_method", "spawn")
    executor = ExecutorConfig(
        workers=int(_positive("executor.workers", int(executor_raw.get("workers", 4)))),
        max_time_ms=int(_positive("executor.max_time_ms", int(executor_raw.get("max_time_ms", 600_000)))),
        start_method=str(start_method) if start_method else None,
        startup_timeout_seconds=_positive("executor.startup_timeout_seconds", float(executor_raw.get("startup_timeout_seconds", 30))),
    )

    max_pages = sandbox_raw.get("max_memory_pages")
    sandbox = SandboxConfig(
        max_artifact_bytes=int(_positive("sandbox.max_artifact_bytes", int(sandbox_raw.get("max_artifact_bytes", 25_000_000)))),
        fetch_timeout_seconds=_positive("sandbox.fetch_timeout_seconds", float(sandbox_raw.get("fetch_timeout_seconds", 30))),
        allowed_hosts=tuple(str(h) for h in (sandbox_raw.get("allowed_hosts") or [])),
        max_memory_pages=int(max_pages) if max_pages is not None else None,
        wasi=bool(sandbox_raw.get("wasi", True)),
    )

    pricing = PricingConfig(
        msats_per_ms=_positive("pricing.msats_per_ms", float(pricing_raw.get("msats_per_ms", 1000))),
        invoice_expiry_seconds=int(pricing_raw.get("invoice_expiry_seconds", 86_400)),
    )

    return RuntimeConfig(
        role=str(runtime_raw.get("role", "dev")),
        service=service,
        storage=storage,
        scheduler=scheduler,
        executor=executor,
        sandbox=sandbox,
        pricing=pricing,
        oracle=load_oracle_identity(oracle_raw),
        config_dir=cfg_dir,
    )


def default_config_paths() -> tuple[Path, Path]:
    # Default to paths relative to the runtime working directory (runtime/core).
    runtime_path = Path.cwd() / "config" / "runtime.yaml"
    logging_path = Path.cwd() / "config" / "logging.yaml"
    return runtime_path, logging_path


def env_config_paths() -> tuple[Path, Path]:
    default_runtime, default_logging = default_config_paths()
    runtime = os.environ.get("DVM_RUNTIME_CONFIG")
    logging_cfg = os.environ.get("DVM_LOGGING_CONFIG")
    return (Path(runtime) if runtime else default_runtime, Path(logging_cfg) if logging_cfg else default_logging)
