"""Sandboxed executor: fetch, verify, run in a child process, kill on deadline.

Contract:
    execute(code_ref, checksum, function, input, time_budget_ms) -> output

- The artifact's sha256 must equal the requested checksum (IntegrityMismatch).
- The runner executes in a separate process. The budget clock starts once the
  child reports it is ready; on expiry the child is killed (ExecutionTimeout).
- Anything that goes wrong inside the child is an ExecutionFault. The host
  process never sees the sandboxed code's failures as crashes.
- Output is returned verbatim as text; it must be valid UTF-8.
"""

from __future__ import annotations

import logging
import multiprocessing
import tempfile
from multiprocessing.connection import Connection
from pathlib import Path
from typing import Callable

from errors import ExecutionFault, ExecutionTimeout, IntegrityMismatch
from sandbox.fetch import ArtifactFetcher
from utils import sha256_hex

logger = logging.getLogger(__name__)

# (artifact_path, function, input, timeout_ms) -> output. Must be picklable.
Runner = Callable[[str, str, str, int], "bytes | str"]

_READY = "ready"
_OK = "ok"
_ERROR = "error"


def _child_main(conn: Connection, runner: Runner, artifact_path: str, function: str, input: str, timeout_ms: int) -> None:
    try:
        conn.send((_READY, None))
        try:
            out = runner(artifact_path, function, input, timeout_ms)
            if isinstance(out, str):
                out = out.encode("utf-8")
            conn.send((_OK, bytes(out)))
        except Exception as e:
            conn.send((_ERROR, f"{type(e).__name__}: {e}"))
    finally:
        conn.close()


class SandboxedExecutor:
    def __init__(
        self,
        *,
        fetcher: ArtifactFetcher,
        runner: Runner,
        start_method: str | None = "spawn",
        startup_timeout_seconds: float = 30.0,
    ):
        self._fetcher = fetcher
        self._runner = runner
        self._ctx = multiprocessing.get_context(start_method)
        self._startup_timeout = startup_timeout_seconds

    def execute(self, code_ref: str, checksum: str, function: str, input: str, time_budget_ms: int) -> str:
        artifact = self._fetcher.fetch(code_ref)
        actual = sha256_hex(artifact)
        if actual != checksum.lower():
            raise IntegrityMismatch(checksum.lower(), actual)

        with tempfile.TemporaryDirectory(prefix="dvm-artifact-") as tmp:
            path = Path(tmp) / "artifact.wasm"
            path.write_bytes(artifact)
            raw = self._run_isolated(str(path), function, input, time_budget_ms)

        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExecutionFault("output is not valid UTF-8") from e

    def _run_isolated(self, artifact_path: str, function: str, input: str, time_budget_ms: int) -> bytes:
        reader, writer = self._ctx.Pipe(duplex=False)
        proc = self._ctx.Process(
            target=_child_main,
            args=(writer, self._runner, artifact_path, function, input, time_budget_ms),
            name="dvm-sandbox",
            daemon=True,
        )
        proc.start()
        writer.close()

        try:
            if not reader.poll(self._startup_timeout):
                raise ExecutionFault("sandbox did not start in time")
            reader.recv()
            if not reader.poll(time_budget_ms / 1000.0):
                logger.warning("sandbox_timeout", extra={"event": "sandbox_timeout"})
                raise ExecutionTimeout(time_budget_ms)
            kind, payload = reader.recv()
        except EOFError:
            kind, payload = None, None
        finally:
            self._reap(proc)
            reader.close()

        if kind is None:
            raise ExecutionFault(f"sandbox exited without a result (exit code {proc.exitcode})")
        if kind == _OK:
            return payload
        raise ExecutionFault(str(payload))

    @staticmethod
    def _reap(proc: multiprocessing.process.BaseProcess) -> None:
        if proc.is_alive():
            proc.kill()
        proc.join(timeout=5)
        if proc.is_alive():
            logger.error("sandbox_not_reaped", extra={"event": "sandbox_not_reaped"})
