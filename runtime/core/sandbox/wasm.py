"""WebAssembly runner backed by the Extism Python SDK.

Runs inside the sandbox child process. Network access is limited to the
configured allowed hosts; memory can be capped in 64 KiB pages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import extism

from errors import ExecutionFault


@dataclass(frozen=True)
class WasmRunner:
    allowed_hosts: tuple[str, ...] = ()
    max_memory_pages: int | None = None
    wasi: bool = True

    def manifest(self, artifact_path: str, timeout_ms: int) -> dict[str, Any]:
        manifest: dict[str, Any] = {
            "wasm": [{"path": artifact_path}],
            "allowed_hosts": list(self.allowed_hosts),
            "timeout_ms": int(timeout_ms),
        }
        if self.max_memory_pages is not None:
            manifest["memory"] = {"max_pages": int(self.max_memory_pages)}
        return manifest

    def __call__(self, artifact_path: str, function: str, input: str, timeout_ms: int) -> bytes:
        plugin = extism.Plugin(self.manifest(artifact_path, timeout_ms), wasi=self.wasi)
        if not plugin.function_exists(function):
            raise ExecutionFault(f"function not found in module: {function}")
        return bytes(plugin.call(function, input.encode("utf-8")))
