"""Artifact fetching for the sandbox.

Artifacts are downloaded with `requests`, streamed and capped in size. Any
transport failure, non-2xx status or oversized body is an ExecutionFault.
"""

from __future__ import annotations

import logging

import requests

from errors import ExecutionFault

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class ArtifactFetcher:
    def __init__(self, *, max_bytes: int, timeout_seconds: float, session: requests.Session | None = None):
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        try:
            resp = self._session.get(url, stream=True, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise ExecutionFault(f"failed to fetch artifact {url}: {e}") from e

        try:
            if not 200 <= resp.status_code < 300:
                raise ExecutionFault(f"failed to fetch artifact {url}: HTTP {resp.status_code}")

            declared = resp.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) > self.max_bytes:
                raise ExecutionFault(f"artifact too large: {declared} bytes (limit {self.max_bytes})")

            body = bytearray()
            for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > self.max_bytes:
                    raise ExecutionFault(f"artifact too large: more than {self.max_bytes} bytes")
        except requests.RequestException as e:
            raise ExecutionFault(f"failed to fetch artifact {url}: {e}") from e
        finally:
            resp.close()

        logger.info("artifact_fetched", extra={"event": "artifact_fetched"})
        return bytes(body)
