"""Execution dispatchers.

Execution is the only blocking step of a job's life, so it runs on a fixed
worker pool. A job queued for a worker is still `awaiting_trigger` and holds
no slot until a worker picks it up.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Dispatcher(ABC):
    @abstractmethod
    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Schedule `fn(*args)` and return its future."""

    def shutdown(self, wait: bool = True) -> None:
        return None


class ThreadPoolDispatcher(Dispatcher):
    def __init__(self, workers: int):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.workers = workers
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dvm-worker")

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        return self._pool.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        logger.info("dispatcher_stopped", extra={"event": "dispatcher_stopped"})


class InlineDispatcher(Dispatcher):
    """Runs work on the calling thread. The returned future is already done."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as e:
            future.set_exception(e)
        return future
