"""Trigger scheduler for time-scheduled jobs.

A min-heap keyed by run_date is polled by a background thread. When the clock
reaches a job's run_date, the job id is handed to the trigger handler (the
lifecycle engine). Firing is at-least-once from the scheduler's side; the
engine's conditional transition makes execution exactly-once.

On restart the engine re-registers every scheduled job still awaiting its
trigger. Run dates already in the past fire on the next tick. An entry whose
handler raises is pushed back one poll interval later.

`tick()` does one polling step and is what tests drive directly.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from config.settings import SchedulerConfig
from utils import Clock, unix_seconds, utcnow

logger = logging.getLogger(__name__)

TriggerHandler = Callable[[str], Any]


@dataclass(order=True, frozen=True)
class _Entry:
    run_date: int
    seq: int
    job_id: str = field(compare=False)


class Scheduler:
    def __init__(self, config: SchedulerConfig, *, clock: Clock = utcnow):
        self.config = config
        self._clock = clock
        self._heap: list[_Entry] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._handler: TriggerHandler | None = None

    def set_trigger_handler(self, handler: TriggerHandler) -> None:
        self._handler = handler

    def schedule(self, job_id: str, run_date: int) -> None:
        with self._lock:
            heapq.heappush(self._heap, _Entry(run_date=int(run_date), seq=next(self._seq), job_id=job_id))
        logger.info("job_scheduled", extra={"event": "job_scheduled", "job_id": job_id})

    def pending(self) -> list[tuple[int, str]]:
        with self._lock:
            return [(e.run_date, e.job_id) for e in sorted(self._heap)]

    def tick(self) -> list[str]:
        """Fire every entry whose run_date has been reached. Returns the fired job ids."""
        now = unix_seconds(self._clock())
        due: list[str] = []
        with self._lock:
            while self._heap and self._heap[0].run_date <= now:
                due.append(heapq.heappop(self._heap).job_id)

        if due and self._handler is None:
            logger.warning("scheduler_no_trigger_handler", extra={"event": "scheduler_no_trigger_handler"})
            return due

        for job_id in due:
            try:
                self._handler(job_id)
            except Exception:
                # Retried on a later tick.
                retry_at = int(math.ceil(now + self.config.poll_interval_seconds))
                with self._lock:
                    heapq.heappush(self._heap, _Entry(run_date=retry_at, seq=next(self._seq), job_id=job_id))
                logger.exception("scheduler_trigger_failed", extra={"event": "scheduler_trigger_failed", "job_id": job_id})
        return due

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("scheduler_disabled", extra={"event": "scheduler_disabled"})
            return
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="dvm-scheduler", daemon=True)
        self._thread.start()

    def run_forever(self) -> None:
        logger.info("scheduler_started", extra={"event": "scheduler_started"})
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.config.poll_interval_seconds)
        logger.info("scheduler_stopped", extra={"event": "scheduler_stopped"})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
