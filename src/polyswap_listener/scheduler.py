from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable

LOGGER = logging.getLogger("polyswap_listener")


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    fn: Callable[[], object]
    next_run: float = 0.0
    running: bool = False
    cancelled: bool = False
    runs: int = 0
    skipped_ticks: int = 0

    def cancel(self) -> None:
        self.cancelled = True


class IntervalScheduler:
    """Single-threaded interval loop with a shared stop token."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._jobs: list[ScheduledJob] = []
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def every(
        self,
        interval_seconds: float,
        fn: Callable[[], object],
        *,
        name: str,
        run_immediately: bool = True,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        now = self._clock()
        job = ScheduledJob(
            name=name,
            interval_seconds=float(interval_seconds),
            fn=fn,
            next_run=now if run_immediately else now + interval_seconds,
        )
        self._jobs.append(job)
        return job

    def stop(self) -> None:
        self._stop.set()

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True when interrupted by stop()."""
        if seconds <= 0:
            return self._stop.is_set()
        return self._stop.wait(seconds)

    def run_pending(self) -> int:
        ran = 0
        for job in list(self._jobs):
            if job.cancelled or self._stop.is_set():
                continue
            now = self._clock()
            if now < job.next_run or job.running:
                continue
            self._run_job(job)
            ran += 1
        self._jobs = [job for job in self._jobs if not job.cancelled]
        return ran

    def run(self) -> None:
        while not self._stop.is_set() and self._jobs:
            self.run_pending()
            pending = [job.next_run for job in self._jobs if not job.cancelled]
            if not pending:
                break
            self.sleep(min(pending) - self._clock())

    def _run_job(self, job: ScheduledJob) -> None:
        job.running = True
        started = self._clock()
        try:
            job.fn()
        except Exception as exc:
            LOGGER.error("job_failed name=%s error=%s", job.name, exc)
        finally:
            job.running = False
            job.runs += 1
        finished = self._clock()
        job.next_run = started + job.interval_seconds
        if finished > job.next_run:
            # Overran: drop missed ticks instead of queueing them.
            missed = int((finished - job.next_run) // job.interval_seconds) + 1
            job.skipped_ticks += missed
            job.next_run += missed * job.interval_seconds
            LOGGER.debug("job_overrun name=%s skipped_ticks=%s", job.name, missed)
