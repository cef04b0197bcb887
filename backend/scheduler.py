"""In-process recurring jobs: daily transaction archival, monthly budget renewal.

A background thread polls on a fixed interval and runs whichever jobs are
due. A failing job is logged and rescheduled; it never stops the loop.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Callable, Iterable

from backend.logging_config import get_logger

logger = get_logger("scheduler")


def next_daily_run(now: datetime) -> datetime:
    """Next midnight after ``now``."""
    return datetime.combine(now.date() + timedelta(days=1), time.min)


def next_monthly_run(now: datetime) -> datetime:
    """Midnight on the first day of the month after ``now``."""
    first = now.date().replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return datetime.combine(next_first, time.min)


@dataclass
class RecurringJob:
    name: str
    action: Callable[[], Any]
    next_run: Callable[[datetime], datetime]
    due_at: datetime | None = None
    last_run_at: datetime | None = None
    last_error: str | None = None


class ArchivalScheduler:
    def __init__(
        self,
        jobs: Iterable[RecurringJob],
        clock: Callable[[], datetime] = datetime.now,
        tick_interval_seconds: float = 60,
        run_on_start: bool = True,
    ) -> None:
        self._jobs = list(jobs)
        self._clock = clock
        self._tick_interval = tick_interval_seconds
        self._run_on_start = run_on_start
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def jobs(self) -> list[RecurringJob]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> int:
        """Run every job that is due; returns how many ran."""
        now = self._clock()
        fired = 0
        for job in self._jobs:
            if self._stop_event.is_set():
                break
            if job.due_at is None:
                # First sight of the job: catch up now, or wait for the next slot.
                job.due_at = now if self._run_on_start else job.next_run(now)
            if job.due_at > now:
                continue
            self._run_job(job, now)
            fired += 1
        return fired

    def run_job(self, name: str) -> None:
        """Run a job on demand without moving its schedule."""
        for job in self._jobs:
            if job.name == name:
                job.action()
                return
        raise KeyError(f"Unknown job: {name}")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="archival-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={"tick_interval": self._tick_interval, "jobs": [job.name for job in self._jobs]},
        )

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_failed")
            self._stop_event.wait(timeout=self._tick_interval)

    def _run_job(self, job: RecurringJob, now: datetime) -> None:
        try:
            result = job.action()
        except Exception as exc:
            job.last_error = str(exc)
            logger.exception("scheduled_job_failed", extra={"job": job.name})
        else:
            job.last_error = None
            logger.info("scheduled_job_completed", extra={"job": job.name, "result": result})
        finally:
            job.last_run_at = now
            job.due_at = job.next_run(now)
            logger.debug("scheduled_job_rescheduled", extra={"job": job.name, "due_at": job.due_at})
