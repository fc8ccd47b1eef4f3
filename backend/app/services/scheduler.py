"""Interval job scheduler running on one daemon thread."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    func: Callable[[], Any]
    interval_seconds: float
    next_run: float = 0.0
    last_run_at: Optional[float] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None
    run_count: int = 0
    failure_count: int = 0


class BackgroundScheduler:
    """Owns the periodic maintenance timers.

    Jobs run one after another on the scheduler thread; a failing job is
    logged and retried at its next interval without affecting the others.
    ``run_pending`` can be driven directly (tests, one-shot runs) without
    starting the thread.
    """

    def __init__(
        self,
        tick_seconds: Optional[float] = None,
        time_source: Callable[[], float] = time.monotonic,
        name: str = "maintenance-scheduler",
    ) -> None:
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tick = tick_seconds if tick_seconds is not None else settings.SCHEDULER_TICK_SECONDS
        self._time = time_source
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._heartbeat: float = 0.0

    def add_job(
        self,
        name: str,
        func: Callable[[], Any],
        interval_seconds: float,
        *,
        run_immediately: bool = False,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        now = self._time()
        job = ScheduledJob(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            next_run=now if run_immediately else now + interval_seconds,
        )
        with self._lock:
            if name in self._jobs:
                raise ValueError(f"Job '{name}' already registered")
            self._jobs[name] = job
        return job

    def remove_job(self, name: str) -> None:
        with self._lock:
            self._jobs.pop(name, None)

    def jobs(self) -> List[ScheduledJob]:
        with self._lock:
            return list(self._jobs.values())

    def run_job(self, name: str) -> bool:
        """Run one job now and reschedule it. Returns False if it raised."""
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)

        started = self._time()
        try:
            job.func()
            job.last_error = None
            ok = True
        except Exception as exc:
            job.failure_count += 1
            job.last_error = str(exc)
            logger.exception("Scheduled job %s failed", name)
            ok = False
        finished = self._time()

        job.run_count += 1
        job.last_run_at = time.time()
        job.last_duration = finished - started
        job.next_run = finished + job.interval_seconds
        return ok

    def run_pending(self) -> List[str]:
        """Run every job whose interval has elapsed; returns their names."""
        now = self._time()
        due = [job.name for job in self.jobs() if job.next_run <= now]
        for name in due:
            if self._stop_event.is_set() and self.is_running():
                break
            self.run_job(name)
        return due

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self._name, daemon=True)
        self._thread.start()
        logger.info("Scheduler started with %s jobs", len(self._jobs))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scheduler stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_heartbeat": self._heartbeat,
            "jobs": {
                job.name: {
                    "interval_seconds": job.interval_seconds,
                    "run_count": job.run_count,
                    "failure_count": job.failure_count,
                    "last_run_at": job.last_run_at,
                    "last_duration": job.last_duration,
                    "last_error": job.last_error,
                }
                for job in self.jobs()
            },
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._heartbeat = time.time()
            self._stop_event.wait(max(0.05, self._tick))
