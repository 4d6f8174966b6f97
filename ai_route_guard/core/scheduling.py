"""
Clocks and periodic background jobs.

Components read time from a Clock so tests can advance a ManualClock and
call Scheduler.run_pending() instead of waiting on real timers. In
production the Scheduler runs the same jobs on a daemon thread.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

import structlog

log = structlog.get_logger(__name__)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 15, 12, 0, 0)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._now += delta
            return self._now

    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = moment


@dataclass
class PeriodicJob:
    """Named action run every ``interval``."""
    name: str
    interval: timedelta
    action: Callable[[], object]
    next_run: datetime
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None


class Scheduler:
    """Runs periodic jobs against a Clock."""

    def __init__(self, clock: Clock, poll_seconds: float = 1.0):
        self._clock = clock
        self._poll_seconds = poll_seconds
        self._jobs: Dict[str, PeriodicJob] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_job(
        self,
        name: str,
        interval: timedelta,
        action: Callable[[], object],
        run_immediately: bool = False,
    ) -> PeriodicJob:
        """Register a job; replaces any job with the same name."""
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        now = self._clock.now()
        job = PeriodicJob(
            name=name,
            interval=interval,
            action=action,
            next_run=now if run_immediately else now + interval,
        )
        with self._lock:
            self._jobs[name] = job
        log.info("scheduler.job_added", job=name, interval_seconds=interval.total_seconds())
        return job

    def remove_job(self, name: str) -> None:
        with self._lock:
            self._jobs.pop(name, None)

    def jobs(self) -> List[PeriodicJob]:
        with self._lock:
            return list(self._jobs.values())

    def run_pending(self) -> List[str]:
        """Run every job that is due; returns the names of the jobs run.

        A failing job is logged and rescheduled; it never stops the others.
        """
        now = self._clock.now()
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_run <= now]

        ran = []
        for job in due:
            try:
                job.action()
            except Exception as e:
                job.failures += 1
                job.last_error = str(e)
                log.exception("scheduler.job_failed", job=job.name)
            job.runs += 1
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    def run_now(self, name: str) -> None:
        """Run one job immediately, outside its schedule."""
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}")
        job.action()

    def start(self) -> None:
        """Run jobs on a daemon thread until stop() is called."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ai-route-guard-scheduler", daemon=True)
        self._thread.start()
        log.info("scheduler.started", jobs=[job.name for job in self.jobs()])

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the background thread to exit and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("scheduler.stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self._poll_seconds)


class KeyedLocks:
    """One lock per key, created on first use.

    Callers discard a key once nothing will lock it again, so the map only
    holds live keys.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
