"""Recurring background jobs with a per-job overlap guard.

Configured intervals are mapped onto a small set of wall-clock frequencies
(every 1, 5, 10, 15 or 30 minutes, or hourly). Each job fires on the
boundaries of its period; if the previous run is still going when a tick
arrives, that tick is dropped rather than queued.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from satellite_node.services.state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60


@dataclass(frozen=True)
class Frequency:
    """A supported schedule bucket."""

    name: str
    minutes: int

    @property
    def seconds(self) -> int:
        return self.minutes * SECONDS_PER_MINUTE


EVERY_MINUTE = Frequency("every_minute", 1)
EVERY_FIVE_MINUTES = Frequency("every_five_minutes", 5)
EVERY_TEN_MINUTES = Frequency("every_ten_minutes", 10)
EVERY_FIFTEEN_MINUTES = Frequency("every_fifteen_minutes", 15)
EVERY_THIRTY_MINUTES = Frequency("every_thirty_minutes", 30)
HOURLY = Frequency("hourly", 60)

FREQUENCIES = (
    EVERY_MINUTE,
    EVERY_FIVE_MINUTES,
    EVERY_TEN_MINUTES,
    EVERY_FIFTEEN_MINUTES,
    EVERY_THIRTY_MINUTES,
    HOURLY,
)


def frequency_for_interval(interval_seconds: float) -> Frequency:
    """Pick the largest supported bucket not longer than the interval.

    The interval is rounded up to whole minutes first; anything under a
    minute runs every minute.
    """
    minutes = max(1, math.ceil(interval_seconds / SECONDS_PER_MINUTE))
    chosen = EVERY_MINUTE
    for frequency in FREQUENCIES:
        if frequency.minutes <= minutes:
            chosen = frequency
    return chosen


def seconds_until_next_tick(now: float, frequency: Frequency) -> float:
    """Seconds from ``now`` (epoch) to the next boundary of ``frequency``."""
    period = frequency.seconds
    remainder = now % period
    return period - remainder if remainder else float(period)


JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A recurring task and its execution bookkeeping."""

    job_id: str
    interval_seconds: int
    frequency: Frequency
    func: JobFunc
    running: bool = False
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_started_at: float | None = None
    last_finished_at: float | None = None
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "interval_seconds": self.interval_seconds,
            "frequency": self.frequency.name,
            "running": self.running,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_error": self.last_error,
        }


class JobScheduler:
    """Drive registered jobs on wall-clock aligned ticks.

    When a ``store`` is given, each run also takes ``lock:job:<id>`` in it so
    that several processes sharing the store still never overlap.
    """

    def __init__(
        self,
        store: StateStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}
        self._loops: list[asyncio.Task[None]] = []
        self._in_flight: set[asyncio.Task[bool]] = set()
        self._stopping = asyncio.Event()

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    def add_job(self, job_id: str, interval_seconds: int, func: JobFunc) -> ScheduledJob:
        if job_id in self._jobs:
            raise ValueError(f"Job {job_id!r} is already scheduled")
        frequency = frequency_for_interval(interval_seconds)
        job = ScheduledJob(job_id, interval_seconds, frequency, func)
        self._jobs[job_id] = job
        logger.info(
            "Scheduled job %s every %d minute(s) (configured %ss)",
            job_id,
            frequency.minutes,
            interval_seconds,
        )
        return job

    def _lock_key(self, job: ScheduledJob) -> str:
        return f"lock:job:{job.job_id}"

    async def trigger(self, job_id: str) -> bool:
        """Run one invocation of a job unless it is already running.

        Returns:
            True if the job ran (successfully or not), False if the tick was
            skipped by the overlap guard.
        """
        job = self._jobs[job_id]
        if job.running:
            job.skipped += 1
            logger.debug("Skipping %s tick; previous run still in progress", job_id)
            return False

        job.running = True
        token = uuid.uuid4().hex
        if not await asyncio.to_thread(self._acquire, job, token):
            job.running = False
            job.skipped += 1
            logger.debug("Skipping %s tick; another process holds the job lock", job_id)
            return False

        job.last_started_at = self._clock()
        try:
            await job.func()
            job.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.failures += 1
            job.last_error = str(exc) or exc.__class__.__name__
            logger.exception("Scheduled job %s failed", job_id)
        finally:
            job.runs += 1
            job.last_finished_at = self._clock()
            try:
                await asyncio.to_thread(self._release, job, token)
            finally:
                job.running = False
        return True

    def _acquire(self, job: ScheduledJob, token: str) -> bool:
        if self.store is None:
            return True
        try:
            return self.store.add(self._lock_key(job), token, ttl=job.frequency.seconds)
        except StateStoreError as exc:
            logger.warning("Could not take lock for %s: %s", job.job_id, exc)
            return False

    def _release(self, job: ScheduledJob, token: str) -> None:
        if self.store is None:
            return
        try:
            released = self.store.delete_if_equals(self._lock_key(job), token)
        except StateStoreError as exc:
            logger.warning("Could not release lock for %s: %s", job.job_id, exc)
            return
        if not released:
            logger.warning(
                "Lock for %s expired before the run finished; left the current holder's lock",
                job.job_id,
            )

    async def start(self) -> None:
        """Start one tick loop per registered job."""
        if self._loops:
            return
        self._stopping.clear()
        for job_id in self._jobs:
            self._loops.append(asyncio.create_task(self._run(job_id)))

    async def stop(self) -> None:
        """Stop ticking and wait for in-flight runs to finish."""
        self._stopping.set()
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _run(self, job_id: str) -> None:
        frequency = self._jobs[job_id].frequency
        while not self._stopping.is_set():
            delay = seconds_until_next_tick(self._clock(), frequency)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass

            task = asyncio.create_task(self.trigger(job_id))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    def status(self) -> dict[str, Any]:
        return {job_id: job.as_dict() for job_id, job in self._jobs.items()}
