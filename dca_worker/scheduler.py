"""Dispatch due jobs onto a bounded pool and record how each run ended."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from .models import Job, parse_interval
from .store import JobStore

LOGGER = logging.getLogger(__name__)

JobRunner = Callable[[Job], Awaitable[object]]


@dataclass
class RetryPolicy:
    attempts: int = 1
    backoff: float = 5.0

    def delay(self, attempt: int) -> float:
        return self.backoff * (2 ** (attempt - 1))


def is_retryable(error: BaseException) -> bool:
    """Only failures flagged as raised before submission may be re-run at once."""

    return bool(getattr(error, "retryable", False))


class JobDispatcher:
    """Run at most one occurrence of each job at a time.

    Once a run ends the job is marked and saved: ``next_run_at`` advances by
    the schedule interval from the run's start whatever the outcome, so a
    failed purchase waits for its next slot rather than looping.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        concurrency: int,
        retry: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("Concurrency must be positive")
        self._jobs = jobs
        self._slots = asyncio.Semaphore(concurrency)
        self._retry = retry or RetryPolicy()
        self._clock = clock
        self._running: Dict[str, asyncio.Task[None]] = {}
        self._failures: Dict[str, BaseException] = {}

    def dispatch(self, job: Job, runner: JobRunner) -> bool:
        """Schedule ``runner(job)`` unless ``job`` already has a run in flight."""

        if job.id in self._running:
            LOGGER.debug("Job %s is still running, skipping", job.id)
            return False
        self._failures.pop(job.id, None)
        task = asyncio.get_running_loop().create_task(self._execute(job, runner))
        self._running[job.id] = task
        task.add_done_callback(lambda _task, job_id=job.id: self._running.pop(job_id, None))
        return True

    async def _attempt(self, job: Job, runner: JobRunner) -> Optional[BaseException]:
        attempt = 1
        while True:
            try:
                async with self._slots:
                    await runner(job)
                return None
            except Exception as exc:
                if attempt >= self._retry.attempts or not is_retryable(exc):
                    return exc
                delay = self._retry.delay(attempt)
                LOGGER.info("Retrying job %s in %.1fs after: %s", job.id, delay, exc)
                attempt += 1
                await asyncio.sleep(delay)

    async def _execute(self, job: Job, runner: JobRunner) -> None:
        started_at = self._clock()
        error = await self._attempt(job, runner)
        if error is not None:
            LOGGER.warning("Job %s failed: %s", job.id, error)
            self._failures[job.id] = error
        try:
            await asyncio.to_thread(self._mark, job, started_at, error)
        except Exception as exc:
            LOGGER.error("Could not record the outcome of job %s: %s", job.id, exc)

    def _mark(self, job: Job, started_at: float, error: Optional[BaseException]) -> None:
        job.last_run_at = started_at
        job.last_finished_at = self._clock()
        if error is None:
            job.fail_count = 0
            job.last_error = None
        else:
            job.fail_count += 1
            job.last_error = str(error)
        job.next_run_at = started_at + parse_interval(job.params.purchase_interval_human).total_seconds()
        self._jobs.save(job)

    async def drain(self) -> None:
        """Wait for every dispatched run, including ones started meanwhile."""

        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    @property
    def failures(self) -> Dict[str, BaseException]:
        """Errors of the most recent failed run per job id."""

        return dict(self._failures)
