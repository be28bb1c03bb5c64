"""
Bounded asyncio worker pool pulling jobs from the store's priority queue.

Each worker runs one job at a time under a cooperative timeout. When the
store becomes unavailable every worker stops claiming, one of them checks
the store with backoff, and once it answers the pipeline's held results are
flushed before claiming resumes.
"""

from __future__ import annotations

import asyncio
import socket
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from src.core.config import settings
from src.core.domain import IngestionJob, JobStatus
from src.core.errors import PersistenceUnavailableError

if TYPE_CHECKING:
    from src.workers.scheduler import JobOutcome, JobScheduler

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class PoolStats:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    requeued: int = 0
    store_outages: int = 0

    def add(self, outcome: JobOutcome) -> None:
        if outcome.status == JobStatus.COMPLETED:
            self.completed += 1
        elif outcome.status == JobStatus.FAILED:
            self.failed += 1
        elif outcome.requeued:
            self.requeued += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "failed": self.failed,
            "requeued": self.requeued,
            "store_outages": self.store_outages,
        }


class WorkerPool:
    """Run `size` workers until stopped or, with `drain=True`, until the queue is empty."""

    def __init__(
        self,
        scheduler: JobScheduler,
        *,
        size: int | None = None,
        job_timeout_seconds: float | None = None,
        poll_interval_seconds: float = 1.0,
        store_backoff_seconds: float | None = None,
        name: str | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.size = size or settings.WORKER_POOL_SIZE
        self.job_timeout_seconds = job_timeout_seconds or settings.JOB_TIMEOUT_SECONDS
        self.poll_interval_seconds = poll_interval_seconds
        self.store_backoff_seconds = (
            store_backoff_seconds or settings.STORE_UNAVAILABLE_BACKOFF_SECONDS
        )
        self.name = name or f"{socket.gethostname()}:{id(self):x}"
        self.stats = PoolStats()
        self._active = 0
        self._store_available = asyncio.Event()
        self._store_available.set()
        self._recovery_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()
        self._store_available.set()

    async def run(self, *, drain: bool = True) -> PoolStats:
        workers = [
            asyncio.create_task(self._worker(f"{self.name}-{index}", drain=drain))
            for index in range(self.size)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Worker pool stopped", pool=self.name, **self.stats.to_dict())
        return self.stats

    async def _worker(self, worker_id: str, *, drain: bool) -> None:
        while not self._stop.is_set():
            if not self._store_available.is_set():
                await self._wait_for_store()
                continue
            try:
                job = await self.scheduler.store.claim_next_job(worker_id)
            except PersistenceUnavailableError:
                self._mark_store_unavailable()
                continue
            if job is None:
                if drain and self._active == 0:
                    return
                await asyncio.sleep(self.poll_interval_seconds)
                continue

            self.stats.claimed += 1
            self._active += 1
            try:
                outcome = await self.execute(job)
            finally:
                self._active -= 1
            if outcome is not None:
                self.stats.add(outcome)

    async def execute(self, job: IngestionJob) -> JobOutcome | None:
        """
        Run one claimed job with the per-job timeout and apply the failure policy.

        Returns None when the outcome could not be recorded because the store
        went away; the stale-job reaper requeues such jobs later.
        """
        started = time.perf_counter()
        log = logger.bind(job_id=str(job.id), job_type=job.job_type.value, attempt=job.attempts)
        log.info("Job started", target=job.target)
        try:
            try:
                async with asyncio.timeout(self.job_timeout_seconds):
                    result = await self.scheduler.run_job(job)
            except TimeoutError as exc:
                log.warning("Job timed out", timeout_seconds=self.job_timeout_seconds)
                return await self.scheduler.handle_failure(
                    job, exc, duration=time.perf_counter() - started
                )
            except PersistenceUnavailableError as exc:
                self._mark_store_unavailable()
                return await self.scheduler.handle_failure(
                    job, exc, duration=time.perf_counter() - started
                )
            except Exception as exc:
                log.exception("Job raised")
                return await self.scheduler.handle_failure(
                    job, exc, duration=time.perf_counter() - started
                )
            return await self.scheduler.complete(
                job, result, duration=time.perf_counter() - started
            )
        except PersistenceUnavailableError:
            self._mark_store_unavailable()
            log.warning("Could not record job outcome; store unavailable")
            return None

    def _mark_store_unavailable(self) -> None:
        if self._store_available.is_set():
            self.stats.store_outages += 1
            logger.warning("Store unavailable; pausing job claims", pool=self.name)
        self._store_available.clear()

    async def _wait_for_store(self) -> None:
        """One worker checks the store; the others wait until claims may resume."""
        if self._recovery_lock.locked():
            await self._store_available.wait()
            return
        async with self._recovery_lock:
            while not self._stop.is_set():
                await asyncio.sleep(self.store_backoff_seconds)
                try:
                    await self.scheduler.store.ping()
                    flushed = await self.scheduler.orchestrator.flush_held()
                except PersistenceUnavailableError:
                    logger.info("Store still unavailable", pool=self.name)
                    continue
                logger.info(
                    "Store recovered; resuming job claims",
                    pool=self.name,
                    flushed=flushed.processed,
                    still_held=self.scheduler.orchestrator.held_count,
                )
                self._store_available.set()
                return
