from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from src.core.domain import IngestionJob, JobStatus, JobType
from src.core.errors import PersistenceUnavailableError
from src.core.retry_policy import RetryPolicy
from src.storage.memory_store import InMemoryEventStore
from src.workers.scheduler import JobScheduler
from src.workers.worker_pool import WorkerPool

pytestmark = pytest.mark.unit


class _Orchestrator:
    def __init__(self, *, delay: float = 0.0, store: InMemoryEventStore | None = None) -> None:
        self.delay = delay
        self.store = store
        self.held_count = 0
        self.flushes = 0

    async def process_batch(self, raw_events: list[Any]) -> SimpleNamespace:
        await asyncio.sleep(self.delay)
        if self.store is not None:
            self.store.available = False
            msg = "Event store is unavailable"
            raise PersistenceUnavailableError(msg)
        return SimpleNamespace(held=0, to_dict=lambda: {"processed": len(raw_events)})

    async def flush_held(self) -> SimpleNamespace:
        self.flushes += 1
        return SimpleNamespace(processed=2)


def _pool(
    store: InMemoryEventStore,
    orchestrator: _Orchestrator,
    **kwargs: Any,
) -> WorkerPool:
    scheduler = JobScheduler(
        store,
        registry=SimpleNamespace(names=[]),
        gateway=SimpleNamespace(breaker_states=dict, success_rates=dict),
        orchestrator=orchestrator,
        retry_policy=RetryPolicy(max_attempts=3, initial_delay=60.0, max_delay=60.0, jitter=0.0),
        max_attempts=3,
    )
    return WorkerPool(scheduler, poll_interval_seconds=0.01, name="test", **kwargs)


async def _enqueue_ingestion(store: InMemoryEventStore, count: int) -> list[Any]:
    return [
        await store.enqueue_job(
            IngestionJob(job_type=JobType.INGESTION, target={"raw_event_ids": []}, max_attempts=3)
        )
        for _ in range(count)
    ]


@pytest.mark.asyncio
async def test_drain_runs_every_job_once() -> None:
    store = InMemoryEventStore()
    job_ids = await _enqueue_ingestion(store, 5)

    stats = await _pool(store, _Orchestrator(), size=3).run(drain=True)

    assert stats.claimed == 5
    assert stats.completed == 5
    assert all(store.jobs[job_id].status == JobStatus.COMPLETED for job_id in job_ids)
    assert all(store.jobs[job_id].attempts == 1 for job_id in job_ids)


@pytest.mark.asyncio
async def test_timed_out_job_is_requeued_with_timeout_reason() -> None:
    store = InMemoryEventStore()
    [job_id] = await _enqueue_ingestion(store, 1)

    stats = await _pool(store, _Orchestrator(delay=1.0), size=1, job_timeout_seconds=0.01).run(
        drain=True
    )

    assert stats.requeued == 1
    job = store.jobs[job_id]
    assert job.status == JobStatus.PENDING
    assert job.last_error_reason == "job_timeout"


@pytest.mark.asyncio
async def test_store_outage_during_job_pauses_claims() -> None:
    store = InMemoryEventStore()
    await _enqueue_ingestion(store, 1)
    pool = _pool(store, _Orchestrator(store=store), size=1)
    job = await store.claim_next_job("test-0")
    assert job is not None  # nosec B101

    outcome = await pool.execute(job)

    assert outcome is None
    assert pool.stats.store_outages == 1
    assert store.jobs[job.id].status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_recovered_store_flushes_held_results_before_resuming() -> None:
    store = InMemoryEventStore()
    orchestrator = _Orchestrator()
    pool = _pool(store, orchestrator, store_backoff_seconds=0.01)
    pool._mark_store_unavailable()

    await asyncio.wait_for(pool._wait_for_store(), timeout=1.0)

    assert orchestrator.flushes == 1
    assert pool.stats.store_outages == 1


@pytest.mark.asyncio
async def test_stop_ends_non_draining_pool() -> None:
    store = InMemoryEventStore()
    pool = _pool(store, _Orchestrator(), size=2)

    runner = asyncio.create_task(pool.run(drain=False))
    await asyncio.sleep(0.05)
    pool.stop()
    stats = await asyncio.wait_for(runner, timeout=1.0)

    assert stats.claimed == 0
