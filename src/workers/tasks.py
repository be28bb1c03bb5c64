"""
Celery tasks for scheduled discovery, queue draining and job housekeeping.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, TypeVar, cast

import redis
import structlog
from celery import shared_task
from celery.signals import task_failure

from src.core.config import settings
from src.core.errors import PersistenceUnavailableError
from src.core.observability import record_worker_error
from src.workers.runtime import build_runtime
from src.workers.worker_pool import WorkerPool

logger = structlog.get_logger(__name__)

DEAD_LETTER_KEY = "celery:dead_letter"
DEAD_LETTER_MAX_ITEMS = 1000

TaskFunc = TypeVar("TaskFunc", bound=Callable[..., Any])


def typed_shared_task(*task_args: Any, **task_kwargs: Any) -> Callable[[TaskFunc], TaskFunc]:
    """
    Typed wrapper around Celery's shared_task decorator.

    Celery decorators are untyped, which conflicts with strict mypy settings.
    """
    decorator = shared_task(*task_args, **task_kwargs)
    return cast("Callable[[TaskFunc], TaskFunc]", decorator)


def _run_async(coro: Coroutine[Any, Any, dict[str, Any]]) -> dict[str, Any]:
    return asyncio.run(coro)


def _push_dead_letter(payload: dict[str, Any]) -> None:
    client: redis.Redis[str] | None = None
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        client.lpush(DEAD_LETTER_KEY, json.dumps(payload, default=str))
        client.ltrim(DEAD_LETTER_KEY, 0, DEAD_LETTER_MAX_ITEMS - 1)
    except redis.RedisError:
        logger.exception("Failed to push dead letter payload")
    finally:
        if client is not None:
            client.close()


def _record_worker_activity(
    *,
    task_name: str,
    status: str,
    error: str | None = None,
) -> None:
    client: redis.Redis[str] | None = None
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        payload = {
            "task": task_name,
            "status": status,
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }
        if error:
            payload["error"] = error[:500]
        client.set(
            settings.WORKER_HEARTBEAT_REDIS_KEY,
            json.dumps(payload),
            ex=max(60, settings.WORKER_HEARTBEAT_TTL_SECONDS),
        )
    except redis.RedisError:
        logger.exception("Failed to record worker heartbeat", task_name=task_name, status=status)
    finally:
        if client is not None:
            client.close()


def _run_task_with_heartbeat(
    *,
    task_name: str,
    runner: Callable[[], dict[str, Any]],
) -> dict[str, Any]:
    _record_worker_activity(task_name=task_name, status="started")
    try:
        result = runner()
    except Exception as exc:
        _record_worker_activity(task_name=task_name, status="failed", error=type(exc).__name__)
        raise
    _record_worker_activity(task_name=task_name, status="ok")
    return result


def _handle_task_failure(
    sender: Any = None,
    task_id: str | None = None,
    exception: BaseException | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
    **_extra: Any,
) -> None:
    request = getattr(sender, "request", None)
    current_retries = int(getattr(request, "retries", 0))

    max_retries_raw = getattr(sender, "max_retries", None)
    max_retries = max_retries_raw if isinstance(max_retries_raw, int) else None

    # Ignore intermediate failures that are still within retry budget.
    if max_retries is not None and current_retries < max_retries:
        return

    payload = {
        "task_name": getattr(sender, "name", "unknown"),
        "task_id": task_id,
        "exception_type": type(exception).__name__ if exception is not None else "unknown",
        "exception_message": str(exception) if exception is not None else "",
        "args": args or (),
        "kwargs": kwargs or {},
        "retries": current_retries,
        "failed_at": datetime.now(tz=UTC).isoformat(),
    }
    record_worker_error(task_name=str(payload["task_name"]))
    _push_dead_letter(payload)


task_failure.connect(_handle_task_failure)


async def _schedule_discovery_async(
    sources: list[str] | None,
    locations: list[str] | None,
    categories: list[str] | None,
) -> dict[str, Any]:
    async with build_runtime() as runtime:
        job_ids = await runtime.scheduler.trigger_discovery(sources, locations, categories)
    return {
        "status": "ok",
        "task": "schedule_discovery",
        "jobs": [str(job_id) for job_id in job_ids],
    }


async def _drain_job_queue_async(pool_size: int | None) -> dict[str, Any]:
    async with build_runtime() as runtime:
        pool = WorkerPool(runtime.scheduler, size=pool_size)
        stats = await pool.run(drain=True)
        health = await runtime.scheduler.get_pipeline_health()
    return {
        "status": "ok",
        "task": "drain_job_queue",
        **stats.to_dict(),
        "queue_depth": health["queue_depth"],
    }


async def _purge_expired_jobs_async() -> dict[str, Any]:
    async with build_runtime() as runtime:
        purged = await runtime.scheduler.purge_expired_jobs()
    return {"status": "ok", "task": "purge_expired_jobs", "purged": purged}


async def _reap_stale_jobs_async() -> dict[str, Any]:
    async with build_runtime() as runtime:
        outcomes = await runtime.scheduler.reap_stale_jobs()
    return {
        "status": "ok",
        "task": "reap_stale_jobs",
        "requeued": sum(1 for item in outcomes if item.requeued),
        "failed": sum(1 for item in outcomes if not item.requeued),
        "job_ids": [str(item.job_id) for item in outcomes],
    }


@typed_shared_task(name="workers.schedule_discovery")
def schedule_discovery(
    sources: list[str] | None = None,
    locations: list[str] | None = None,
    categories: list[str] | None = None,
) -> dict[str, Any]:
    """Enqueue discovery jobs for every enabled source and configured location."""

    def _runner() -> dict[str, Any]:
        result = _run_async(_schedule_discovery_async(sources, locations, categories))
        logger.info("Scheduled discovery", jobs=len(result["jobs"]))
        return result

    return _run_task_with_heartbeat(task_name="workers.schedule_discovery", runner=_runner)


@typed_shared_task(
    name="workers.drain_job_queue",
    autoretry_for=(PersistenceUnavailableError, ConnectionError, TimeoutError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
)
def drain_job_queue(pool_size: int | None = None) -> dict[str, Any]:
    """Run a worker pool until no claimable job is left."""

    def _runner() -> dict[str, Any]:
        logger.info("Starting queue drain", pool_size=pool_size or settings.WORKER_POOL_SIZE)
        result = _run_async(_drain_job_queue_async(pool_size))
        logger.info(
            "Finished queue drain",
            claimed=result["claimed"],
            completed=result["completed"],
            failed=result["failed"],
            requeued=result["requeued"],
        )
        return result

    return _run_task_with_heartbeat(task_name="workers.drain_job_queue", runner=_runner)


@typed_shared_task(name="workers.purge_expired_jobs")
def purge_expired_jobs() -> dict[str, Any]:
    """Delete finished jobs older than the retention window."""
    return _run_task_with_heartbeat(
        task_name="workers.purge_expired_jobs",
        runner=lambda: _run_async(_purge_expired_jobs_async()),
    )


@typed_shared_task(name="workers.reap_stale_jobs")
def reap_stale_jobs() -> dict[str, Any]:
    """Apply the timeout policy to jobs whose worker disappeared."""
    return _run_task_with_heartbeat(
        task_name="workers.reap_stale_jobs",
        runner=lambda: _run_async(_reap_stale_jobs_async()),
    )


@typed_shared_task(name="workers.ping")
def ping() -> dict[str, Any]:
    """Simple task to verify worker is up and processing jobs."""

    def _runner() -> dict[str, str]:
        return {
            "status": "ok",
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }

    return _run_task_with_heartbeat(
        task_name="workers.ping",
        runner=_runner,
    )
