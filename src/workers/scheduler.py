"""
Job scheduling: discovery fan-out, ingestion batching, retry/backoff and housekeeping.

Jobs live in the event store so any number of workers can claim them. A
failed attempt is requeued with exponential backoff until `max_attempts` is
reached; only then does the job become terminally `failed`. Failures that
retrying cannot fix (bad credentials, invalid descriptors) fail immediately.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from src.core.config import settings
from src.core.domain import Category, IngestionJob, JobStatus, JobType, utc_now
from src.core.errors import (
    CircuitOpenError,
    PermanentError,
    PersistenceUnavailableError,
    RecordRejectedError,
    RetryableError,
    SourceRegistrationError,
    describe_failure,
)
from src.core.observability import (
    record_job_completion,
    record_job_retry,
    record_jobs_purged,
    record_queue_depth,
)
from src.core.retry_policy import RetryPolicy
from src.ingestion.source_gateway import DiscoveryResult

if TYPE_CHECKING:
    from src.ingestion.connector_registry import ConnectorRegistry
    from src.ingestion.source_gateway import SourceGateway
    from src.processing.pipeline_orchestrator import PipelineOrchestrator
    from src.storage.repository import EventStore

logger = structlog.get_logger(__name__)

TRAFFIC_PRIORITIES = {"high": 10, "medium": 5, "low": 1}
INGESTION_PRIORITY = 8
DEFAULT_TRAFFIC_LEVEL = "low"

NON_RETRYABLE_ERRORS = (PermanentError, SourceRegistrationError, RecordRejectedError)


@dataclass(slots=True)
class JobOutcome:
    """What happened to one claimed job."""

    job_id: UUID
    job_type: JobType
    status: JobStatus
    requeued: bool = False
    retry_delay_seconds: float | None = None
    result: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    message: str | None = None


def discovery_priority(location: str | None) -> int:
    """Priority for a discovery job from the target city's traffic level."""
    if not location:
        return TRAFFIC_PRIORITIES[DEFAULT_TRAFFIC_LEVEL]
    level = settings.CITY_TRAFFIC_LEVELS.get(location.strip().lower(), DEFAULT_TRAFFIC_LEVEL)
    return TRAFFIC_PRIORITIES.get(level, TRAFFIC_PRIORITIES[DEFAULT_TRAFFIC_LEVEL])


class JobScheduler:
    """Creates jobs, executes claimed jobs and applies the failure policy."""

    def __init__(
        self,
        store: EventStore,
        *,
        registry: ConnectorRegistry,
        gateway: SourceGateway,
        orchestrator: PipelineOrchestrator,
        retry_policy: RetryPolicy | None = None,
        max_attempts: int | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=settings.RETRY_INITIAL_DELAY_SECONDS,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )
        self.batch_size = batch_size or settings.INGESTION_BATCH_SIZE
        self._clock = clock or utc_now

    # -------------------------------------------------------------------------
    # Job creation
    # -------------------------------------------------------------------------

    async def trigger_discovery(
        self,
        sources: Sequence[str] | None = None,
        locations: Sequence[str] | None = None,
        categories: Sequence[str | None] | None = None,
        *,
        keyword: str | None = None,
    ) -> list[UUID]:
        """
        Enqueue one discovery job per source x location x category.

        Descriptors are built and validated up front so a bad target is
        rejected here instead of failing later inside a worker.
        """
        source_names = list(sources) if sources else [item.name for item in self.registry.enabled()]
        target_locations = list(locations) if locations else list(settings.DISCOVERY_DEFAULT_LOCATIONS)
        target_categories: list[str | None] = list(categories) if categories else [None]

        jobs: list[IngestionJob] = []
        for source in source_names:
            connector = self.registry.get(source)
            if not connector.config.enabled:
                msg = f"Source '{source}' is disabled"
                raise SourceRegistrationError(msg)
            for location in target_locations:
                for category in target_categories:
                    category_value = Category(category).value if category else None
                    connector.build_descriptor(
                        location=location,
                        category=category_value,
                        keyword=keyword,
                    )
                    jobs.append(
                        IngestionJob(
                            job_type=JobType.DISCOVERY,
                            target={
                                "source": source,
                                "location": location,
                                "category": category_value,
                                "keyword": keyword,
                            },
                            priority=discovery_priority(location),
                            max_attempts=self.max_attempts,
                        )
                    )

        job_ids = [await self.store.enqueue_job(job) for job in jobs]
        logger.info(
            "Discovery jobs enqueued",
            jobs=len(job_ids),
            sources=source_names,
            locations=target_locations,
        )
        return job_ids

    async def enqueue_ingestion(self, raw_event_ids: Sequence[UUID], *, source: str) -> list[UUID]:
        """Split stored raw events into ingestion jobs of at most `batch_size`."""
        job_ids: list[UUID] = []
        ids = list(raw_event_ids)
        for start in range(0, len(ids), self.batch_size):
            chunk = ids[start : start + self.batch_size]
            job_ids.append(
                await self.store.enqueue_job(
                    IngestionJob(
                        job_type=JobType.INGESTION,
                        target={"source": source, "raw_event_ids": [str(item) for item in chunk]},
                        priority=INGESTION_PRIORITY,
                        max_attempts=self.max_attempts,
                    )
                )
            )
        return job_ids

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run_job(self, job: IngestionJob) -> dict[str, Any]:
        if job.job_type == JobType.DISCOVERY:
            return await self._run_discovery(job)
        return await self._run_ingestion(job)

    async def complete(self, job: IngestionJob, result: dict[str, Any], *, duration: float) -> JobOutcome:
        assert job.id is not None  # nosec B101
        await self.store.mark_job_status(job.id, JobStatus.COMPLETED, result=result)
        record_job_completion(
            job_type=job.job_type.value,
            status=JobStatus.COMPLETED.value,
            discovered=int(result.get("discovered", 0)),
            processed=int(result.get("processed", 0)),
            saved=int(result.get("saved", 0)),
            duplicates=int(result.get("duplicates", 0)),
            errors=int(result.get("errors", 0)),
            duration_seconds=duration,
        )
        logger.info(
            "Job completed",
            job_id=str(job.id),
            job_type=job.job_type.value,
            attempts=job.attempts,
            duration_seconds=round(duration, 3),
        )
        return JobOutcome(
            job_id=job.id,
            job_type=job.job_type,
            status=JobStatus.COMPLETED,
            result=result,
        )

    async def handle_failure(
        self,
        job: IngestionJob,
        exc: BaseException,
        *,
        duration: float = 0.0,
    ) -> JobOutcome:
        """Requeue with backoff while attempts remain; otherwise fail terminally."""
        assert job.id is not None  # nosec B101
        failure = describe_failure(exc)
        retryable = not isinstance(exc, NON_RETRYABLE_ERRORS)
        attempts_left = job.attempts < job.max_attempts

        if retryable and attempts_left:
            delay = self.retry_delay(job, exc)
            await self.store.requeue_job(
                job.id,
                available_at=self._clock() + timedelta(seconds=delay),
                error=failure["message"],
                reason=failure["reason"],
            )
            record_job_retry(reason=failure["reason"])
            logger.warning(
                "Job attempt failed; requeued",
                job_id=str(job.id),
                job_type=job.job_type.value,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                reason=failure["reason"],
                retry_in_seconds=round(delay, 3),
            )
            return JobOutcome(
                job_id=job.id,
                job_type=job.job_type,
                status=JobStatus.PENDING,
                requeued=True,
                retry_delay_seconds=delay,
                reason=failure["reason"],
                message=failure["message"],
            )

        reason = failure["reason"]
        message = failure["message"]
        if retryable:
            message = f"{message} (gave up after {job.attempts} attempts)"
        await self.store.mark_job_status(
            job.id,
            JobStatus.FAILED,
            error=message,
            reason=reason,
            result={"reason": reason, "message": message, "attempts": job.attempts},
        )
        record_job_completion(
            job_type=job.job_type.value,
            status=JobStatus.FAILED.value,
            errors=1,
            duration_seconds=duration,
        )
        logger.error(
            "Job failed terminally",
            job_id=str(job.id),
            job_type=job.job_type.value,
            attempts=job.attempts,
            reason=reason,
        )
        return JobOutcome(
            job_id=job.id,
            job_type=job.job_type,
            status=JobStatus.FAILED,
            reason=reason,
            message=message,
        )

    def retry_delay(self, job: IngestionJob, exc: BaseException) -> float:
        hint: float | None = None
        if isinstance(exc, RetryableError):
            hint = exc.retry_after
        elif isinstance(exc, CircuitOpenError):
            hint = exc.retry_in
        elif isinstance(exc, PersistenceUnavailableError):
            hint = settings.STORE_UNAVAILABLE_BACKOFF_SECONDS
        return self.retry_policy.delay_with_hint(max(0, job.attempts - 1), hint)

    async def _run_discovery(self, job: IngestionJob) -> dict[str, Any]:
        source = str(job.target["source"])
        connector = self.registry.get(source)
        descriptor = connector.build_descriptor(
            location=job.target.get("location"),
            category=job.target.get("category"),
            keyword=job.target.get("keyword"),
        )
        started = time.perf_counter()
        tally = DiscoveryResult(source=source)
        discovered = 0
        saved = 0
        queued = 0
        ingestion_jobs: list[UUID] = []
        # Each page is handed to ingestion as soon as it is stored. Raw events
        # stored by an earlier failed attempt come back as duplicates, so the
        # link table, not `created`, decides what still needs processing.
        async for page in self.gateway.iter_pages(source, descriptor, result=tally):
            page_ids: list[UUID] = []
            for raw in page.events:
                discovered += 1
                raw_id, created = await self.store.save_raw_event(raw)
                if created:
                    saved += 1
                page_ids.append(raw_id)
            pending = await self.store.find_unlinked_raw_events(page_ids)
            queued += len(pending)
            ingestion_jobs.extend(await self.enqueue_ingestion(pending, source=source))

        return {
            "source": source,
            "discovered": discovered,
            "saved": saved,
            "duplicates": discovered - saved,
            "queued": queued,
            "pages": tally.pages_fetched,
            "truncated": tally.truncated,
            "skipped": dict(tally.skipped),
            "ingestion_jobs": [str(item) for item in ingestion_jobs],
            "duration_seconds": round(time.perf_counter() - started, 3),
        }

    async def _run_ingestion(self, job: IngestionJob) -> dict[str, Any]:
        requested = [UUID(str(item)) for item in job.target.get("raw_event_ids", [])]
        raw_events = await self.store.get_raw_events(requested)
        batch = await self.orchestrator.process_batch(raw_events)
        if batch.held:
            msg = f"{batch.held} processed events are held until the store recovers"
            raise PersistenceUnavailableError(msg)
        result = batch.to_dict()
        result["missing"] = len(requested) - len(raw_events)
        return result

    # -------------------------------------------------------------------------
    # Housekeeping and status
    # -------------------------------------------------------------------------

    async def purge_expired_jobs(self, *, retention_hours: int | None = None) -> int:
        hours = retention_hours or settings.JOB_RETENTION_HOURS
        purged = await self.store.purge_jobs(finished_before=self._clock() - timedelta(hours=hours))
        record_jobs_purged(count=purged)
        logger.info("Purged expired jobs", purged=purged, retention_hours=hours)
        return purged

    async def reap_stale_jobs(self, *, stale_minutes: int | None = None) -> list[JobOutcome]:
        """Treat running jobs nobody finished as timed out (worker crash or kill)."""
        minutes = stale_minutes or settings.JOB_STALE_RUNNING_MINUTES
        stale = await self.store.find_stale_running_jobs(
            started_before=self._clock() - timedelta(minutes=minutes)
        )
        outcomes = []
        for job in stale:
            timeout = TimeoutError(f"Job was still running after {minutes} minutes")
            outcomes.append(await self.handle_failure(job, timeout))
        if outcomes:
            logger.warning("Reaped stale running jobs", count=len(outcomes))
        return outcomes

    async def get_job_status(self, job_id: UUID) -> dict[str, Any] | None:
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        return {
            "id": str(job.id),
            "job_type": job.job_type.value,
            "status": job.status.value,
            "target": job.target,
            "priority": job.priority,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "last_error": (
                {"reason": job.last_error_reason, "message": job.last_error}
                if job.last_error
                else None
            ),
            "result": job.result,
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        }

    async def get_pipeline_health(self) -> dict[str, Any]:
        """Per-source success rate, queue depth and breaker states."""
        counts = await self.store.count_jobs_by_status()
        record_queue_depth(counts=counts)
        rates = self.gateway.success_rates()
        breakers = self.gateway.breaker_states()
        sources = {
            name: {
                "success_rate": round(rates.get(name, 1.0), 4),
                "circuit": breakers.get(name, {"state": "closed"}),
            }
            for name in self.registry.names
        }
        open_circuits = sorted(
            name for name, item in sources.items() if item["circuit"].get("state") == "open"
        )
        return {
            "status": "degraded" if open_circuits or self.orchestrator.held_count else "healthy",
            "queue_depth": counts,
            "held_results": self.orchestrator.held_count,
            "open_circuits": open_circuits,
            "sources": sources,
        }
