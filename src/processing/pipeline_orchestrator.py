"""
Per-event processing pipeline: clean, normalize, geocode, classify,
deduplicate, score and persist.

Stages for one event run strictly in order. A failure inside an optional
stage (geocoding, classification) is recorded on the result and the event
continues with degraded values; a record that cannot be extracted or
normalized is skipped with a typed reason. Results that could not be written
because the store is unavailable are held in memory and retried by
`flush_held`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from src.core.config import settings
from src.core.domain import FieldWarning, NormalizedEvent, QualityTier, RawEvent, utc_now
from src.core.errors import (
    IngestionError,
    PersistenceUnavailableError,
    ReasonCode,
    RecordRejectedError,
    VersionConflictError,
)
from src.core.observability import (
    record_pipeline_event,
    record_quality_tier,
    record_stage_failure,
)
from src.core.source_reputation import DEFAULT_SOURCE_REPUTATION
from src.ingestion.source_connector import ExtractedFields, GenericConnector
from src.processing.classifier import EventClassifier
from src.processing.classifier import STAGE as CLASSIFY_STAGE
from src.processing.data_cleaner import clean_fields
from src.processing.deduplicator import (
    DedupAction,
    Deduplicator,
    canonical_event_id,
    canonicalize,
)
from src.processing.geocoder import STAGE as GEOCODE_STAGE
from src.processing.geocoder import Geocoder
from src.processing.normalizer import EventNormalizer, descriptor_location
from src.processing.quality_scorer import QualityContext, QualityScorer

if TYPE_CHECKING:
    from src.ingestion.connector_registry import ConnectorRegistry
    from src.storage.repository import EventStore

logger = structlog.get_logger(__name__)


class PipelineStage(StrEnum):
    CLEAN = "clean"
    NORMALIZE = "normalize"
    GEOCODE = "geocode"
    CLASSIFY = "classify"
    DEDUPLICATE = "dedup"
    SCORE = "score"
    PERSIST = "persist"


class EventOutcome(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    HELD = "held"


@dataclass(slots=True)
class EventPipelineResult:
    """Structured result for one raw event."""

    raw_event_id: UUID
    source: str
    provider_event_id: str
    outcome: EventOutcome = EventOutcome.SUCCESS
    stage_reached: PipelineStage = PipelineStage.CLEAN
    canonical_id: UUID | None = None
    dedup_action: DedupAction | None = None
    quality_score: float | None = None
    tier: QualityTier | None = None
    warnings: list[FieldWarning] = field(default_factory=list)
    stage_failures: dict[str, str] = field(default_factory=dict)
    reason: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw_event_id": str(self.raw_event_id),
            "source": self.source,
            "provider_event_id": self.provider_event_id,
            "outcome": self.outcome.value,
            "stage_reached": self.stage_reached.value,
            "canonical_id": str(self.canonical_id) if self.canonical_id else None,
            "dedup_action": self.dedup_action.value if self.dedup_action else None,
            "quality_score": self.quality_score,
            "tier": self.tier.value if self.tier else None,
            "warnings": [
                {"field": item.field, "issue": item.issue, "stage": item.stage}
                for item in self.warnings
            ],
            "stage_failures": dict(self.stage_failures),
            "reason": self.reason,
            "message": self.message,
        }


@dataclass(slots=True)
class BatchResult:
    """Counters for one batch; feeds the per-job completion record."""

    processed: int = 0
    saved: int = 0
    inserted: int = 0
    merged: int = 0
    duplicates: int = 0
    partial: int = 0
    failed: int = 0
    held: int = 0
    duration_seconds: float = 0.0
    results: list[EventPipelineResult] = field(default_factory=list)

    def add(self, result: EventPipelineResult) -> None:
        self.processed += 1
        self.results.append(result)
        if result.outcome == EventOutcome.FAILED:
            self.failed += 1
            return
        if result.outcome == EventOutcome.HELD:
            self.held += 1
            return
        if result.outcome == EventOutcome.PARTIAL:
            self.partial += 1
        if result.dedup_action == DedupAction.INSERTED:
            self.inserted += 1
            self.saved += 1
        elif result.dedup_action == DedupAction.MERGED:
            self.merged += 1
            self.duplicates += 1
            self.saved += 1
        elif result.dedup_action == DedupAction.UNCHANGED:
            self.duplicates += 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize into Celery-safe primitives."""
        return {
            "processed": self.processed,
            "saved": self.saved,
            "inserted": self.inserted,
            "merged": self.merged,
            "duplicates": self.duplicates,
            "partial": self.partial,
            "errors": self.failed,
            "held": self.held,
            "duration_seconds": round(self.duration_seconds, 3),
            "failures": [
                {"raw_event_id": str(item.raw_event_id), "reason": item.reason}
                for item in self.results
                if item.outcome == EventOutcome.FAILED
            ],
        }


@dataclass(slots=True)
class _HeldEvent:
    event: NormalizedEvent
    result: EventPipelineResult
    attempts: int = 0


class PipelineOrchestrator:
    """Drive raw events through every processing stage and persist them."""

    def __init__(
        self,
        store: EventStore,
        *,
        registry: ConnectorRegistry | None = None,
        normalizer: EventNormalizer | None = None,
        geocoder: Geocoder | None = None,
        classifier: EventClassifier | None = None,
        deduplicator: Deduplicator | None = None,
        quality_scorer: QualityScorer | None = None,
        quality_context: QualityContext | None = None,
        concurrency: int | None = None,
        max_persist_retries: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.normalizer = normalizer or EventNormalizer()
        self.geocoder = geocoder or Geocoder()
        self.classifier = classifier or EventClassifier()
        self.deduplicator = deduplicator or Deduplicator()
        self.quality_scorer = quality_scorer or QualityScorer()
        self.quality_context = quality_context or QualityContext()
        self.concurrency = concurrency or settings.PIPELINE_CONCURRENCY
        self.max_persist_retries = (
            settings.PIPELINE_PERSIST_RETRIES if max_persist_retries is None else max_persist_retries
        )
        self._clock = clock or utc_now
        self._held: list[_HeldEvent] = []
        # duplicates within one batch must observe each other's writes
        self._dedup_lock = asyncio.Lock()

    @property
    def held_count(self) -> int:
        return len(self._held)

    async def process_batch(self, raw_events: list[RawEvent]) -> BatchResult:
        """Run a batch under the concurrency cap; one bad record never aborts it."""
        started = time.perf_counter()
        batch = BatchResult()
        if not raw_events:
            return batch

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(raw: RawEvent) -> EventPipelineResult:
            async with semaphore:
                return await self.process_event(raw)

        for result in await asyncio.gather(*(_run(raw) for raw in raw_events)):
            batch.add(result)
        batch.duration_seconds = time.perf_counter() - started
        logger.info(
            "Pipeline batch finished",
            processed=batch.processed,
            inserted=batch.inserted,
            merged=batch.merged,
            failed=batch.failed,
            held=batch.held,
            duration_seconds=round(batch.duration_seconds, 3),
        )
        return batch

    async def process_event(self, raw: RawEvent) -> EventPipelineResult:
        """Process one raw event; never raises for per-record or per-stage failures."""
        result = EventPipelineResult(
            raw_event_id=raw.id,
            source=raw.provider,
            provider_event_id=raw.provider_event_id,
        )
        try:
            event = self._prepare(raw, result)
        except (RecordRejectedError, KeyError, TypeError, ValueError) as exc:
            return self._fail(result, exc)

        result.stage_reached = PipelineStage.GEOCODE
        try:
            await self.geocoder.geocode_event(event, city_hint=descriptor_location(raw))
        except Exception as exc:
            self._stage_failed(result, event, PipelineStage.GEOCODE, exc)
            event.warn("coordinates", "geocoding_error", stage=GEOCODE_STAGE)

        result.stage_reached = PipelineStage.CLASSIFY
        try:
            await self.classifier.classify_event(event)
        except Exception as exc:
            self._stage_failed(result, event, PipelineStage.CLASSIFY, exc)
            event.warn("category", "classification_error", stage=CLASSIFY_STAGE)

        return await self._persist(event, result)

    def _prepare(self, raw: RawEvent, result: EventPipelineResult) -> NormalizedEvent:
        extractor = (
            self.registry.extractor_for(raw.provider)
            if self.registry is not None
            else GenericConnector.extract_fields
        )
        fields = extractor(raw.payload)
        if not isinstance(fields, ExtractedFields):
            msg = f"Extractor for '{raw.provider}' returned {type(fields).__name__}"
            raise RecordRejectedError(msg)
        cleaned = clean_fields(fields, now=self._clock())

        result.stage_reached = PipelineStage.NORMALIZE
        reputation = (
            self.registry.reputation_for(raw.provider)
            if self.registry is not None
            else DEFAULT_SOURCE_REPUTATION
        )
        provider_kind = (
            self.registry.provider_for(raw.provider) if self.registry is not None else None
        )
        return self.normalizer.normalize(
            raw,
            cleaned,
            source_reputation=reputation,
            provider_kind=provider_kind,
        )

    async def _persist(
        self,
        event: NormalizedEvent,
        result: EventPipelineResult,
    ) -> EventPipelineResult:
        result.stage_reached = PipelineStage.DEDUPLICATE
        try:
            async with self._dedup_lock:
                outcome = await self.deduplicator.deduplicate(
                    event,
                    self.store,
                    finalize=self._score,
                )
        except PersistenceUnavailableError as exc:
            self._hold(event, result, exc)
            return result
        except VersionConflictError as exc:
            return self._fail(result, exc)
        except Exception as exc:
            self._stage_failed(result, event, PipelineStage.DEDUPLICATE, exc)
            event.warn("provenance", "dedup_skipped", stage=PipelineStage.DEDUPLICATE.value)
            return await self._insert_without_dedup(event, result)

        result.stage_reached = PipelineStage.PERSIST
        result.canonical_id = outcome.canonical_id
        result.dedup_action = outcome.action
        return self._finish(outcome.event, result)

    async def _insert_without_dedup(
        self,
        event: NormalizedEvent,
        result: EventPipelineResult,
    ) -> EventPipelineResult:
        """Persist as its own canonical event when identity resolution failed."""
        result.stage_reached = PipelineStage.PERSIST
        event = canonicalize(event)
        event.id = canonical_event_id(event)
        self._score(event)
        try:
            result.canonical_id = await self.store.upsert_canonical_event(event, expected_version=None)
        except PersistenceUnavailableError as exc:
            self._hold(event, result, exc)
            return result
        except VersionConflictError as exc:
            return self._fail(result, exc)
        result.dedup_action = DedupAction.INSERTED
        return self._finish(event, result)

    def _score(self, event: NormalizedEvent) -> None:
        try:
            self.quality_scorer.apply(event, self.quality_context, as_of=self._clock())
        except (ArithmeticError, TypeError, ValueError) as exc:
            event.quality = None
            event.warn("quality", "scoring_failed", stage=PipelineStage.SCORE.value)
            record_stage_failure(stage=PipelineStage.SCORE.value)
            logger.warning("Quality scoring failed", error=type(exc).__name__)

    def _finish(self, event: NormalizedEvent, result: EventPipelineResult) -> EventPipelineResult:
        result.warnings = list(event.warnings)
        if event.quality is not None:
            result.quality_score = event.quality.score
            result.tier = event.quality.tier
            record_quality_tier(tier=event.quality.tier.value)
        degraded = (
            bool(result.stage_failures)
            or event.has_placeholder_title
            or event.coordinates is None
            or any(item.stage in (GEOCODE_STAGE, CLASSIFY_STAGE) for item in event.warnings)
        )
        result.outcome = EventOutcome.PARTIAL if degraded else EventOutcome.SUCCESS
        record_pipeline_event(outcome=result.outcome.value)
        return result

    def _fail(self, result: EventPipelineResult, exc: Exception) -> EventPipelineResult:
        if isinstance(exc, IngestionError):
            reason, message = exc.reason.value, exc.message
        else:
            reason = ReasonCode.MALFORMED_PAYLOAD.value
            message = f"Record could not be processed ({type(exc).__name__})"
        result.outcome = EventOutcome.FAILED
        result.reason = reason
        result.message = message
        record_pipeline_event(outcome=result.outcome.value)
        logger.warning(
            "Pipeline skipped record",
            source=result.source,
            provider_event_id=result.provider_event_id,
            stage=result.stage_reached.value,
            reason=reason,
        )
        return result

    def _stage_failed(
        self,
        result: EventPipelineResult,
        event: NormalizedEvent,
        stage: PipelineStage,
        exc: Exception,
    ) -> None:
        reason = exc.reason.value if isinstance(exc, IngestionError) else type(exc).__name__
        result.stage_failures[stage.value] = reason
        record_stage_failure(stage=stage.value)
        logger.exception(
            "Pipeline stage failed; continuing with degraded values",
            stage=stage.value,
            source=result.source,
            provider_event_id=result.provider_event_id,
            title=event.title,
        )

    def _hold(
        self,
        event: NormalizedEvent,
        result: EventPipelineResult,
        exc: PersistenceUnavailableError,
    ) -> None:
        result.outcome = EventOutcome.HELD
        result.reason = exc.reason.value
        result.message = exc.message
        self._held.append(_HeldEvent(event=event, result=result))
        record_pipeline_event(outcome=result.outcome.value)
        logger.warning(
            "Store unavailable; holding processed event",
            source=result.source,
            provider_event_id=result.provider_event_id,
            held=len(self._held),
        )

    async def flush_held(self) -> BatchResult:
        """
        Retry persisting held results.

        When the store fails again, the failing result and every result after
        it stay held with one more attempt counted, until they exceed the retry
        budget; their raw events remain stored, so a later ingestion job
        recomputes them.
        """
        batch = BatchResult()
        pending, self._held = self._held, []
        for index, held in enumerate(pending):
            try:
                outcome = await self.deduplicator.deduplicate(
                    held.event,
                    self.store,
                    finalize=self._score,
                )
            except PersistenceUnavailableError as exc:
                remaining = pending[index:]
                for item in remaining:
                    item.attempts += 1
                    item.result.outcome = EventOutcome.HELD
                    item.result.reason = exc.reason.value
                    item.result.message = exc.message
                self._held.extend(
                    item for item in remaining if item.attempts <= self.max_persist_retries
                )
                dropped = [item for item in remaining if item.attempts > self.max_persist_retries]
                for item in dropped:
                    batch.add(self._fail(item.result, exc))
                logger.warning(
                    "Store still unavailable; results remain held",
                    held=len(self._held),
                    dropped=len(dropped),
                )
                return batch
            except VersionConflictError as exc:
                batch.add(self._fail(held.result, exc))
                continue
            held.result.reason = None
            held.result.message = None
            held.result.canonical_id = outcome.canonical_id
            held.result.dedup_action = outcome.action
            held.result.stage_reached = PipelineStage.PERSIST
            batch.add(self._finish(outcome.event, held.result))
        return batch
