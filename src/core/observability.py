"""
Prometheus metrics registry and helper recorders.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

JOB_COMPLETIONS_TOTAL = Counter(
    "ingestion_job_completions_total",
    "Ingestion job completions by job type and final status.",
    ["job_type", "status"],
)
JOB_EVENTS_TOTAL = Counter(
    "ingestion_job_events_total",
    "Per-job event counts (discovered/processed/saved/duplicates/errors).",
    ["job_type", "kind"],
)
JOB_DURATION_SECONDS_TOTAL = Counter(
    "ingestion_job_duration_seconds_total",
    "Cumulative job run time by job type.",
    ["job_type"],
)
JOB_RETRIES_TOTAL = Counter(
    "ingestion_job_retries_total",
    "Jobs requeued for retry by reason.",
    ["reason"],
)
QUEUE_DEPTH = Gauge(
    "ingestion_queue_depth",
    "Jobs in the queue by status.",
    ["status"],
)
SOURCE_CALLS_TOTAL = Counter(
    "source_calls_total",
    "Connector call outcomes by source.",
    ["source", "outcome"],
)
SOURCE_SUCCESS_RATE = Gauge(
    "source_success_rate",
    "Rolling connector call success rate by source.",
    ["source"],
)
CIRCUIT_BREAKER_STATE = Gauge(
    "source_circuit_breaker_state",
    "Circuit breaker state by source (0=closed, 1=half_open, 2=open).",
    ["source"],
)
PIPELINE_EVENTS_TOTAL = Counter(
    "pipeline_events_total",
    "Per-event pipeline outcomes.",
    ["outcome"],
)
PIPELINE_STAGE_FAILURES_TOTAL = Counter(
    "pipeline_stage_failures_total",
    "Caught per-stage failures by stage.",
    ["stage"],
)
QUALITY_TIER_TOTAL = Counter(
    "quality_tier_total",
    "Quality tier assignments.",
    ["tier"],
)
GEOCODER_LOOKUPS_TOTAL = Counter(
    "geocoder_lookups_total",
    "Geocoder resolutions by result source.",
    ["source"],
)
CLASSIFIER_RESULTS_TOTAL = Counter(
    "classifier_results_total",
    "Classification results by producing source.",
    ["source"],
)
DEDUP_DECISIONS_TOTAL = Counter(
    "dedup_decisions_total",
    "Deduplication decisions (inserted/merged/conflict_retry).",
    ["decision"],
)
JOBS_PURGED_TOTAL = Counter(
    "ingestion_jobs_purged_total",
    "Jobs deleted after the retention window.",
)
WORKER_ERRORS_TOTAL = Counter(
    "worker_errors_total",
    "Celery task failures that exhausted their retry budget.",
    ["task_name"],
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def record_job_completion(
    *,
    job_type: str,
    status: str,
    discovered: int = 0,
    processed: int = 0,
    saved: int = 0,
    duplicates: int = 0,
    errors: int = 0,
    duration_seconds: float = 0.0,
) -> None:
    JOB_COMPLETIONS_TOTAL.labels(job_type=job_type, status=status).inc()
    JOB_EVENTS_TOTAL.labels(job_type=job_type, kind="discovered").inc(max(0, discovered))
    JOB_EVENTS_TOTAL.labels(job_type=job_type, kind="processed").inc(max(0, processed))
    JOB_EVENTS_TOTAL.labels(job_type=job_type, kind="saved").inc(max(0, saved))
    JOB_EVENTS_TOTAL.labels(job_type=job_type, kind="duplicates").inc(max(0, duplicates))
    JOB_EVENTS_TOTAL.labels(job_type=job_type, kind="errors").inc(max(0, errors))
    JOB_DURATION_SECONDS_TOTAL.labels(job_type=job_type).inc(max(0.0, duration_seconds))


def record_job_retry(*, reason: str) -> None:
    JOB_RETRIES_TOTAL.labels(reason=reason).inc()


def record_queue_depth(*, counts: dict[str, int]) -> None:
    for status, count in counts.items():
        QUEUE_DEPTH.labels(status=status).set(max(0, count))


def record_source_call(*, source: str, success: bool, success_rate: float) -> None:
    SOURCE_CALLS_TOTAL.labels(source=source, outcome="success" if success else "failure").inc()
    SOURCE_SUCCESS_RATE.labels(source=source).set(success_rate)


def record_circuit_state(*, source: str, state: str) -> None:
    CIRCUIT_BREAKER_STATE.labels(source=source).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_pipeline_event(*, outcome: str) -> None:
    PIPELINE_EVENTS_TOTAL.labels(outcome=outcome).inc()


def record_stage_failure(*, stage: str) -> None:
    PIPELINE_STAGE_FAILURES_TOTAL.labels(stage=stage).inc()


def record_quality_tier(*, tier: str) -> None:
    QUALITY_TIER_TOTAL.labels(tier=tier).inc()


def record_geocoder_lookup(*, source: str) -> None:
    GEOCODER_LOOKUPS_TOTAL.labels(source=source).inc()


def record_classifier_result(*, source: str) -> None:
    CLASSIFIER_RESULTS_TOTAL.labels(source=source).inc()


def record_dedup_decision(*, decision: str) -> None:
    DEDUP_DECISIONS_TOTAL.labels(decision=decision).inc()


def record_jobs_purged(*, count: int) -> None:
    JOBS_PURGED_TOTAL.inc(max(0, count))


def record_worker_error(*, task_name: str) -> None:
    WORKER_ERRORS_TOTAL.labels(task_name=task_name).inc()
