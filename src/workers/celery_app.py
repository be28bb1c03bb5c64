"""
Celery application and periodic scheduling configuration.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from celery import Celery

from src.core.config import settings


def _build_beat_schedule() -> dict[str, dict[str, Any]]:
    return {
        "schedule-discovery": {
            "task": "workers.schedule_discovery",
            "schedule": timedelta(minutes=max(1, settings.DISCOVERY_INTERVAL_MINUTES)),
        },
        "drain-job-queue": {
            "task": "workers.drain_job_queue",
            "schedule": timedelta(minutes=max(1, settings.QUEUE_DRAIN_INTERVAL_MINUTES)),
        },
        "purge-expired-jobs": {
            "task": "workers.purge_expired_jobs",
            "schedule": timedelta(hours=max(1, settings.JOB_PURGE_INTERVAL_HOURS)),
        },
        "reap-stale-jobs": {
            "task": "workers.reap_stale_jobs",
            "schedule": timedelta(minutes=max(1, settings.JOB_STALE_RUNNING_MINUTES)),
        },
    }


celery_app = Celery("event_ingest")
celery_app.conf.update(
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    timezone="UTC",
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_routes={
        "workers.schedule_discovery": {"queue": "scheduling"},
        "workers.purge_expired_jobs": {"queue": "scheduling"},
        "workers.reap_stale_jobs": {"queue": "scheduling"},
        "workers.drain_job_queue": {"queue": "ingestion"},
        "workers.ping": {"queue": "default"},
    },
    broker_connection_retry_on_startup=True,
    worker_prefetch_multiplier=1,
    beat_schedule=_build_beat_schedule(),
)

celery_app.autodiscover_tasks(["src.workers"])
