"""
Wiring of store, connectors, pipeline and scheduler for one process.

Celery tasks, the CLI and the API all build their object graph here so they
share the same configuration and cleanup rules.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog

from src.core.config import settings
from src.core.source_health import SourceHealth, build_source_health
from src.ingestion.connector_registry import ConnectorRegistry
from src.ingestion.source_gateway import SourceGateway
from src.processing.pipeline_orchestrator import PipelineOrchestrator
from src.storage.repository import EventStore
from src.workers.scheduler import JobScheduler

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Runtime:
    store: EventStore
    registry: ConnectorRegistry
    gateway: SourceGateway
    orchestrator: PipelineOrchestrator
    scheduler: JobScheduler


def build_store() -> EventStore:
    if settings.EVENT_STORE_BACKEND == "memory":
        from src.storage.memory_store import InMemoryEventStore

        return InMemoryEventStore()
    from src.storage.repository import SqlAlchemyEventStore

    return SqlAlchemyEventStore()


@asynccontextmanager
async def build_runtime(
    *,
    store: EventStore | None = None,
    config_path: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    health: SourceHealth | None = None,
) -> AsyncIterator[Runtime]:
    """Yield a wired runtime; the HTTP client is closed on exit, even on cancellation."""
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=settings.CONNECTOR_REQUEST_TIMEOUT_SECONDS,
        follow_redirects=True,
    )
    try:
        registry = ConnectorRegistry(http_client=client, config_path=config_path)
        registry.load_config()
        event_store = store or build_store()
        gateway = SourceGateway(registry, health=health or build_source_health())
        orchestrator = PipelineOrchestrator(event_store, registry=registry)
        scheduler = JobScheduler(
            event_store,
            registry=registry,
            gateway=gateway,
            orchestrator=orchestrator,
        )
        yield Runtime(
            store=event_store,
            registry=registry,
            gateway=gateway,
            orchestrator=orchestrator,
            scheduler=scheduler,
        )
    finally:
        if owns_client:
            await client.aclose()
        logger.debug("Runtime closed", owns_client=owns_client)
