"""
Shared FastAPI dependencies.

Centralizes dependency aliases to keep route signatures concise.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from src.storage.repository import EventStore
from src.workers.runtime import Runtime
from src.workers.scheduler import JobScheduler


def get_runtime(request: Request) -> Runtime:
    runtime: Runtime = request.app.state.runtime
    return runtime


def get_scheduler(request: Request) -> JobScheduler:
    return get_runtime(request).scheduler


def get_store(request: Request) -> EventStore:
    return get_runtime(request).store


SchedulerDep = Annotated[JobScheduler, Depends(get_scheduler)]
StoreDep = Annotated[EventStore, Depends(get_store)]
