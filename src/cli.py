"""
Event ingestion command-line interface.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from typing import Any
from uuid import UUID

from src.core.config import settings
from src.core.domain import Category
from src.core.errors import IngestionError
from src.core.logging_setup import configure_logging
from src.workers.runtime import build_runtime
from src.workers.worker_pool import WorkerPool


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


async def _run_discover(
    *,
    sources: list[str],
    locations: list[str],
    categories: list[str],
    keyword: str | None,
    run: bool,
    config_path: str | None,
) -> int:
    async with build_runtime(config_path=config_path) as runtime:
        job_ids = await runtime.scheduler.trigger_discovery(
            sources or None,
            locations or None,
            categories or None,
            keyword=keyword,
        )
        print(f"Enqueued {len(job_ids)} discovery job(s)")
        for job_id in job_ids:
            print(f"  {job_id}")
        if not run:
            return 0
        stats = await WorkerPool(runtime.scheduler).run(drain=True)
        _print_json(stats.to_dict())
        return 1 if stats.failed else 0


async def _run_work(*, size: int | None, drain: bool, config_path: str | None) -> int:
    async with build_runtime(config_path=config_path) as runtime:
        pool = WorkerPool(runtime.scheduler, size=size)
        stats = await pool.run(drain=drain)
        _print_json(stats.to_dict())
    return 0


async def _run_job_status(*, job_id: UUID) -> int:
    async with build_runtime() as runtime:
        status = await runtime.scheduler.get_job_status(job_id)
    if status is None:
        print(f"Job {job_id} not found")
        return 1
    _print_json(status)
    return 0


async def _run_health(*, fail_on_degraded: bool) -> int:
    async with build_runtime() as runtime:
        health = await runtime.scheduler.get_pipeline_health()
    _print_json(health)
    if fail_on_degraded and health["status"] != "healthy":
        return 2
    return 0


async def _run_purge_jobs(*, retention_hours: int | None) -> int:
    async with build_runtime() as runtime:
        purged = await runtime.scheduler.purge_expired_jobs(retention_hours=retention_hours)
    print(f"Purged {purged} job(s)")
    return 0


async def _run_init_db() -> int:
    from src.storage.database import init_db

    await init_db()
    print("Database tables created")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="event-ingest")
    subparsers = parser.add_subparsers(dest="command")

    discover_parser = subparsers.add_parser(
        "discover",
        help="Enqueue discovery jobs for sources, locations and categories.",
    )
    discover_parser.add_argument(
        "--sources",
        default=None,
        help="Comma-separated source names (defaults to every enabled source).",
    )
    discover_parser.add_argument(
        "--locations",
        default=None,
        help="Comma-separated city names (defaults to DISCOVERY_DEFAULT_LOCATIONS).",
    )
    discover_parser.add_argument(
        "--categories",
        default=None,
        help=f"Comma-separated categories: {', '.join(item.value for item in Category)}.",
    )
    discover_parser.add_argument("--keyword", default=None, help="Optional search keyword.")
    discover_parser.add_argument(
        "--run",
        action="store_true",
        help="Drain the queue in-process after enqueueing.",
    )
    discover_parser.add_argument(
        "--config",
        default=None,
        help=f"Connector config path (default: {settings.CONNECTOR_CONFIG_PATH}).",
    )

    work_parser = subparsers.add_parser("work", help="Run a worker pool against the job queue.")
    work_parser.add_argument(
        "--size",
        type=int,
        default=None,
        help=f"Concurrent workers (default: {settings.WORKER_POOL_SIZE}).",
    )
    work_parser.add_argument(
        "--forever",
        action="store_true",
        help="Keep polling instead of exiting once the queue is empty.",
    )
    work_parser.add_argument("--config", default=None, help="Connector config path.")

    job_status_parser = subparsers.add_parser("job-status", help="Show one job's status.")
    job_status_parser.add_argument("job_id", type=UUID, help="Job UUID.")

    health_parser = subparsers.add_parser("health", help="Show pipeline health.")
    health_parser.add_argument(
        "--fail-on-degraded",
        action="store_true",
        help="Return non-zero exit code when the pipeline is degraded.",
    )

    purge_parser = subparsers.add_parser("purge-jobs", help="Delete finished jobs past retention.")
    purge_parser.add_argument(
        "--retention-hours",
        type=int,
        default=None,
        help=f"Override retention (default: {settings.JOB_RETENTION_HOURS}h).",
    )

    subparsers.add_parser("init-db", help="Create database tables without Alembic.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(service="cli")

    try:
        if args.command == "discover":
            return asyncio.run(
                _run_discover(
                    sources=_split_csv(args.sources),
                    locations=_split_csv(args.locations),
                    categories=_split_csv(args.categories),
                    keyword=args.keyword,
                    run=args.run,
                    config_path=args.config,
                )
            )
        if args.command == "work":
            return asyncio.run(
                _run_work(
                    size=args.size,
                    drain=not args.forever,
                    config_path=args.config,
                )
            )
        if args.command == "job-status":
            return asyncio.run(_run_job_status(job_id=args.job_id))
        if args.command == "health":
            return asyncio.run(_run_health(fail_on_degraded=args.fail_on_degraded))
        if args.command == "purge-jobs":
            return asyncio.run(_run_purge_jobs(retention_hours=args.retention_hours))
        if args.command == "init-db":
            return asyncio.run(_run_init_db())
    except IngestionError as exc:
        print(f"error: {exc.reason.value}: {exc.message}")
        return 1
    except ValueError as exc:
        print(f"error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
