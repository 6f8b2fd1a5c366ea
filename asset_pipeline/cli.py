from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from asset_pipeline.core.config import settings
from asset_pipeline.core.logging_config import configure_logging
from asset_pipeline.core.redis_client import close_redis
from asset_pipeline.models.processing import ProcessingJobType, ProcessingPriority
from asset_pipeline.services.pipeline import build_scheduler
from asset_pipeline.services.scheduler import PriorityScheduler


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def _parse_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("metadata must be a JSON object")
    return value


async def enqueue_job(
    *,
    asset_id: str,
    organization_id: str,
    job_type: ProcessingJobType,
    priority: ProcessingPriority,
    metadata: dict[str, Any],
    scheduler: PriorityScheduler | None = None,
) -> str:
    scheduler = scheduler or build_scheduler()
    try:
        await scheduler.restore_queues()
        return await scheduler.enqueue(asset_id, organization_id, job_type, metadata, priority)
    finally:
        await close_redis()


async def show_status(job_id: str, *, scheduler: PriorityScheduler | None = None) -> dict[str, Any] | None:
    scheduler = scheduler or build_scheduler()
    try:
        job = await scheduler.get_job_status(job_id)
        return job.model_dump(mode="json") if job is not None else None
    finally:
        await close_redis()


async def cancel(job_id: str, *, scheduler: PriorityScheduler | None = None) -> bool:
    scheduler = scheduler or build_scheduler()
    try:
        await scheduler.restore_queues()
        return await scheduler.cancel_job(job_id)
    finally:
        await close_redis()


async def queue_stats(*, scheduler: PriorityScheduler | None = None) -> dict[str, Any]:
    scheduler = scheduler or build_scheduler()
    try:
        await scheduler.restore_queues()
        stats = await scheduler.get_queue_stats()
        return stats.model_dump()
    finally:
        await close_redis()


async def _init_db() -> None:
    from asset_pipeline.db.session import init_models

    await init_models()


def _add_job_commands(subparsers) -> None:
    enqueue = subparsers.add_parser("enqueue", help="Queue a processing job for an asset")
    enqueue.add_argument("--asset-id", required=True, help="Asset id")
    enqueue.add_argument("--organization-id", required=True, help="Owning organization id")
    enqueue.add_argument("--type", required=True, choices=[item.value for item in ProcessingJobType], help="Job type")
    enqueue.add_argument(
        "--priority",
        default=ProcessingPriority.normal.name,
        choices=[item.name for item in ProcessingPriority],
        help="Queue tier (default: normal)",
    )
    enqueue.add_argument("--metadata", default=None, help="Job metadata as a JSON object")

    status = subparsers.add_parser("status", help="Show a job record")
    status.add_argument("job_id")

    cancel_cmd = subparsers.add_parser("cancel", help="Cancel a queued or running job")
    cancel_cmd.add_argument("job_id")

    subparsers.add_parser("stats", help="Show job counts by status and queue lengths")


def _add_worker_commands(subparsers) -> None:
    worker = subparsers.add_parser("worker", help="Run the processing worker loop")
    worker.add_argument("--poll-interval", type=float, default=None, help="Idle sleep between cycles in seconds")

    subparsers.add_parser("init-db", help="Create the asset table")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Asset processing pipeline")
    subparsers = parser.add_subparsers(dest="command")
    _add_job_commands(subparsers)
    _add_worker_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace, parser: argparse.ArgumentParser) -> bool:
    if args.command == "enqueue":
        try:
            metadata = _parse_metadata(args.metadata)
        except ValueError as exc:
            parser.error(f"--metadata: {exc}")
        job_id = asyncio.run(
            enqueue_job(
                asset_id=args.asset_id,
                organization_id=args.organization_id,
                job_type=ProcessingJobType(args.type),
                priority=ProcessingPriority[args.priority],
                metadata=metadata,
            )
        )
        _print_json({"job_id": job_id})
        return True

    if args.command == "status":
        job = asyncio.run(show_status(args.job_id))
        _print_json(job if job is not None else {"job_id": args.job_id, "found": False})
        return True

    if args.command == "cancel":
        _print_json({"job_id": args.job_id, "cancelled": asyncio.run(cancel(args.job_id))})
        return True

    if args.command == "stats":
        _print_json(asyncio.run(queue_stats()))
        return True

    if args.command == "worker":
        from asset_pipeline.workers.processing_worker import run_processing_worker

        asyncio.run(run_processing_worker(args.poll_interval))
        return True

    if args.command == "init-db":
        asyncio.run(_init_db())
        print("Database initialized")
        return True

    return False


def main() -> None:
    configure_logging(json_logs=bool(getattr(settings, "json_logs", False)))
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args, parser):
        parser.print_help()


if __name__ == "__main__":  # pragma: no cover
    main()
