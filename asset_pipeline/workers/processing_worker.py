from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import socket
import time
from collections.abc import Awaitable
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar, cast
from uuid import uuid4

from asset_pipeline.core.config import settings
from asset_pipeline.core.redis_client import get_redis
from asset_pipeline.services.pipeline import build_scheduler
from asset_pipeline.services.scheduler import PriorityScheduler


logger = logging.getLogger(__name__)
T = TypeVar("T")
HEARTBEAT_PREFIX = str(
    getattr(settings, "processing_worker_heartbeat_prefix", "processing:workers:heartbeat") or "processing:workers:heartbeat"
)
HEARTBEAT_TTL_SECONDS = max(10, int(getattr(settings, "processing_worker_heartbeat_ttl_seconds", 30) or 30))
HEARTBEAT_FILE = str(
    getattr(settings, "processing_worker_heartbeat_file", "/tmp/processing-worker-heartbeat.json")
    or "/tmp/processing-worker-heartbeat.json"
)
STATS_LOG_SECONDS = 30.0
MAX_IDLE_SLEEP_SECONDS = 5.0


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(worker_id: str, processed_count: int) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "app_version": (getattr(settings, "app_version", "") or "").strip() or None,
        "processed_count": processed_count,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
    }


def _write_heartbeat_file(payload: dict[str, object]) -> None:
    try:
        target = Path(HEARTBEAT_FILE)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_suffix(f"{target.suffix}.tmp")
        temp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
        temp.replace(target)
    except OSError:
        logger.exception("processing_worker_heartbeat_file_failed")


async def _publish_heartbeat(redis, *, worker_id: str, processed_count: int = 0) -> None:
    payload = _heartbeat_payload(worker_id, processed_count)
    _write_heartbeat_file(payload)
    if redis is None:
        return
    key = f"{HEARTBEAT_PREFIX}:{worker_id}"
    await _await_if_needed(
        redis.set(key, json.dumps(payload, separators=(",", ":"), ensure_ascii=False), ex=HEARTBEAT_TTL_SECONDS)
    )


async def _run_worker_loop(
    scheduler: PriorityScheduler,
    *,
    redis,
    worker_id: str,
    idle_sleep: float,
    heartbeat_interval: float,
) -> None:
    last_heartbeat = 0.0
    last_stats_log = time.monotonic()
    processed_count = 0
    while True:
        try:
            now = time.monotonic()
            if now - last_heartbeat >= heartbeat_interval:
                await _publish_heartbeat(redis, worker_id=worker_id, processed_count=processed_count)
                last_heartbeat = now
            if redis is not None:
                await scheduler.restore_queues()
            processed = await scheduler.drive()
            processed_count += processed
            if now - last_stats_log >= STATS_LOG_SECONDS:
                stats = await scheduler.get_queue_stats()
                logger.info(
                    "processing_worker_stats",
                    extra={"worker_id": worker_id, "processed_count": processed_count, **stats.model_dump()},
                )
                last_stats_log = now
            if not processed:
                await asyncio.sleep(idle_sleep)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("processing_worker_loop_error", extra={"worker_id": worker_id})
            await asyncio.sleep(idle_sleep)


async def run_processing_worker(
    poll_interval_seconds: float | None = None,
    *,
    scheduler: PriorityScheduler | None = None,
) -> None:
    redis = get_redis()
    scheduler = scheduler or build_scheduler()
    worker_id = _worker_id()
    interval = poll_interval_seconds
    if interval is None:
        interval = float(getattr(settings, "processing_worker_poll_interval_seconds", 2.0) or 2.0)
    idle_sleep = min(MAX_IDLE_SLEEP_SECONDS, max(0.1, float(interval)))
    heartbeat_interval = max(5.0, float(HEARTBEAT_TTL_SECONDS) / 2.0)
    if redis is None:
        logger.warning(
            "processing_worker_degraded_mode_started",
            extra={"worker_id": worker_id, "poll_interval_seconds": idle_sleep},
        )
    else:
        logger.info("processing_worker_started", extra={"worker_id": worker_id})
    try:
        await _run_worker_loop(
            scheduler,
            redis=redis,
            worker_id=worker_id,
            idle_sleep=idle_sleep,
            heartbeat_interval=heartbeat_interval,
        )
    finally:
        await scheduler.aclose()


async def _await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


def main() -> None:  # pragma: no cover
    from asset_pipeline.core.logging_config import configure_logging

    configure_logging(json_logs=bool(getattr(settings, "json_logs", False)))
    asyncio.run(run_processing_worker())


if __name__ == "__main__":  # pragma: no cover
    main()
