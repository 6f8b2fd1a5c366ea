from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from asset_pipeline.core.config import settings
from asset_pipeline.core.logging_config import job_id_ctx_var
from asset_pipeline.models.processing import (
    MAX_CONCURRENT_BY_PRIORITY,
    AssetStatus,
    ProcessingJobStatus,
    ProcessingJobType,
    ProcessingPriority,
)
from asset_pipeline.schemas.processing import ProcessingJob, ProcessingResult, QueueStats, build_job_id, utcnow
from asset_pipeline.services.asset_store import AssetStore
from asset_pipeline.services.executor import JobExecutor
from asset_pipeline.services.job_store import JobStore


logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = str(getattr(settings, "processing_job_key_prefix", "processing_job") or "processing_job")
QUEUE_KEY_PREFIX = str(getattr(settings, "processing_queue_key_prefix", "processing_queue") or "processing_queue")
JOB_TTL_SECONDS = max(1, int(getattr(settings, "processing_job_ttl_seconds", 3600) or 3600))
CRITICAL_JOB_TTL_SECONDS = max(1, int(getattr(settings, "processing_job_critical_ttl_seconds", 86400) or 86400))
QUEUE_TTL_SECONDS = max(1, int(getattr(settings, "processing_queue_ttl_seconds", 3600) or 3600))
RETRY_BACKOFF_BASE_SECONDS = max(1, int(getattr(settings, "processing_retry_backoff_base_seconds", 2) or 2))
RETRY_BACKOFF_MAX_SECONDS = max(1, int(getattr(settings, "processing_retry_backoff_max_seconds", 60) or 60))
JOB_TIMEOUT_SECONDS = max(1.0, float(getattr(settings, "processing_job_timeout_seconds", 300.0) or 300.0))

_ASSET_COLUMNS_FROM_RESULT = ("thumbnail_key", "metadata", "file_size")

Sleep = Callable[[float], Awaitable[Any]]


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}:{job_id}"


def queue_key(priority: ProcessingPriority) -> str:
    return f"{QUEUE_KEY_PREFIX}:priority_{int(priority)}"


def job_ttl_seconds(priority: ProcessingPriority) -> int:
    return CRITICAL_JOB_TTL_SECONDS if priority == ProcessingPriority.critical else JOB_TTL_SECONDS


def retry_delay_seconds(retry_count: int) -> int:
    """Backoff before re-queueing attempt ``retry_count`` (1-based), capped."""
    exponent = max(0, int(retry_count))
    if exponent >= 32:
        return RETRY_BACKOFF_MAX_SECONDS
    return min(RETRY_BACKOFF_BASE_SECONDS**exponent, RETRY_BACKOFF_MAX_SECONDS)


class PriorityScheduler:
    """Owns the per-priority queues and every job status transition.

    Each ``drive()`` call drains at most one tier: the highest tier that had a
    runnable job, up to that tier's concurrency cap. Job records are only
    written under a per-job lock so retries, cancellation and completion do
    not overwrite each other.
    """

    def __init__(
        self,
        executor: JobExecutor,
        job_store: JobStore,
        asset_store: AssetStore,
        *,
        sleep: Sleep = asyncio.sleep,
        job_timeout_seconds: float | None = None,
    ) -> None:
        self.executor = executor
        self.job_store = job_store
        self.asset_store = asset_store
        self._sleep = sleep
        self.job_timeout_seconds = float(job_timeout_seconds or JOB_TIMEOUT_SECONDS)
        self._queues: dict[ProcessingPriority, list[str]] = {priority: [] for priority in ProcessingPriority}
        self._tracked: dict[str, ProcessingPriority] = {}
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._drive_lock = asyncio.Lock()
        self._retry_tasks: set[asyncio.Task[None]] = set()

    async def enqueue(
        self,
        asset_id: str,
        organization_id: str,
        job_type: ProcessingJobType,
        metadata: dict[str, Any] | None = None,
        priority: ProcessingPriority = ProcessingPriority.normal,
    ) -> str:
        job = ProcessingJob.new(
            asset_id=asset_id,
            organization_id=organization_id,
            job_type=ProcessingJobType(job_type),
            metadata=metadata,
            priority=ProcessingPriority(priority),
        )
        while job.id in self._tracked:
            job.created_at += timedelta(milliseconds=1)
            job.id = build_job_id(job.type, job.asset_id, job.created_at)

        await self._save_job(job)
        self._tracked[job.id] = job.priority
        await self._append_to_queue(job.id, job.priority)
        logger.info(
            "processing_job_enqueued",
            extra={
                "job_id": job.id,
                "job_type": job.type.value,
                "asset_id": asset_id,
                "priority": job.priority.name,
            },
        )
        return job.id

    async def drive(self) -> int:
        """Run one scheduling cycle and return the number of jobs executed."""
        if self._drive_lock.locked():
            return 0
        async with self._drive_lock:
            for priority in sorted(ProcessingPriority, reverse=True):
                if not self._queues[priority]:
                    continue
                batch = await self._take_runnable(priority, MAX_CONCURRENT_BY_PRIORITY[priority])
                if not batch:
                    continue

                outcomes = await asyncio.gather(*(self._process_job(job_id) for job_id in batch), return_exceptions=True)
                processed = 0
                for job_id, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        logger.error(
                            "processing_job_wrapper_error",
                            exc_info=(type(outcome), outcome, outcome.__traceback__),
                            extra={"job_id": job_id},
                        )
                    elif outcome:
                        processed += 1
                if processed:
                    return processed
        return 0

    async def run_until_idle(self, *, max_cycles: int = 1000) -> int:
        """Drive cycles, waiting out pending retries, until nothing is left to run."""
        total = 0
        for _ in range(max(1, max_cycles)):
            processed = await self.drive()
            total += processed
            if processed or any(self._queues.values()):
                continue
            if self._retry_tasks:
                await self.wait_for_retries()
                continue
            break
        return total

    async def get_job_status(self, job_id: str) -> ProcessingJob | None:
        return await self._load_job(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        async with self._lock_for(job_id):
            job = await self._load_job(job_id)
            if job is None or job.is_terminal:
                return False
            job.status = ProcessingJobStatus.cancelled
            job.completed_at = utcnow()
            job.next_attempt_at = None
            await self._save_job(job)
        self._drop_lock(job_id)
        await self._remove_from_queue(job_id, job.priority)
        logger.info("processing_job_cancelled", extra={"job_id": job_id, "asset_id": job.asset_id})
        return True

    async def get_queue_stats(self) -> QueueStats:
        stats = QueueStats(queue_lengths={priority.name: len(self._queues[priority]) for priority in ProcessingPriority})
        for job_id in list(self._tracked):
            job = await self._load_job(job_id)
            if job is None:
                self._forget(job_id)
                continue
            field = job.status.value
            setattr(stats, field, getattr(stats, field) + 1)
        return stats

    async def restore_queues(self) -> int:
        """Reload persisted tier lists, e.g. after a worker restart."""
        restored = 0
        for priority in ProcessingPriority:
            stored = await self.job_store.get(queue_key(priority)) or []
            for job_id in stored:
                if job_id in self._queues[priority]:
                    continue
                self._queues[priority].append(job_id)
                self._tracked.setdefault(job_id, priority)
                restored += 1
        if restored:
            logger.info("processing_queues_restored", extra={"count": restored})
        return restored

    async def wait_for_retries(self) -> None:
        while self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()

    async def _process_job(self, job_id: str) -> bool:
        async with self._lock_for(job_id):
            job = await self._load_job(job_id)
            if job is None:
                logger.warning("processing_job_missing", extra={"job_id": job_id})
                self._forget(job_id)
                return False
            if job.status != ProcessingJobStatus.queued:
                logger.info("processing_job_skipped", extra={"job_id": job_id, "status": job.status.value})
                if job.is_terminal:
                    self._drop_lock(job_id)
                return False
            job.status = ProcessingJobStatus.processing
            job.started_at = utcnow()
            job.next_attempt_at = None
            await self._save_job(job)

        token = job_id_ctx_var.set(job_id)
        started = time.monotonic()
        try:
            try:
                result = await asyncio.wait_for(self.executor.execute(job), timeout=self.job_timeout_seconds)
            except asyncio.TimeoutError:
                result = ProcessingResult.fail(f"Job timed out after {self.job_timeout_seconds:g}s", retryable=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("processing_job_crashed", extra={"job_type": job.type.value, "asset_id": job.asset_id})
                await self._fail_crashed(job_id, str(exc) or type(exc).__name__)
                return True
            try:
                await self._apply_result(job_id, result, duration_ms=int((time.monotonic() - started) * 1000))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception(
                    "processing_job_result_failed", extra={"job_type": job.type.value, "asset_id": job.asset_id}
                )
                await self._fail_crashed(job_id, f"Failed to record job result: {exc}")
            return True
        finally:
            job_id_ctx_var.reset(token)

    async def _apply_result(self, job_id: str, result: ProcessingResult, *, duration_ms: int) -> None:
        retry_delay: int | None = None
        async with self._lock_for(job_id):
            job = await self._load_job(job_id)
            if job is None:
                logger.warning("processing_job_missing", extra={"job_id": job_id})
                return
            if job.status == ProcessingJobStatus.cancelled:
                logger.info("processing_job_result_discarded", extra={"job_id": job_id, "success": result.success})
                self._drop_lock(job_id)
                return
            if result.success:
                job.status = ProcessingJobStatus.completed
                job.completed_at = utcnow()
                job.error = None
                job.result = result.data
            elif result.retryable and job.retry_count < job.max_retries:
                job.retry_count += 1
                job.status = ProcessingJobStatus.queued
                job.error = result.error
                retry_delay = retry_delay_seconds(job.retry_count)
                job.next_attempt_at = utcnow() + timedelta(seconds=retry_delay)
            else:
                job.status = ProcessingJobStatus.failed
                job.completed_at = utcnow()
                job.error = result.error
            await self._save_job(job)
        if job.is_terminal:
            self._drop_lock(job_id)

        if result.success:
            logger.info(
                "processing_job_completed",
                extra={"job_type": job.type.value, "asset_id": job.asset_id, "duration_ms": duration_ms},
            )
            await self._update_asset_with_result(job, result)
            await self._enqueue_follow_on_jobs(job, result)
        elif retry_delay is not None:
            logger.warning(
                "processing_job_retry_scheduled",
                extra={
                    "job_type": job.type.value,
                    "retry_count": job.retry_count,
                    "delay_seconds": retry_delay,
                    "error": result.error,
                },
            )
            self._schedule_retry(job_id, job.priority, retry_delay)
        else:
            logger.warning(
                "processing_job_failed",
                extra={"job_type": job.type.value, "asset_id": job.asset_id, "error": result.error},
            )
            if not result.asset_updated:
                await self._mark_asset_failed(job.asset_id, result.error)

    async def _fail_crashed(self, job_id: str, error: str) -> None:
        async with self._lock_for(job_id):
            job = await self._load_job(job_id)
            if job is None or job.status != ProcessingJobStatus.processing:
                return
            job.status = ProcessingJobStatus.failed
            job.completed_at = utcnow()
            job.error = error
            await self._save_job(job)
        self._drop_lock(job_id)
        await self._mark_asset_failed(job.asset_id, error)

    def _schedule_retry(self, job_id: str, priority: ProcessingPriority, delay: float) -> None:
        task = asyncio.create_task(self._requeue_after(job_id, priority, delay), name=f"retry:{job_id}")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_after(self, job_id: str, priority: ProcessingPriority, delay: float) -> None:
        await self._sleep(delay)
        try:
            async with self._lock_for(job_id):
                job = await self._load_job(job_id)
                if job is None or job.status != ProcessingJobStatus.queued:
                    logger.info("processing_job_retry_dropped", extra={"job_id": job_id})
                    return
                job.next_attempt_at = None
                await self._save_job(job)
            await self._append_to_queue(job_id, priority)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("processing_job_requeue_failed", extra={"job_id": job_id})

    async def _update_asset_with_result(self, job: ProcessingJob, result: ProcessingResult) -> None:
        data = result.data or {}
        changes = {key: data[key] for key in _ASSET_COLUMNS_FROM_RESULT if data.get(key) is not None}
        if data.get("processing_status"):
            changes["status"] = AssetStatus(data["processing_status"])
        if not changes:
            return
        try:
            await self.asset_store.update_asset(job.asset_id, changes)
        except Exception:
            logger.exception("processing_asset_update_failed", extra={"job_id": job.id, "asset_id": job.asset_id})

    async def _enqueue_follow_on_jobs(self, job: ProcessingJob, result: ProcessingResult) -> None:
        for follow_on in result.next_jobs:
            try:
                await self.enqueue(
                    job.asset_id,
                    job.organization_id,
                    follow_on.type,
                    follow_on.metadata,
                    follow_on.priority,
                )
            except Exception:
                logger.exception(
                    "processing_follow_on_enqueue_failed",
                    extra={"job_id": job.id, "follow_on_type": follow_on.type.value},
                )

    async def _mark_asset_failed(self, asset_id: str, error: str | None) -> None:
        try:
            await self.asset_store.update_asset_status(asset_id, AssetStatus.failed, error)
        except Exception:
            logger.exception("processing_asset_status_update_failed", extra={"asset_id": asset_id})

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = self._job_locks[job_id] = asyncio.Lock()
        return lock

    def _drop_lock(self, job_id: str) -> None:
        # Terminal records are never rewritten.
        self._job_locks.pop(job_id, None)

    def _forget(self, job_id: str) -> None:
        self._tracked.pop(job_id, None)
        self._drop_lock(job_id)

    async def _take_runnable(self, priority: ProcessingPriority, limit: int) -> list[str]:
        """Pop up to ``limit`` queued job ids from the head of a tier, dropping stale ids."""
        queue = self._queues[priority]
        batch: list[str] = []
        taken = False
        try:
            while queue and len(batch) < limit:
                job_id = queue[0]
                job = await self._load_job(job_id)
                if job_id not in queue:
                    continue
                queue.remove(job_id)
                taken = True
                if job is None:
                    logger.warning("processing_job_missing", extra={"job_id": job_id})
                    self._forget(job_id)
                elif job.status != ProcessingJobStatus.queued:
                    logger.info("processing_job_skipped", extra={"job_id": job_id, "status": job.status.value})
                else:
                    batch.append(job_id)
        except Exception:
            queue[:0] = batch
            raise
        finally:
            if taken:
                await self._persist_queue(priority)
        return batch

    async def _load_job(self, job_id: str) -> ProcessingJob | None:
        raw = await self.job_store.get(job_key(job_id))
        if raw is None:
            return None
        return ProcessingJob.model_validate(raw)

    async def _save_job(self, job: ProcessingJob) -> None:
        await self.job_store.set(job_key(job.id), job.model_dump(mode="json"), job_ttl_seconds(job.priority))

    async def _append_to_queue(self, job_id: str, priority: ProcessingPriority) -> None:
        self._queues[priority].append(job_id)
        await self._persist_queue(priority)

    async def _remove_from_queue(self, job_id: str, priority: ProcessingPriority) -> None:
        queue = self._queues[priority]
        if job_id not in queue:
            return
        queue[:] = [queued_id for queued_id in queue if queued_id != job_id]
        await self._persist_queue(priority)

    async def _persist_queue(self, priority: ProcessingPriority) -> None:
        await self.job_store.set(queue_key(priority), list(self._queues[priority]), QUEUE_TTL_SECONDS)
