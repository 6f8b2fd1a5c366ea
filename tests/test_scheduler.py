import asyncio
import io
import logging
import re

import pytest
from PIL import Image

from asset_pipeline.core.errors import StorageError
from asset_pipeline.models.processing import (
    AssetStatus,
    ProcessingJobStatus,
    ProcessingJobType,
    ProcessingPriority,
)
from asset_pipeline.schemas.processing import FollowOnJob, ProcessingResult
from asset_pipeline.services.executor import JobExecutor
from asset_pipeline.services.job_store import InMemoryJobStore
from asset_pipeline.services.scheduler import PriorityScheduler, job_key, queue_key, retry_delay_seconds
from asset_pipeline.services.storage import LocalObjectStorage
from asset_pipeline.services.strategies import SignatureScanner


class _ScriptedExecutor:
    """Returns queued results in order, then succeeds; records every executed job."""

    def __init__(self, results=None, *, hold: float = 0.0) -> None:
        self.results = list(results or [])
        self.hold = hold
        self.executed = []
        self.in_flight = 0
        self.peak = 0

    async def execute(self, job):
        self.executed.append(job)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.hold)
        finally:
            self.in_flight -= 1
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ProcessingResult.ok({})


class _GatedExecutor:
    def __init__(self, result: ProcessingResult) -> None:
        self.result = result
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, job):
        self.started.set()
        await self.release.wait()
        return self.result


class _RecordingJobStore(InMemoryJobStore):
    def __init__(self) -> None:
        super().__init__()
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, ttl_seconds):
        self.ttls[key] = ttl_seconds
        await super().set(key, value, ttl_seconds)


class _ResultRejectingJobStore(InMemoryJobStore):
    """Accepts every write except a completed job record."""

    async def set(self, key, value, ttl_seconds):
        if isinstance(value, dict) and value.get("status") == ProcessingJobStatus.completed.value:
            raise ConnectionError("job store unavailable")
        await super().set(key, value, ttl_seconds)


class _FlakyStorage(LocalObjectStorage):
    def __init__(self, root, *, failing_key: str, failures: int) -> None:
        super().__init__(root)
        self.failing_key = failing_key
        self.failures_left = failures

    async def download(self, organization_id: str, key: str) -> bytes:
        if key == self.failing_key and self.failures_left > 0:
            self.failures_left -= 1
            raise StorageError("Storage temporarily unavailable")
        return await super().download(organization_id, key)


def _recording_sleep(delays: list[float]):
    async def _sleep(delay: float) -> None:
        delays.append(delay)

    return _sleep


def _scheduler(executor, job_store, asset_store, **kwargs) -> PriorityScheduler:
    kwargs.setdefault("sleep", _recording_sleep([]))
    return PriorityScheduler(executor, job_store, asset_store, **kwargs)


def _event_names(caplog: pytest.LogCaptureFixture) -> list[str]:
    return [record.getMessage() for record in caplog.records]


def test_retry_delay_is_exponential_and_capped() -> None:
    assert [retry_delay_seconds(n) for n in (1, 2, 3, 5, 6, 7, 100)] == [2, 4, 8, 32, 60, 60, 60]


@pytest.mark.anyio
async def test_enqueue_persists_queued_job(job_store, asset_store) -> None:
    scheduler = _scheduler(_ScriptedExecutor(), job_store, asset_store)

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.thumbnail_generation, {"presets": ["small"]})

    assert re.fullmatch(r"job_thumbnail_generation_a1_\d+", job_id)
    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.queued
    assert job.priority == ProcessingPriority.normal
    assert job.retry_count == 0
    assert job.max_retries == 2
    assert job.metadata == {"presets": ["small"]}
    assert await job_store.get(queue_key(ProcessingPriority.normal)) == [job_id]


@pytest.mark.anyio
async def test_enqueue_ids_stay_unique_within_the_same_millisecond(job_store, asset_store) -> None:
    scheduler = _scheduler(_ScriptedExecutor(), job_store, asset_store)

    ids = [await scheduler.enqueue("a1", "org1", ProcessingJobType.virus_scan) for _ in range(5)]

    assert len(set(ids)) == 5
    assert all(job_id.startswith("job_virus_scan_a1_") for job_id in ids)


@pytest.mark.anyio
async def test_ttls_depend_on_priority(asset_store) -> None:
    store = _RecordingJobStore()
    scheduler = _scheduler(_ScriptedExecutor(), store, asset_store)

    critical = await scheduler.enqueue("a1", "org1", ProcessingJobType.chunk_merge, priority=ProcessingPriority.critical)
    normal = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization)

    assert store.ttls[job_key(critical)] == 86400
    assert store.ttls[job_key(normal)] == 3600
    assert store.ttls[queue_key(ProcessingPriority.critical)] == 3600


@pytest.mark.anyio
async def test_get_job_status_unknown_id(job_store, asset_store) -> None:
    scheduler = _scheduler(_ScriptedExecutor(), job_store, asset_store)
    assert await scheduler.get_job_status("job_missing") is None


@pytest.mark.anyio
async def test_higher_tiers_run_first_one_tier_per_cycle(job_store, asset_store) -> None:
    executor = _ScriptedExecutor()
    scheduler = _scheduler(executor, job_store, asset_store)
    for asset_id, priority in [
        ("low", ProcessingPriority.low),
        ("normal", ProcessingPriority.normal),
        ("critical", ProcessingPriority.critical),
        ("high", ProcessingPriority.high),
    ]:
        await scheduler.enqueue(asset_id, "org1", ProcessingJobType.optimization, priority=priority)

    executed_per_cycle = []
    for _ in range(4):
        before = len(executor.executed)
        assert await scheduler.drive() == 1
        executed_per_cycle.append([job.asset_id for job in executor.executed[before:]])

    assert executed_per_cycle == [["critical"], ["high"], ["normal"], ["low"]]
    assert await scheduler.drive() == 0


@pytest.mark.anyio
async def test_tier_cap_bounds_each_cycle(job_store, asset_store) -> None:
    executor = _ScriptedExecutor(hold=0.01)
    scheduler = _scheduler(executor, job_store, asset_store)
    for idx in range(7):
        await scheduler.enqueue(f"c{idx}", "org1", ProcessingJobType.virus_scan, priority=ProcessingPriority.critical)
    await scheduler.enqueue("n0", "org1", ProcessingJobType.virus_scan)

    assert await scheduler.drive() == 5
    assert executor.peak == 5
    assert await scheduler.drive() == 2
    assert await scheduler.drive() == 1
    assert [job.asset_id for job in executor.executed][-1] == "n0"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("priority", "cap"),
    [
        (ProcessingPriority.high, 3),
        (ProcessingPriority.normal, 2),
        (ProcessingPriority.low, 1),
    ],
)
async def test_in_flight_jobs_never_exceed_tier_cap(job_store, asset_store, priority, cap) -> None:
    executor = _ScriptedExecutor(hold=0.01)
    scheduler = _scheduler(executor, job_store, asset_store)
    for idx in range(cap + 2):
        await scheduler.enqueue(f"a{idx}", "org1", ProcessingJobType.optimization, priority=priority)

    total = await scheduler.run_until_idle()

    assert total == cap + 2
    assert executor.peak == cap


@pytest.mark.anyio
async def test_drive_is_not_reentrant(job_store, asset_store) -> None:
    executor = _GatedExecutor(ProcessingResult.ok({}))
    scheduler = _scheduler(executor, job_store, asset_store)
    await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization)

    first = asyncio.create_task(scheduler.drive())
    await executor.started.wait()

    assert await scheduler.drive() == 0

    executor.release.set()
    assert await first == 1


@pytest.mark.anyio
async def test_stale_queue_entries_fall_through_to_lower_tiers(job_store, asset_store, caplog) -> None:
    caplog.set_level(logging.INFO)
    executor = _ScriptedExecutor()
    scheduler = _scheduler(executor, job_store, asset_store)
    done = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.critical)
    await scheduler.drive()
    await job_store.set(queue_key(ProcessingPriority.critical), [done, "job_gone"], 3600)
    await scheduler.enqueue("a2", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.low)

    assert await scheduler.restore_queues() == 2
    assert await scheduler.drive() == 1

    assert executor.executed[-1].asset_id == "a2"
    assert (await scheduler.get_job_status(done)).status == ProcessingJobStatus.completed
    assert "processing_job_skipped" in _event_names(caplog)
    assert "processing_job_missing" in _event_names(caplog)


@pytest.mark.anyio
async def test_stale_entries_do_not_use_up_the_tier_cap(job_store, asset_store) -> None:
    executor = _ScriptedExecutor()
    scheduler = _scheduler(executor, job_store, asset_store)
    stale = [f"job_gone_{idx}" for idx in range(5)]
    await job_store.set(queue_key(ProcessingPriority.critical), stale, 3600)
    await scheduler.restore_queues()
    live = await scheduler.enqueue("c1", "org1", ProcessingJobType.virus_scan, priority=ProcessingPriority.critical)
    await scheduler.enqueue("l1", "org1", ProcessingJobType.virus_scan, priority=ProcessingPriority.low)

    assert await scheduler.drive() == 1

    assert [job.id for job in executor.executed] == [live]
    assert await job_store.get(queue_key(ProcessingPriority.critical)) == []
    assert len(await job_store.get(queue_key(ProcessingPriority.low))) == 1


@pytest.mark.anyio
async def test_job_locks_are_released_once_jobs_finish(job_store, asset_store, make_asset) -> None:
    await asset_store.add_asset(make_asset("a1"))
    executor = _ScriptedExecutor([ProcessingResult.ok({}), ProcessingResult.fail("nope", retryable=False)])
    scheduler = _scheduler(executor, job_store, asset_store)
    completed = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization)
    failed = await scheduler.enqueue("a1", "org1", ProcessingJobType.virus_scan)
    cancelled = await scheduler.enqueue("a1", "org1", ProcessingJobType.metadata_extraction, priority=ProcessingPriority.low)

    assert await scheduler.cancel_job(cancelled) is True
    await scheduler.run_until_idle()

    assert (await scheduler.get_job_status(completed)).status == ProcessingJobStatus.completed
    assert (await scheduler.get_job_status(failed)).status == ProcessingJobStatus.failed
    assert scheduler._job_locks == {}


@pytest.mark.anyio
async def test_retryable_failure_backs_off_then_fails(job_store, asset_store, make_asset) -> None:
    await asset_store.add_asset(make_asset("a1"))
    delays: list[float] = []
    executor = _ScriptedExecutor([ProcessingResult.fail("transient")] * 5)
    scheduler = _scheduler(executor, job_store, asset_store, sleep=_recording_sleep(delays))

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.thumbnail_generation)
    await scheduler.run_until_idle()

    job = await scheduler.get_job_status(job_id)
    assert len(executor.executed) == 3
    assert delays == [2, 4]
    assert job.status == ProcessingJobStatus.failed
    assert job.retry_count == 2 == job.max_retries
    assert job.error == "transient"
    asset = await asset_store.get_asset("a1")
    assert asset.status == AssetStatus.failed
    assert asset.processing_error == "transient"


@pytest.mark.anyio
async def test_retry_keeps_job_queued_until_backoff_elapses(job_store, asset_store, make_asset) -> None:
    await asset_store.add_asset(make_asset("a1"))
    gate = asyncio.Event()

    async def _blocked_sleep(_delay: float) -> None:
        await gate.wait()

    executor = _ScriptedExecutor([ProcessingResult.fail("transient")])
    scheduler = _scheduler(executor, job_store, asset_store, sleep=_blocked_sleep)
    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.metadata_extraction)

    assert await scheduler.drive() == 1
    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.queued
    assert job.retry_count == 1
    assert job.next_attempt_at is not None
    assert await scheduler.drive() == 0

    gate.set()
    await scheduler.wait_for_retries()
    assert await scheduler.drive() == 1
    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.completed
    assert job.next_attempt_at is None


@pytest.mark.anyio
async def test_non_retryable_failure_fails_immediately(job_store, asset_store, make_asset, caplog) -> None:
    caplog.set_level(logging.INFO)
    await asset_store.add_asset(make_asset("a1"))
    executor = _ScriptedExecutor([ProcessingResult.fail("Unsupported document type", retryable=False)])
    scheduler = _scheduler(executor, job_store, asset_store)

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.preview_generation)
    await scheduler.run_until_idle()

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.failed
    assert job.retry_count == 0
    assert job.completed_at is not None
    assert (await asset_store.get_asset("a1")).status == AssetStatus.failed
    assert "processing_job_failed" in _event_names(caplog)


@pytest.mark.anyio
async def test_executor_crash_marks_job_and_asset_failed(job_store, asset_store, make_asset, caplog) -> None:
    await asset_store.add_asset(make_asset("a1"))
    executor = _ScriptedExecutor([RuntimeError("decoder exploded")])
    scheduler = _scheduler(executor, job_store, asset_store)

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization)

    assert await scheduler.drive() == 1
    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.failed
    assert job.error == "decoder exploded"
    asset = await asset_store.get_asset("a1")
    assert asset.status == AssetStatus.failed
    assert asset.processing_error == "decoder exploded"
    crashed = [record for record in caplog.records if record.getMessage() == "processing_job_crashed"]
    assert crashed and crashed[0].exc_info is not None


@pytest.mark.anyio
async def test_result_write_failure_marks_job_and_asset_failed(asset_store, make_asset, caplog) -> None:
    await asset_store.add_asset(make_asset("a1"))
    job_store = _ResultRejectingJobStore()
    scheduler = _scheduler(_ScriptedExecutor(), job_store, asset_store)

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization)

    assert await scheduler.drive() == 1
    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.failed
    assert job.error == "Failed to record job result: job store unavailable"
    assert job.result is None
    asset = await asset_store.get_asset("a1")
    assert asset.status == AssetStatus.failed
    assert "processing_job_result_failed" in _event_names(caplog)
    assert "processing_job_wrapper_error" not in _event_names(caplog)


@pytest.mark.anyio
async def test_tiff_metadata_job_completes(job_store, asset_store, storage, make_asset) -> None:
    asset = await asset_store.add_asset(make_asset("t1", mime_type="image/tiff"))
    buf = io.BytesIO()
    Image.new("RGB", (40, 30), (10, 120, 200)).save(buf, format="TIFF", dpi=(300, 300))
    await storage.upload("org1", asset.storage_key, buf.getvalue(), "image/tiff")
    scheduler = _scheduler(JobExecutor(asset_store=asset_store, storage=storage), job_store, asset_store)

    job_id = await scheduler.enqueue("t1", "org1", ProcessingJobType.metadata_extraction)
    await scheduler.run_until_idle()

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.completed, job.error
    stored = await asset_store.get_asset("t1")
    assert stored.metadata["dpi"] == [300.0, 300.0]
    assert stored.metadata["dimensions"] == {"width": 40, "height": 30}


@pytest.mark.anyio
async def test_timeout_counts_as_retryable_failure(job_store, asset_store, make_asset) -> None:
    await asset_store.add_asset(make_asset("a1"))
    executor = _ScriptedExecutor(hold=1.0)
    scheduler = _scheduler(executor, job_store, asset_store, job_timeout_seconds=0.05)

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.metadata_extraction)
    await scheduler.drive()

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.queued
    assert job.retry_count == 1
    assert job.error == "Job timed out after 0.05s"
    await scheduler.aclose()


@pytest.mark.anyio
async def test_cancel_during_execution_discards_result(job_store, asset_store, make_asset, caplog) -> None:
    caplog.set_level(logging.INFO)
    await asset_store.add_asset(make_asset("a1"))
    executor = _GatedExecutor(
        ProcessingResult.ok(
            {"thumbnail_key": "uploads/a1/thumbnails/original-small-150x150.webp"},
            next_jobs=[FollowOnJob(type=ProcessingJobType.optimization)],
        )
    )
    scheduler = _scheduler(executor, job_store, asset_store)
    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.thumbnail_generation)

    running = asyncio.create_task(scheduler.drive())
    await executor.started.wait()
    assert await scheduler.cancel_job(job_id) is True
    executor.release.set()
    await running

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.cancelled
    assert job.result is None
    assert (await asset_store.get_asset("a1")).thumbnail_key is None
    assert (await scheduler.get_queue_stats()).queued == 0
    assert "processing_job_result_discarded" in _event_names(caplog)


@pytest.mark.anyio
async def test_cancel_queued_job_removes_it_from_its_tier(job_store, asset_store) -> None:
    executor = _ScriptedExecutor()
    scheduler = _scheduler(executor, job_store, asset_store)
    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.high)

    assert await scheduler.cancel_job(job_id) is True

    assert await job_store.get(queue_key(ProcessingPriority.high)) == []
    assert await scheduler.drive() == 0
    assert executor.executed == []
    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.cancelled
    assert job.completed_at is not None


@pytest.mark.anyio
async def test_terminal_jobs_cannot_be_cancelled(job_store, asset_store) -> None:
    executor = _ScriptedExecutor([ProcessingResult.ok({}), ProcessingResult.fail("bad", retryable=False)])
    scheduler = _scheduler(executor, job_store, asset_store)
    completed = await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization)
    failed = await scheduler.enqueue("a2", "org1", ProcessingJobType.optimization)
    await scheduler.run_until_idle()

    assert await scheduler.cancel_job(completed) is False
    assert await scheduler.cancel_job(failed) is False
    assert await scheduler.cancel_job("job_unknown") is False
    assert (await scheduler.get_job_status(completed)).status == ProcessingJobStatus.completed
    assert (await scheduler.get_job_status(failed)).status == ProcessingJobStatus.failed


@pytest.mark.anyio
async def test_success_updates_asset_and_enqueues_follow_on_jobs(job_store, asset_store, make_asset) -> None:
    await asset_store.add_asset(make_asset("a1", metadata={"camera": "x100"}))
    executor = _ScriptedExecutor(
        [
            ProcessingResult.ok(
                {"thumbnail_key": "t.webp", "metadata": {"camera": "x100", "format": "png"}, "file_size": 42},
                next_jobs=[FollowOnJob(type=ProcessingJobType.optimization, priority=ProcessingPriority.low)],
            )
        ]
    )
    scheduler = _scheduler(executor, job_store, asset_store)
    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.metadata_extraction)

    await scheduler.drive()

    asset = await asset_store.get_asset("a1")
    assert asset.thumbnail_key == "t.webp"
    assert asset.file_size == 42
    assert asset.metadata == {"camera": "x100", "format": "png"}
    assert (await scheduler.get_job_status(job_id)).result["file_size"] == 42
    queued = await job_store.get(queue_key(ProcessingPriority.low))
    assert len(queued) == 1
    assert queued[0].startswith("job_optimization_a1_")


@pytest.mark.anyio
async def test_queue_stats_count_tracked_jobs(job_store, asset_store) -> None:
    executor = _ScriptedExecutor([ProcessingResult.ok({}), ProcessingResult.fail("nope", retryable=False)])
    scheduler = _scheduler(executor, job_store, asset_store)
    await scheduler.enqueue("a1", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.normal)
    await scheduler.enqueue("a2", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.normal)
    cancelled = await scheduler.enqueue("a3", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.low)
    await scheduler.enqueue("a4", "org1", ProcessingJobType.optimization, priority=ProcessingPriority.low)
    await scheduler.cancel_job(cancelled)

    await scheduler.drive()
    stats = await scheduler.get_queue_stats()

    assert (stats.queued, stats.processing, stats.completed, stats.failed, stats.cancelled) == (1, 0, 1, 1, 1)
    assert stats.queue_lengths == {"low": 1, "normal": 0, "high": 0, "critical": 0}


@pytest.mark.anyio
async def test_restore_queues_shares_work_through_the_job_store(job_store, asset_store) -> None:
    producer = _scheduler(_ScriptedExecutor(), job_store, asset_store)
    executor = _ScriptedExecutor()
    consumer = _scheduler(executor, job_store, asset_store)
    job_id = await producer.enqueue("a1", "org1", ProcessingJobType.virus_scan, priority=ProcessingPriority.high)

    assert await consumer.restore_queues() == 1
    assert await consumer.restore_queues() == 0
    assert await consumer.drive() == 1

    assert [job.id for job in executor.executed] == [job_id]
    assert (await producer.get_job_status(job_id)).status == ProcessingJobStatus.completed


@pytest.mark.anyio
async def test_chunk_merge_pipeline_chains_follow_on_jobs(job_store, asset_store, storage, make_asset, make_image) -> None:
    await asset_store.add_asset(make_asset("a1"))
    payload = make_image((120, 90))
    parts = [payload[:40], payload[40:80], payload[80:]]
    keys = [f"chunks/a1/{idx}" for idx in range(len(parts))]
    for key, part in zip(keys, parts):
        await storage.upload("org1", key, part, "application/octet-stream")
    scheduler = _scheduler(JobExecutor(asset_store=asset_store, storage=storage), job_store, asset_store)

    job_id = await scheduler.enqueue(
        "a1", "org1", ProcessingJobType.chunk_merge, {"chunk_keys": keys}, ProcessingPriority.critical
    )
    assert await scheduler.drive() == 1

    assert (await scheduler.get_job_status(job_id)).status == ProcessingJobStatus.completed
    normal = await job_store.get(queue_key(ProcessingPriority.normal))
    high = await job_store.get(queue_key(ProcessingPriority.high))
    assert len(normal) == 1 and normal[0].startswith("job_metadata_extraction_a1_")
    assert len(high) == 1 and high[0].startswith("job_thumbnail_generation_a1_")
    for key in keys:
        assert not await storage.exists("org1", key)


@pytest.mark.anyio
async def test_virus_detection_quarantines_asset(job_store, asset_store, storage, make_asset, eicar) -> None:
    asset = await asset_store.add_asset(make_asset("a1"))
    await storage.upload("org1", asset.storage_key, eicar, "image/png")
    executor = JobExecutor(asset_store=asset_store, storage=storage, virus_scanner=SignatureScanner([eicar]))
    scheduler = _scheduler(executor, job_store, asset_store)

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.virus_scan, priority=ProcessingPriority.critical)
    await scheduler.run_until_idle()

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.failed
    assert job.error == "Virus detected in file"
    assert job.retry_count == 0
    stored = await asset_store.get_asset("a1")
    assert stored.status == AssetStatus.quarantined
    assert stored.processing_error == "Virus detected"


@pytest.mark.anyio
async def test_thumbnail_job_recovers_from_transient_storage_errors(
    tmp_path, job_store, asset_store, make_asset, make_image
) -> None:
    asset = await asset_store.add_asset(make_asset("a1"))
    storage = _FlakyStorage(tmp_path / "flaky", failing_key=asset.storage_key, failures=2)
    await storage.upload("org1", asset.storage_key, make_image((640, 480)), "image/png")
    delays: list[float] = []
    executor = JobExecutor(asset_store=asset_store, storage=storage)
    scheduler = _scheduler(executor, job_store, asset_store, sleep=_recording_sleep(delays))

    job_id = await scheduler.enqueue("a1", "org1", ProcessingJobType.thumbnail_generation, priority=ProcessingPriority.high)
    await scheduler.run_until_idle()

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.completed
    assert job.retry_count == 2
    assert delays == [2, 4]
    assert (await asset_store.get_asset("a1")).thumbnail_key == job.result["thumbnail_key"]


@pytest.mark.anyio
async def test_pdf_preview_job_stores_page_rendering(job_store, asset_store, storage, make_asset, make_pdf) -> None:
    asset = await asset_store.add_asset(make_asset("d1", mime_type="application/pdf", storage_key="docs/d1/brief.pdf"))
    await storage.upload("org1", asset.storage_key, make_pdf(), "application/pdf")
    scheduler = _scheduler(JobExecutor(asset_store=asset_store, storage=storage), job_store, asset_store)

    job_id = await scheduler.enqueue(
        "d1",
        "org1",
        ProcessingJobType.preview_generation,
        {"page": 1, "width": 300, "height": 400, "format": "webp", "quality": 85},
    )
    await scheduler.run_until_idle()

    job = await scheduler.get_job_status(job_id)
    assert job.status == ProcessingJobStatus.completed, job.error
    preview_key = job.result["preview_key"]
    assert "pdf-page1-300x400" in preview_key
    assert preview_key.endswith(".webp")
    stored = await asset_store.get_asset("d1")
    assert stored.metadata["preview_key"] == preview_key
    assert await storage.exists("org1", preview_key)
