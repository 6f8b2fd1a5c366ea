from __future__ import annotations

from asset_pipeline.services.asset_store import AssetStore, SqlAssetStore
from asset_pipeline.services.executor import JobExecutor
from asset_pipeline.services.job_store import JobStore, build_job_store
from asset_pipeline.services.scheduler import PriorityScheduler
from asset_pipeline.services.storage import LocalObjectStorage, ObjectStorage


def build_scheduler(
    *,
    job_store: JobStore | None = None,
    asset_store: AssetStore | None = None,
    storage: ObjectStorage | None = None,
) -> PriorityScheduler:
    """Wire the scheduler to the configured stores and local object storage."""
    if asset_store is None:
        from asset_pipeline.db.session import SessionLocal

        asset_store = SqlAssetStore(SessionLocal)
    storage = storage or LocalObjectStorage()
    executor = JobExecutor(asset_store=asset_store, storage=storage)
    return PriorityScheduler(executor, job_store or build_job_store(), asset_store)
