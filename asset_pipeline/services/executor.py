from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from pydantic import ValidationError

from asset_pipeline.core.errors import MediaProbeError, StorageError
from asset_pipeline.models.processing import (
    AssetFileType,
    AssetStatus,
    ProcessingJobType,
    ProcessingPriority,
)
from asset_pipeline.schemas.processing import (
    AssetRecord,
    ChunkMergeMetadata,
    FollowOnJob,
    PreviewMetadata,
    ProcessingJob,
    ProcessingResult,
    ThumbnailMetadata,
    ThumbnailOptions,
)
from asset_pipeline.services.asset_store import AssetStore, merge_metadata
from asset_pipeline.services.renderers import normalize_mime
from asset_pipeline.services.storage import ObjectStorage
from asset_pipeline.services.strategies import (
    ChunkMerger,
    DefaultMediaProbe,
    MediaProbe,
    Optimizer,
    PillowOptimizer,
    SignatureScanner,
    StorageChunkMerger,
    VirusScanner,
)
from asset_pipeline.services.thumbnails import ThumbnailGenerator, document_options, is_document_mime


logger = logging.getLogger(__name__)

Handler = Callable[[ProcessingJob, AssetRecord], Awaitable[ProcessingResult]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobExecutor:
    """Runs a single job against the asset it names.

    Expected failures come back as ``ProcessingResult(success=False)``; only
    unexpected exceptions escape, and the scheduler turns those into a failed job.
    """

    def __init__(
        self,
        *,
        asset_store: AssetStore,
        storage: ObjectStorage,
        thumbnails: ThumbnailGenerator | None = None,
        chunk_merger: ChunkMerger | None = None,
        virus_scanner: VirusScanner | None = None,
        media_probe: MediaProbe | None = None,
        optimizer: Optimizer | None = None,
    ) -> None:
        self.asset_store = asset_store
        self.storage = storage
        self.thumbnails = thumbnails or ThumbnailGenerator(storage)
        self.chunk_merger = chunk_merger or StorageChunkMerger(storage)
        self.virus_scanner = virus_scanner or SignatureScanner()
        self.media_probe = media_probe or DefaultMediaProbe()
        self.optimizer = optimizer or PillowOptimizer()
        self._handlers: dict[ProcessingJobType, Handler] = {
            ProcessingJobType.chunk_merge: self._merge_chunks,
            ProcessingJobType.thumbnail_generation: self._generate_thumbnails,
            ProcessingJobType.metadata_extraction: self._extract_metadata,
            ProcessingJobType.virus_scan: self._scan_for_virus,
            ProcessingJobType.optimization: self._optimize_file,
            ProcessingJobType.preview_generation: self._generate_preview,
        }

    async def execute(self, job: ProcessingJob) -> ProcessingResult:
        handler = self._handlers.get(job.type)
        if handler is None:
            return ProcessingResult.fail(f"Unknown job type: {job.type}", retryable=False)
        asset = await self.asset_store.get_asset(job.asset_id)
        if asset is None:
            return ProcessingResult.fail(f"Asset not found: {job.asset_id}", retryable=False)
        try:
            return await handler(job, asset)
        except StorageError as exc:
            logger.warning("processing_storage_error", extra={"asset_id": asset.id, "error": str(exc)})
            return ProcessingResult.fail(str(exc), retryable=True)
        except ValidationError as exc:
            return ProcessingResult.fail(f"Invalid job metadata: {exc.error_count()} error(s)", retryable=False)

    async def _merge_chunks(self, job: ProcessingJob, asset: AssetRecord) -> ProcessingResult:
        chunk_keys = ChunkMergeMetadata.model_validate(job.metadata).chunk_keys
        outcome = await self.chunk_merger.merge(asset, chunk_keys)

        deleted = 0
        for key in chunk_keys:
            try:
                if await self.storage.delete(asset.organization_id, key):
                    deleted += 1
            except Exception as exc:
                logger.warning("chunk_delete_failed", extra={"asset_id": asset.id, "key": key, "error": str(exc)})

        next_jobs = [FollowOnJob(type=ProcessingJobType.metadata_extraction, priority=ProcessingPriority.normal)]
        if asset.file_type in (AssetFileType.image, AssetFileType.video):
            next_jobs.append(FollowOnJob(type=ProcessingJobType.thumbnail_generation, priority=ProcessingPriority.high))

        data = {
            "storage_key": outcome.storage_key,
            "chunks_merged": outcome.chunk_count,
            "chunks_deleted": deleted,
            "merged_at": _now_iso(),
        }
        if outcome.size is not None:
            data["file_size"] = outcome.size
        return ProcessingResult.ok(data, next_jobs=next_jobs)

    async def _generate_thumbnails(self, job: ProcessingJob, asset: AssetRecord) -> ProcessingResult:
        if not normalize_mime(asset.mime_type).startswith("image/"):
            return ProcessingResult.ok({"skipped": True, "reason": f"No thumbnails for {asset.mime_type}"})

        presets = ThumbnailMetadata.model_validate(job.metadata).presets
        results = await self.thumbnails.generate_image_thumbnails(
            asset.organization_id, asset.id, asset.storage_key, presets, mime_type=asset.mime_type
        )
        successes = [result for result in results if result.success]
        if not successes:
            return ProcessingResult.fail("Failed to generate any thumbnails", retryable=True)
        return ProcessingResult.ok(
            {
                "thumbnail_key": successes[0].thumbnail_key,
                "thumbnails": [result.model_dump(mode="json") for result in results],
            }
        )

    async def _extract_metadata(self, job: ProcessingJob, asset: AssetRecord) -> ProcessingResult:
        data = await self.storage.download(asset.organization_id, asset.storage_key)
        try:
            probed = await self.media_probe.probe(data, asset.mime_type)
        except MediaProbeError as exc:
            return ProcessingResult.fail(f"Metadata extraction failed: {exc}", retryable=False)
        extracted = {
            "extracted_at": _now_iso(),
            "file_size": asset.file_size if asset.file_size is not None else len(data),
            "mime_type": asset.mime_type,
            **probed,
        }
        return ProcessingResult.ok({"metadata": merge_metadata(asset.metadata, extracted)})

    async def _scan_for_virus(self, job: ProcessingJob, asset: AssetRecord) -> ProcessingResult:
        data = await self.storage.download(asset.organization_id, asset.storage_key)
        verdict = await self.virus_scanner.scan(data)
        if not verdict.safe:
            logger.warning(
                "virus_detected",
                extra={"asset_id": asset.id, "scanner": verdict.scanner, "signature": verdict.signature},
            )
            await self.asset_store.update_asset_status(asset.id, AssetStatus.quarantined, "Virus detected")
            return ProcessingResult.fail("Virus detected in file", retryable=False, asset_updated=True)
        return ProcessingResult.ok(
            {"virus_scan_result": {"scanned_at": _now_iso(), "status": "clean", "scanner": verdict.scanner}}
        )

    async def _optimize_file(self, job: ProcessingJob, asset: AssetRecord) -> ProcessingResult:
        original = await self.storage.download(asset.organization_id, asset.storage_key)
        optimized = await self.optimizer.optimize(original, asset.mime_type)
        original_size = len(original)
        optimized_size = len(optimized) if optimized is not None else original_size
        replaced = optimized is not None and optimized_size < original_size
        if replaced:
            await self.storage.upload(
                asset.organization_id,
                asset.storage_key,
                optimized,
                asset.mime_type,
                {"asset_id": asset.id, "optimized": "true"},
            )
        summary = {
            "original_size": original_size,
            "optimized_size": optimized_size,
            "replaced": replaced,
            "compression_ratio": round(1 - optimized_size / original_size, 4) if replaced and original_size else 0.0,
            "optimized_at": _now_iso(),
        }
        data: dict = {"optimization": summary}
        if replaced:
            data["file_size"] = optimized_size
        return ProcessingResult.ok(data)

    async def _generate_preview(self, job: ProcessingJob, asset: AssetRecord) -> ProcessingResult:
        params = PreviewMetadata.model_validate(job.metadata)
        mime = normalize_mime(asset.mime_type)
        if mime.startswith("image/"):
            options = ThumbnailOptions(
                width=params.width, height=params.height, format=params.format, quality=params.quality, fit="inside"
            )
            source = await self.storage.download(asset.organization_id, asset.storage_key)
            result = await self.thumbnails.generate_single_thumbnail(
                asset.organization_id, asset.id, asset.storage_key, source, options, "preview", mime_type=mime
            )
        elif mime.startswith("video/"):
            options = ThumbnailOptions(
                width=params.width,
                height=params.height,
                format=params.format,
                quality=params.quality,
                timestamp=float(job.metadata.get("timestamp", 1.0)),
            )
            result = await self.thumbnails.generate_video_thumbnail(
                asset.organization_id, asset.id, asset.storage_key, options, mime_type=mime
            )
        elif is_document_mime(mime) and self.thumbnails.renderers.supports(mime):
            options = document_options(
                params.width, params.height, format=params.format, quality=params.quality, page=params.page
            )
            result = await self.thumbnails.generate_document_preview(
                asset.organization_id, asset.id, asset.storage_key, mime, options, file_name=asset.file_name
            )
        else:
            return ProcessingResult.fail("Unsupported document type", retryable=False)

        if not result.success:
            return ProcessingResult.fail(result.error or "Preview generation failed", retryable=True)
        data = {
            "preview_key": result.thumbnail_key,
            "preview": result.model_dump(mode="json"),
            "metadata": {"preview_key": result.thumbnail_key},
        }
        if asset.thumbnail_key is None:
            data["thumbnail_key"] = result.thumbnail_key
        return ProcessingResult.ok(data)
