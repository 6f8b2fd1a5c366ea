from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from asset_pipeline.core.errors import RenderError, StorageError, UnsupportedMediaError
from asset_pipeline.schemas.processing import ThumbnailOptions, ThumbnailResult
from asset_pipeline.services.renderers import OFFICE_DOCUMENT_TYPES, RendererSet, normalize_mime
from asset_pipeline.services.storage import ObjectStorage


logger = logging.getLogger(__name__)

THUMBNAIL_PRESETS: dict[str, dict[str, int]] = {
    "small": {"width": 150, "height": 150, "quality": 80},
    "medium": {"width": 300, "height": 300, "quality": 85},
    "large": {"width": 600, "height": 600, "quality": 90},
    "preview": {"width": 800, "height": 600, "quality": 85},
}
DEFAULT_PRESETS = ("small", "medium", "large")

RESPONSIVE_SIZES: dict[str, tuple[int, int]] = {
    "mobile": (480, 320),
    "tablet": (768, 512),
    "desktop": (1200, 800),
}

VIDEO_TIMESTAMPS = (1.0, 5.0, 10.0)
VIDEO_THUMBNAIL_SIZE = (600, 400)

DOCUMENT_PREVIEW_SIZE = (600, 800)
DOCUMENT_SMALL_SIZE = (150, 200)


def preset_options(preset: str) -> ThumbnailOptions:
    config = THUMBNAIL_PRESETS[preset]
    return ThumbnailOptions(
        width=config["width"],
        height=config["height"],
        quality=config["quality"],
        format="webp",
        fit="cover",
        background="#ffffff",
    )


def document_options(width: int, height: int, **overrides) -> ThumbnailOptions:
    values = {"width": width, "height": height, "format": "webp", "quality": 85, "fit": "inside", "background": "#ffffff"}
    values.update({key: value for key, value in overrides.items() if value is not None})
    return ThumbnailOptions(**values)


def _timestamp_label(timestamp: float) -> str:
    return f"{timestamp:g}".replace(".", "_")


def variant_suffix(preset: str, options: ThumbnailOptions) -> str:
    return f"{preset}-{options.width}x{options.height}"


def video_suffix(options: ThumbnailOptions) -> str:
    return f"video-{_timestamp_label(options.timestamp)}s-{options.width}x{options.height}"


def document_suffix(mime_type: str, options: ThumbnailOptions) -> str:
    if normalize_mime(mime_type) == "application/pdf":
        return f"pdf-page{options.page}-{options.width}x{options.height}"
    return f"document-preview-{options.width}x{options.height}"


def is_document_mime(mime_type: str | None) -> bool:
    mime = normalize_mime(mime_type)
    return mime == "application/pdf" or mime in OFFICE_DOCUMENT_TYPES or mime.startswith("text/") or "document" in mime


def known_variant_suffixes() -> list[str]:
    suffixes = [variant_suffix(name, preset_options(name)) for name in THUMBNAIL_PRESETS]
    for name, (width, height) in RESPONSIVE_SIZES.items():
        suffixes.append(f"{name}-{width}x{height}")
    width, height = VIDEO_THUMBNAIL_SIZE
    for timestamp in VIDEO_TIMESTAMPS:
        suffixes.append(f"video-{_timestamp_label(timestamp)}s-{width}x{height}")
    for width, height in (DOCUMENT_PREVIEW_SIZE, DOCUMENT_SMALL_SIZE):
        suffixes.append(f"pdf-page1-{width}x{height}")
        suffixes.append(f"document-preview-{width}x{height}")
    return suffixes


class ThumbnailGenerator:
    """Renders derivatives of stored assets and uploads them next to the source."""

    def __init__(self, storage: ObjectStorage, renderers: RendererSet | None = None) -> None:
        self.storage = storage
        self.renderers = renderers or RendererSet()

    async def generate_single_thumbnail(
        self,
        organization_id: str,
        asset_id: str,
        source_key: str,
        source: bytes,
        options: ThumbnailOptions,
        preset: str,
        *,
        mime_type: str = "image/*",
        suffix: str | None = None,
        file_name: str | None = None,
    ) -> ThumbnailResult:
        try:
            rendered = await self.renderers.render(source, mime_type, options, file_name=file_name)
            thumbnail_key = self.storage.generate_derived_key(
                source_key, suffix or variant_suffix(preset, options), options.format
            )
            await self.storage.upload(
                organization_id,
                thumbnail_key,
                rendered.data,
                rendered.mime_type,
                {
                    "asset_id": asset_id,
                    "preset": preset,
                    "original_key": source_key,
                    "generated": datetime.now(timezone.utc).isoformat(),
                },
            )
        except (RenderError, UnsupportedMediaError, StorageError) as exc:
            logger.warning(
                "thumbnail_variant_failed",
                extra={"asset_id": asset_id, "preset": preset, "error": str(exc)},
            )
            return ThumbnailResult(success=False, error=str(exc), preset=preset)
        return ThumbnailResult(
            success=True,
            thumbnail_key=thumbnail_key,
            size=rendered.size,
            dimensions=(rendered.width, rendered.height),
            preset=preset,
        )

    async def generate_image_thumbnails(
        self,
        organization_id: str,
        asset_id: str,
        source_key: str,
        presets: Iterable[str] = DEFAULT_PRESETS,
        *,
        source: bytes | None = None,
        mime_type: str = "image/*",
    ) -> list[ThumbnailResult]:
        preset_names = [name for name in presets if name in THUMBNAIL_PRESETS]
        if source is None:
            try:
                source = await self.storage.download(organization_id, source_key)
            except StorageError as exc:
                logger.warning("thumbnail_source_download_failed", extra={"asset_id": asset_id, "error": str(exc)})
                return [ThumbnailResult(success=False, error=str(exc), preset=name) for name in preset_names]
        return list(
            await asyncio.gather(
                *(
                    self.generate_single_thumbnail(
                        organization_id, asset_id, source_key, source, preset_options(name), name, mime_type=mime_type
                    )
                    for name in preset_names
                )
            )
        )

    async def generate_video_thumbnail(
        self,
        organization_id: str,
        asset_id: str,
        source_key: str,
        options: ThumbnailOptions | None = None,
        *,
        source: bytes | None = None,
        mime_type: str = "video/*",
    ) -> ThumbnailResult:
        width, height = VIDEO_THUMBNAIL_SIZE
        options = options or ThumbnailOptions(width=width, height=height, format="webp", quality=85, timestamp=1.0)
        if source is None:
            try:
                source = await self.storage.download(organization_id, source_key)
            except StorageError as exc:
                return ThumbnailResult(success=False, error=str(exc), preset="video")
        return await self.generate_single_thumbnail(
            organization_id,
            asset_id,
            source_key,
            source,
            options,
            "video",
            mime_type=mime_type,
            suffix=video_suffix(options),
        )

    async def generate_document_preview(
        self,
        organization_id: str,
        asset_id: str,
        source_key: str,
        mime_type: str,
        options: ThumbnailOptions | None = None,
        *,
        source: bytes | None = None,
        file_name: str | None = None,
        preset: str = "document",
    ) -> ThumbnailResult:
        options = options or document_options(*DOCUMENT_PREVIEW_SIZE)
        if not self.renderers.supports(mime_type) or normalize_mime(mime_type).startswith(("image/", "video/")):
            return ThumbnailResult(success=False, error="Unsupported document type", preset=preset)
        if source is None:
            try:
                source = await self.storage.download(organization_id, source_key)
            except StorageError as exc:
                return ThumbnailResult(success=False, error=str(exc), preset=preset)
        return await self.generate_single_thumbnail(
            organization_id,
            asset_id,
            source_key,
            source,
            options,
            preset,
            mime_type=mime_type,
            suffix=document_suffix(mime_type, options),
            file_name=file_name,
        )

    async def generate_adaptive_thumbnails(
        self,
        organization_id: str,
        asset_id: str,
        source_key: str,
        mime_type: str,
        *,
        file_name: str | None = None,
    ) -> list[ThumbnailResult]:
        """Fan one asset out to every size its type supports.

        Failures are reported per variant; the list mixes successes and
        failures and callers filter it themselves.
        """
        mime = normalize_mime(mime_type)
        if not (mime.startswith(("image/", "video/")) or is_document_mime(mime)):
            return [ThumbnailResult(success=False, error="Unsupported document type")]
        try:
            source = await self.storage.download(organization_id, source_key)
        except StorageError as exc:
            logger.warning("adaptive_thumbnail_download_failed", extra={"asset_id": asset_id, "error": str(exc)})
            return [ThumbnailResult(success=False, error=str(exc))]

        if mime.startswith("image/"):
            results = await self.generate_image_thumbnails(
                organization_id, asset_id, source_key, THUMBNAIL_PRESETS.keys(), source=source, mime_type=mime
            )
            for name, (width, height) in RESPONSIVE_SIZES.items():
                options = ThumbnailOptions(width=width, height=height, format="webp", quality=85, fit="inside")
                results.append(
                    await self.generate_single_thumbnail(
                        organization_id, asset_id, source_key, source, options, name, mime_type=mime
                    )
                )
            return results

        if mime.startswith("video/"):
            width, height = VIDEO_THUMBNAIL_SIZE
            results = []
            for timestamp in VIDEO_TIMESTAMPS:
                options = ThumbnailOptions(width=width, height=height, format="webp", quality=85, timestamp=timestamp)
                results.append(
                    await self.generate_video_thumbnail(
                        organization_id, asset_id, source_key, options, source=source, mime_type=mime
                    )
                )
            return results

        return [
            await self.generate_document_preview(
                organization_id,
                asset_id,
                source_key,
                mime,
                document_options(*size),
                source=source,
                file_name=file_name,
                preset=name,
            )
            for name, size in (("small", DOCUMENT_SMALL_SIZE), ("preview", DOCUMENT_PREVIEW_SIZE))
        ]

    async def delete_thumbnails(self, organization_id: str, source_key: str) -> int:
        deleted = 0
        for suffix in known_variant_suffixes():
            key = self.storage.generate_derived_key(source_key, suffix, "webp")
            try:
                if await self.storage.delete(organization_id, key):
                    deleted += 1
            except StorageError as exc:
                logger.warning("thumbnail_delete_failed", extra={"key": key, "error": str(exc)})
        return deleted
