from __future__ import annotations

import io
import logging
import os
import tempfile
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

import anyio
from PIL import Image, ImageOps, UnidentifiedImageError

from asset_pipeline.core.config import settings
from asset_pipeline.core.errors import MediaProbeError
from asset_pipeline.schemas.processing import AssetRecord
from asset_pipeline.services.renderers import normalize_mime
from asset_pipeline.services.storage import ObjectStorage


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeOutcome:
    storage_key: str
    size: int | None
    chunk_count: int


@dataclass(frozen=True)
class ScanVerdict:
    safe: bool
    scanner: str
    signature: str | None = None


class ChunkMerger(Protocol):
    async def merge(self, asset: AssetRecord, chunk_keys: list[str]) -> MergeOutcome: ...


class VirusScanner(Protocol):
    async def scan(self, data: bytes) -> ScanVerdict: ...


class MediaProbe(Protocol):
    async def probe(self, data: bytes, mime_type: str) -> dict[str, Any]: ...


class Optimizer(Protocol):
    async def optimize(self, data: bytes, mime_type: str) -> bytes | None: ...


class StorageChunkMerger:
    """Concatenate uploaded parts in order into the asset's final object."""

    def __init__(self, storage: ObjectStorage) -> None:
        self.storage = storage

    async def merge(self, asset: AssetRecord, chunk_keys: list[str]) -> MergeOutcome:
        if not chunk_keys:
            return MergeOutcome(storage_key=asset.storage_key, size=asset.file_size, chunk_count=0)
        parts: list[bytes] = []
        for key in chunk_keys:
            parts.append(await self.storage.download(asset.organization_id, key))
        merged = b"".join(parts)
        await self.storage.upload(
            asset.organization_id,
            asset.storage_key,
            merged,
            asset.mime_type,
            {"asset_id": asset.id, "merged_chunks": str(len(chunk_keys))},
        )
        return MergeOutcome(storage_key=asset.storage_key, size=len(merged), chunk_count=len(chunk_keys))


class SignatureScanner:
    """Flags content containing any configured byte signature."""

    def __init__(self, signatures: list[str | bytes] | None = None, *, scanner_id: str | None = None) -> None:
        raw = signatures if signatures is not None else list(getattr(settings, "virus_scan_signatures", []) or [])
        self.signatures = [sig.encode("latin-1") if isinstance(sig, str) else bytes(sig) for sig in raw if sig]
        self.scanner_id = scanner_id or str(getattr(settings, "virus_scanner_id", "signature-scanner"))

    def _scan(self, data: bytes) -> ScanVerdict:
        for signature in self.signatures:
            if signature in data:
                return ScanVerdict(safe=False, scanner=self.scanner_id, signature=signature[:32].decode("latin-1"))
        return ScanVerdict(safe=True, scanner=self.scanner_id)

    async def scan(self, data: bytes) -> ScanVerdict:
        return await anyio.to_thread.run_sync(partial(self._scan, data))


def _probe_image(data: bytes) -> dict[str, Any]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            oriented = ImageOps.exif_transpose(img) or img
            bands = img.getbands()
            return {
                "dimensions": {"width": oriented.width, "height": oriented.height},
                "format": (img.format or "").lower() or None,
                "color_space": img.mode,
                "has_alpha": "A" in bands or "transparency" in img.info,
                "dpi": [float(value) for value in img.info["dpi"]] if "dpi" in img.info else None,
            }
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise MediaProbeError(f"Unreadable image: {exc}") from exc


def _probe_video(data: bytes) -> dict[str, Any]:
    import imageio_ffmpeg

    fd, path = tempfile.mkstemp(suffix=".video")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        reader = imageio_ffmpeg.read_frames(path)
        try:
            meta = next(reader)
        finally:
            reader.close()
    except (OSError, RuntimeError, StopIteration) as exc:
        raise MediaProbeError(f"Unreadable video: {exc}") from exc
    finally:
        try:
            os.unlink(path)
        except OSError:
            logger.warning("video_probe_temp_cleanup_failed", extra={"path": path})
    width, height = (meta.get("size") or (None, None))[:2]
    duration = meta.get("duration")
    bitrate = int(len(data) * 8 / duration) if duration else None
    return {
        "duration": duration,
        "dimensions": {"width": width, "height": height},
        "frame_rate": meta.get("fps"),
        "bitrate": bitrate,
        "codec": meta.get("codec"),
        "audio_codec": meta.get("audio_codec"),
    }


class DefaultMediaProbe:
    """Pillow for stills, the bundled ffmpeg for video; other types yield nothing."""

    async def probe(self, data: bytes, mime_type: str) -> dict[str, Any]:
        mime = normalize_mime(mime_type)
        if mime.startswith("image/"):
            return await anyio.to_thread.run_sync(partial(_probe_image, data))
        if mime.startswith("video/"):
            return await anyio.to_thread.run_sync(partial(_probe_video, data))
        return {}


def _reencode(data: bytes, mime_type: str) -> bytes | None:
    mime = normalize_mime(mime_type)
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            buf = io.BytesIO()
            if mime in ("image/jpeg", "image/jpg"):
                img.convert("RGB").save(buf, format="JPEG", quality=85, optimize=True, progressive=True)
            elif mime == "image/png":
                img.save(buf, format="PNG", optimize=True)
            elif mime == "image/webp":
                img.save(buf, format="WEBP", quality=80, method=6)
            else:
                return None
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("optimization_decode_failed", extra={"mime_type": mime, "error": str(exc)})
        return None
    return buf.getvalue()


class PillowOptimizer:
    """Same-format re-encode; returns None for types it does not handle."""

    async def optimize(self, data: bytes, mime_type: str) -> bytes | None:
        return await anyio.to_thread.run_sync(partial(_reencode, data, mime_type))
