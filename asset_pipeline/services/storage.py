from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path, PurePosixPath
from typing import Protocol

import anyio

from asset_pipeline.core.config import settings
from asset_pipeline.core.errors import StorageError

logger = logging.getLogger(__name__)

_EXTENSIONS = {"webp": "webp", "jpeg": "jpg", "jpg": "jpg", "png": "png"}
_SIDECAR_SUFFIX = ".meta.json"


class ObjectStorage(Protocol):
    async def download(self, organization_id: str, key: str) -> bytes: ...

    async def upload(
        self,
        organization_id: str,
        key: str,
        data: bytes,
        mime_type: str,
        tags: dict[str, str] | None = None,
    ) -> str: ...

    async def delete(self, organization_id: str, key: str) -> bool: ...

    def generate_derived_key(self, source_key: str, suffix: str, ext: str = "webp") -> str: ...


def derived_key(source_key: str, suffix: str, ext: str = "webp") -> str:
    """Name a derivative of ``source_key``: ``<dir>/thumbnails/<stem>-<suffix>.<ext>``.

    The stem is the file name up to its first dot, so ``a/b/photo.final.jpg`` and
    ``a/b/photo.png`` share derivatives.
    """
    path = PurePosixPath(source_key.strip("/"))
    stem = path.name.split(".", 1)[0] or path.name
    extension = _EXTENSIONS.get(ext.lower().lstrip("."), ext.lower().lstrip("."))
    name = f"{stem}-{suffix}.{extension}"
    parent = path.parent.as_posix()
    if parent in ("", "."):
        return f"thumbnails/{name}"
    return f"{parent}/thumbnails/{name}"


def ensure_media_root(root: str | Path | None = None) -> Path:
    path = Path(root or settings.media_root)
    path.mkdir(parents=True, exist_ok=True)
    return path


class LocalObjectStorage:
    """Objects stored as files under ``<root>/<organization_id>/<key>``."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = ensure_media_root(root).resolve()

    def _path_for(self, organization_id: str, key: str) -> Path:
        org = (organization_id or "").strip()
        if not org or "/" in org or org in (".", ".."):
            raise StorageError("Invalid organization id", key=key)
        org_root = (self.root / org).resolve()
        candidate = (org_root / key.lstrip("/")).resolve()
        try:
            candidate.relative_to(org_root)
        except ValueError:
            raise StorageError("Invalid storage key", key=key)
        return candidate

    async def download(self, organization_id: str, key: str) -> bytes:
        path = self._path_for(organization_id, key)
        try:
            return await anyio.to_thread.run_sync(path.read_bytes)
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {key}", key=key) from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {key}: {exc}", key=key) from exc

    async def upload(
        self,
        organization_id: str,
        key: str,
        data: bytes,
        mime_type: str,
        tags: dict[str, str] | None = None,
    ) -> str:
        path = self._path_for(organization_id, key)
        sidecar = {"mime_type": mime_type, "size": len(data), "tags": dict(tags or {})}

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
            temp.write_bytes(data)
            temp.replace(path)
            meta_path = path.with_name(f"{path.name}{_SIDECAR_SUFFIX}")
            meta_path.write_text(json.dumps(sidecar, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")

        try:
            await anyio.to_thread.run_sync(_write)
        except OSError as exc:
            raise StorageError(f"Failed to write {key}: {exc}", key=key) from exc
        logger.debug("storage_object_uploaded", extra={"key": key, "size": len(data)})
        return key

    async def delete(self, organization_id: str, key: str) -> bool:
        path = self._path_for(organization_id, key)

        def _unlink() -> bool:
            meta_path = path.with_name(f"{path.name}{_SIDECAR_SUFFIX}")
            meta_path.unlink(missing_ok=True)
            if not path.exists():
                return False
            path.unlink()
            return True

        try:
            return await anyio.to_thread.run_sync(_unlink)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}", key=key) from exc

    async def exists(self, organization_id: str, key: str) -> bool:
        path = self._path_for(organization_id, key)
        return await anyio.to_thread.run_sync(path.is_file)

    async def read_tags(self, organization_id: str, key: str) -> dict[str, str]:
        path = self._path_for(organization_id, key)
        meta_path = path.with_name(f"{path.name}{_SIDECAR_SUFFIX}")
        try:
            raw = await anyio.to_thread.run_sync(lambda: meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        return dict(json.loads(raw).get("tags") or {})

    def generate_derived_key(self, source_key: str, suffix: str, ext: str = "webp") -> str:
        return derived_key(source_key, suffix, ext)
