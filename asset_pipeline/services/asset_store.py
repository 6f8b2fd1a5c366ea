from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from asset_pipeline.models.processing import Asset, AssetStatus
from asset_pipeline.schemas.processing import AssetRecord


logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = frozenset(
    {"file_name", "mime_type", "file_type", "file_size", "storage_key", "thumbnail_key", "status", "processing_error"}
)


class AssetStore(Protocol):
    async def get_asset(self, asset_id: str) -> AssetRecord | None: ...

    async def update_asset(self, asset_id: str, changes: dict[str, Any]) -> AssetRecord | None: ...

    async def update_asset_status(
        self, asset_id: str, status: AssetStatus, error: str | None = None
    ) -> AssetRecord | None: ...


def merge_metadata(existing: dict[str, Any] | None, incoming: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(existing or {})
    merged.update(incoming or {})
    return merged


def _load_metadata(raw: str | None) -> dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except ValueError:
        logger.warning("asset_metadata_invalid_json")
        return {}
    return value if isinstance(value, dict) else {}


def _to_record(asset: Asset) -> AssetRecord:
    return AssetRecord(
        id=asset.id,
        organization_id=asset.organization_id,
        file_name=asset.file_name,
        mime_type=asset.mime_type,
        file_type=asset.file_type,
        file_size=asset.file_size,
        storage_key=asset.storage_key,
        thumbnail_key=asset.thumbnail_key,
        status=asset.status,
        processing_error=asset.processing_error,
        metadata=_load_metadata(asset.metadata_json),
    )


class SqlAssetStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_asset(self, asset_id: str) -> AssetRecord | None:
        async with self._session_factory() as session:
            asset = await session.scalar(select(Asset).where(Asset.id == asset_id))
            return _to_record(asset) if asset is not None else None

    async def update_asset(self, asset_id: str, changes: dict[str, Any]) -> AssetRecord | None:
        async with self._session_factory() as session:
            asset = await session.scalar(select(Asset).where(Asset.id == asset_id))
            if asset is None:
                logger.warning("asset_update_missing", extra={"asset_id": asset_id})
                return None
            for key, value in changes.items():
                if key == "metadata":
                    merged = merge_metadata(_load_metadata(asset.metadata_json), value)
                    asset.metadata_json = json.dumps(merged, ensure_ascii=False, default=str)
                elif key in _UPDATABLE_COLUMNS:
                    setattr(asset, key, value)
            session.add(asset)
            await session.commit()
            await session.refresh(asset)
            return _to_record(asset)

    async def update_asset_status(
        self, asset_id: str, status: AssetStatus, error: str | None = None
    ) -> AssetRecord | None:
        return await self.update_asset(asset_id, {"status": status, "processing_error": error})

    async def add_asset(self, record: AssetRecord) -> AssetRecord:
        async with self._session_factory() as session:
            asset = Asset(
                id=record.id,
                organization_id=record.organization_id,
                file_name=record.file_name,
                mime_type=record.mime_type,
                file_type=record.file_type,
                file_size=record.file_size,
                storage_key=record.storage_key,
                thumbnail_key=record.thumbnail_key,
                status=record.status,
                processing_error=record.processing_error,
                metadata_json=json.dumps(record.metadata, ensure_ascii=False, default=str),
            )
            session.add(asset)
            await session.commit()
            await session.refresh(asset)
            return _to_record(asset)


class InMemoryAssetStore:
    def __init__(self, assets: list[AssetRecord] | None = None) -> None:
        self._assets: dict[str, AssetRecord] = {asset.id: asset for asset in assets or []}

    async def get_asset(self, asset_id: str) -> AssetRecord | None:
        asset = self._assets.get(asset_id)
        return asset.model_copy(deep=True) if asset is not None else None

    async def update_asset(self, asset_id: str, changes: dict[str, Any]) -> AssetRecord | None:
        asset = self._assets.get(asset_id)
        if asset is None:
            logger.warning("asset_update_missing", extra={"asset_id": asset_id})
            return None
        update: dict[str, Any] = {}
        for key, value in changes.items():
            if key == "metadata":
                update["metadata"] = merge_metadata(asset.metadata, value)
            elif key in _UPDATABLE_COLUMNS:
                update[key] = value
        self._assets[asset_id] = AssetRecord.model_validate({**asset.model_dump(), **update})
        return self._assets[asset_id].model_copy(deep=True)

    async def update_asset_status(
        self, asset_id: str, status: AssetStatus, error: str | None = None
    ) -> AssetRecord | None:
        return await self.update_asset(asset_id, {"status": status, "processing_error": error})

    async def add_asset(self, record: AssetRecord) -> AssetRecord:
        self._assets[record.id] = record.model_copy(deep=True)
        return record
