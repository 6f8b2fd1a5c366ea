from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from asset_pipeline.models.processing import (
    MAX_RETRIES_BY_TYPE,
    TERMINAL_STATUSES,
    AssetFileType,
    AssetStatus,
    ProcessingJobStatus,
    ProcessingJobType,
    ProcessingPriority,
)


ThumbnailFormatLiteral = Literal["webp", "jpeg", "png"]
ThumbnailFitLiteral = Literal["cover", "contain", "fill", "inside", "outside"]
ThumbnailPresetLiteral = Literal["small", "medium", "large", "preview"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_job_id(job_type: ProcessingJobType, asset_id: str, created_at: datetime) -> str:
    return f"job_{job_type.value}_{asset_id}_{int(created_at.timestamp() * 1000)}"


class ProcessingJob(BaseModel):
    id: str
    asset_id: str
    organization_id: str
    type: ProcessingJobType
    status: ProcessingJobStatus = ProcessingJobStatus.queued
    priority: ProcessingPriority = ProcessingPriority.normal
    metadata: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def new(
        cls,
        *,
        asset_id: str,
        organization_id: str,
        job_type: ProcessingJobType,
        metadata: dict[str, Any] | None = None,
        priority: ProcessingPriority = ProcessingPriority.normal,
        now: datetime | None = None,
    ) -> "ProcessingJob":
        created_at = now or utcnow()
        return cls(
            id=build_job_id(job_type, asset_id, created_at),
            asset_id=asset_id,
            organization_id=organization_id,
            type=job_type,
            priority=priority,
            metadata=dict(metadata or {}),
            max_retries=MAX_RETRIES_BY_TYPE[job_type],
            created_at=created_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ChunkMergeMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    chunk_keys: list[str] = Field(default_factory=list)
    total_size: int | None = None


class PreviewMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    page: int = Field(default=1, ge=1)
    width: int = Field(default=600, ge=1, le=4096)
    height: int = Field(default=800, ge=1, le=4096)
    format: ThumbnailFormatLiteral = "webp"
    quality: int = Field(default=85, ge=1, le=100)


class ThumbnailMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    presets: list[ThumbnailPresetLiteral] = Field(default_factory=lambda: ["small", "medium", "large"], min_length=1)


class FollowOnJob(BaseModel):
    type: ProcessingJobType
    priority: ProcessingPriority = ProcessingPriority.normal
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProcessingResult(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    next_jobs: list[FollowOnJob] = Field(default_factory=list)
    retryable: bool = True
    asset_updated: bool = False

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None, *, next_jobs: list[FollowOnJob] | None = None) -> "ProcessingResult":
        return cls(success=True, data=data, next_jobs=list(next_jobs or []))

    @classmethod
    def fail(cls, error: str, *, retryable: bool = True, asset_updated: bool = False) -> "ProcessingResult":
        return cls(success=False, error=error, retryable=retryable, asset_updated=asset_updated)


class ThumbnailOptions(BaseModel):
    width: int = Field(ge=1, le=8192)
    height: int = Field(ge=1, le=8192)
    format: ThumbnailFormatLiteral = "webp"
    quality: int = Field(default=85, ge=1, le=100)
    fit: ThumbnailFitLiteral = "cover"
    background: str | None = None
    page: int = Field(default=1, ge=1)
    timestamp: float = Field(default=1.0, ge=0)


class ThumbnailResult(BaseModel):
    success: bool
    thumbnail_key: str | None = None
    size: int | None = None
    dimensions: tuple[int, int] | None = None
    error: str | None = None
    preset: str | None = None


class QueueStats(BaseModel):
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    queue_lengths: dict[str, int] = Field(default_factory=dict)


class AssetRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    file_name: str
    mime_type: str
    file_type: AssetFileType
    file_size: int | None = None
    storage_key: str
    thumbnail_key: str | None = None
    status: AssetStatus = AssetStatus.uploading
    processing_error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
