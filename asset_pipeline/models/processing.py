from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from asset_pipeline.db.base import Base


class ProcessingJobType(str, enum.Enum):
    chunk_merge = "chunk_merge"
    thumbnail_generation = "thumbnail_generation"
    metadata_extraction = "metadata_extraction"
    virus_scan = "virus_scan"
    optimization = "optimization"
    preview_generation = "preview_generation"


class ProcessingJobStatus(str, enum.Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class ProcessingPriority(enum.IntEnum):
    low = 1
    normal = 2
    high = 3
    critical = 4


class AssetStatus(str, enum.Enum):
    uploading = "uploading"
    processing = "processing"
    ready = "ready"
    failed = "failed"
    quarantined = "quarantined"


class AssetFileType(str, enum.Enum):
    image = "image"
    video = "video"
    audio = "audio"
    document = "document"
    other = "other"


TERMINAL_STATUSES = frozenset(
    {ProcessingJobStatus.completed, ProcessingJobStatus.failed, ProcessingJobStatus.cancelled}
)

MAX_RETRIES_BY_TYPE: dict[ProcessingJobType, int] = {
    ProcessingJobType.chunk_merge: 3,
    ProcessingJobType.thumbnail_generation: 2,
    ProcessingJobType.virus_scan: 2,
    ProcessingJobType.preview_generation: 2,
    ProcessingJobType.metadata_extraction: 1,
    ProcessingJobType.optimization: 1,
}

MAX_CONCURRENT_BY_PRIORITY: dict[ProcessingPriority, int] = {
    ProcessingPriority.critical: 5,
    ProcessingPriority.high: 3,
    ProcessingPriority.normal: 2,
    ProcessingPriority.low: 1,
}


def file_type_for_mime(mime_type: str | None) -> AssetFileType:
    value = (mime_type or "").strip().lower()
    if value.startswith("image/"):
        return AssetFileType.image
    if value.startswith("video/"):
        return AssetFileType.video
    if value.startswith("audio/"):
        return AssetFileType.audio
    if value.startswith("text/") or value.startswith("application/"):
        return AssetFileType.document
    return AssetFileType.other


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(120), nullable=False)
    file_type: Mapped[AssetFileType] = mapped_column(Enum(AssetFileType), nullable=False, index=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    thumbnail_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[AssetStatus] = mapped_column(
        Enum(AssetStatus), nullable=False, default=AssetStatus.uploading, index=True
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
