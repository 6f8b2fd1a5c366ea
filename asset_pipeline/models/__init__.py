from asset_pipeline.db.base import Base  # noqa: F401
from asset_pipeline.models.processing import (  # noqa: F401
    Asset,
    AssetFileType,
    AssetStatus,
    ProcessingJobStatus,
    ProcessingJobType,
    ProcessingPriority,
)
