from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Asset Pipeline"
    app_version: str = "0.1.0"
    environment: str = "local"

    database_url: str = "sqlite+aiosqlite:///./asset_pipeline.db"
    redis_url: str | None = None
    media_root: str = "uploads"
    json_logs: bool = False

    processing_job_key_prefix: str = "processing_job"
    processing_queue_key_prefix: str = "processing_queue"
    processing_job_ttl_seconds: int = 3600
    processing_job_critical_ttl_seconds: int = 86400
    processing_queue_ttl_seconds: int = 3600
    processing_retry_backoff_base_seconds: int = 2
    processing_retry_backoff_max_seconds: int = 60
    processing_job_timeout_seconds: float = 300.0

    processing_worker_poll_interval_seconds: float = 2.0
    processing_worker_heartbeat_prefix: str = "processing:workers:heartbeat"
    processing_worker_heartbeat_ttl_seconds: int = 30
    processing_worker_heartbeat_file: str = "/tmp/processing-worker-heartbeat.json"

    ffmpeg_binary: str | None = None
    ffmpeg_timeout_seconds: float = 30.0

    virus_scan_signatures: list[str] = [
        r"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*",
    ]
    virus_scanner_id: str = "signature-scanner"

    text_preview_max_chars: int = 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
