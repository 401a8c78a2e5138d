"""
Export pipeline configuration

Settings are read from the environment (and a local .env file when present)
once at import time. ExportConfig.from_env() turns them into an instance that
services can receive, so tests can build their own without touching os.environ.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class ExportSettings:
    """Environment backed export settings"""

    # Streaming
    BATCH_SIZE = int(os.getenv("EXPORT_BATCH_SIZE", 1000))
    MAX_MEMORY_MB = float(os.getenv("EXPORT_MAX_MEMORY_MB", 100))
    MEMORY_WARNING_RATIO = float(os.getenv("EXPORT_MEMORY_WARNING_RATIO", 0.8))
    MEMORY_ESTIMATOR = os.getenv("EXPORT_MEMORY_ESTIMATOR", "job_metadata")

    # Transform
    SYNC_TRANSFORM_THRESHOLD = int(os.getenv("EXPORT_SYNC_TRANSFORM_THRESHOLD", 1000))
    CHUNK_SIZE = int(os.getenv("EXPORT_CHUNK_SIZE", 500))
    CHUNK_CONCURRENCY = int(os.getenv("EXPORT_CHUNK_CONCURRENCY", 4))

    # Lifetime (in seconds)
    URL_RETENTION_SECONDS = float(os.getenv("EXPORT_URL_RETENTION_SECONDS", 3600))  # 1 hour
    JOB_HISTORY_SIZE = int(os.getenv("EXPORT_JOB_HISTORY_SIZE", 100))

    # Delivery
    DOWNLOAD_DIR = os.getenv("EXPORT_DOWNLOAD_DIR", None)

    LOG_LEVEL = os.getenv("EXPORT_LOG_LEVEL", "INFO")


@dataclass
class ExportConfig:
    batch_size: int = 1000
    max_memory_mb: float = 100
    memory_warning_ratio: float = 0.8
    memory_estimator: str = "job_metadata"
    sync_transform_threshold: int = 1000
    chunk_size: int = 500
    chunk_concurrency: int = 4
    url_retention_seconds: float = 3600
    job_history_size: int = 100
    download_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ExportConfig":
        config = cls(
            batch_size=ExportSettings.BATCH_SIZE,
            max_memory_mb=ExportSettings.MAX_MEMORY_MB,
            memory_warning_ratio=ExportSettings.MEMORY_WARNING_RATIO,
            memory_estimator=ExportSettings.MEMORY_ESTIMATOR,
            sync_transform_threshold=ExportSettings.SYNC_TRANSFORM_THRESHOLD,
            chunk_size=ExportSettings.CHUNK_SIZE,
            chunk_concurrency=ExportSettings.CHUNK_CONCURRENCY,
            url_retention_seconds=ExportSettings.URL_RETENTION_SECONDS,
            job_history_size=ExportSettings.JOB_HISTORY_SIZE,
            download_dir=ExportSettings.DOWNLOAD_DIR,
        )
        logger.debug(f"Export config loaded from environment: {config}")
        return config
