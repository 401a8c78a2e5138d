"""
Export Worker

Process-wide ExportEngine instance used by the HTTP routes, plus status
reporting and shutdown. All jobs run as tasks on the application's event
loop.
"""

import logging
from collections import Counter
from typing import Optional

from export_config import ExportConfig
from services.export_engine import ExportEngine

# Configure logging
logger = logging.getLogger(__name__)


# Global engine instance
_export_engine: Optional[ExportEngine] = None


def get_export_engine() -> ExportEngine:
    """Get or create the global export engine instance."""
    global _export_engine

    if _export_engine is None:
        # Create engine with configuration from environment
        _export_engine = ExportEngine(config=ExportConfig.from_env())

    return _export_engine


def get_worker_status(engine: ExportEngine) -> dict:
    """Summarize jobs by status and the payloads held in storage."""
    jobs = engine.get_active_jobs()
    by_status = Counter(job.status.value for job in jobs)
    return {
        "active_jobs": len(jobs),
        "jobs_by_status": dict(by_status),
        "storage": engine.storage.get_storage_stats(),
        "batch_size": engine.config.batch_size,
        "max_memory_mb": engine.config.max_memory_mb,
    }


async def shutdown_export_engine() -> None:
    """Shutdown the global export engine."""
    global _export_engine

    if _export_engine is not None:
        logger.info("Shutting down export engine...")
        await _export_engine.shutdown()
        _export_engine = None
