"""
Export Job Orchestrator

Tracks the lifecycle of export jobs: creation, progress patches, errors,
cancellation and cleanup. Holds job metadata only, never payloads.

State machine:
    preparing -> processing -> completed | failed | cancelled
    cancelled is reachable from any non-terminal state.
"""

import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from error_handlers import AbortedError
from export_schemas import ExportProgress, ExportStatus

# Configure logging
logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal checked at every suspension point."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortedError(self.job_id)


@dataclass
class InitializedJob:
    job_id: str
    progress: ExportProgress
    token: CancellationToken


def generate_job_id() -> str:
    return f"export-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class ExportJobOrchestrator:
    """
    Registry of export jobs and their cancellation tokens.

    Handles:
    - Job creation with a fresh cancellation token
    - Progress patches (clamped, non-decreasing while the job is running)
    - Error recording and cancellation
    - Cleanup with hooks, keeping a bounded history of final snapshots
    """

    def __init__(self, history_size: int = 100):
        self._jobs: Dict[str, ExportProgress] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._history: "OrderedDict[str, ExportProgress]" = OrderedDict()
        self._history_size = history_size
        self._cleanup_hooks: List[Callable[[ExportProgress], None]] = []

    def add_cleanup_hook(self, hook: Callable[[ExportProgress], None]) -> None:
        """Register a callback run with the job's last snapshot before it is removed."""
        self._cleanup_hooks.append(hook)

    def initialize_job(
        self,
        total_records: int = 0,
        initial_status: ExportStatus = ExportStatus.PREPARING,
    ) -> InitializedJob:
        job_id = generate_job_id()
        while job_id in self._jobs or job_id in self._history:
            job_id = generate_job_id()

        progress = ExportProgress(
            job_id=job_id,
            status=initial_status,
            progress=0,
            total_records=max(0, int(total_records or 0)),
            processed_records=0,
            start_time=time.time(),
        )
        token = CancellationToken(job_id)

        self._jobs[job_id] = progress
        self._tokens[job_id] = token

        logger.info(f"Export job initialized: {job_id} ({progress.total_records} records)")
        return InitializedJob(job_id=job_id, progress=progress.model_copy(), token=token)

    def update_progress(self, job_id: str, **patch) -> Optional[ExportProgress]:
        """
        Merge a patch into a job.

        Progress is clamped into [0, 100] and never moves backwards while the
        job is running. Terminal jobs only accept patches that keep their status.
        """
        current = self._jobs.get(job_id)
        if current is None:
            logger.warning(f"Progress update for unknown export job: {job_id}")
            return None

        if "status" in patch and patch["status"] is not None:
            patch["status"] = ExportStatus(patch["status"])
            if current.status.is_terminal and patch["status"] != current.status:
                logger.warning(
                    f"Ignoring status change {current.status.value} -> {patch['status'].value} "
                    f"for finished export job {job_id}"
                )
                return current.model_copy()

        if "progress" in patch and patch["progress"] is not None:
            value = min(100, max(0, int(round(patch["progress"]))))
            if not current.status.is_terminal:
                value = max(current.progress, value)
            patch["progress"] = value

        updated = current.model_copy(update=patch)
        self._jobs[job_id] = updated

        if updated.status != current.status:
            logger.info(f"Export job {job_id} status: {current.status.value} -> {updated.status.value}")

        return updated.model_copy()

    def handle_error(self, job_id: str, error: BaseException, context: Dict = None) -> None:
        """Record a failure on the job. Never raises."""
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        logger.error(
            f"Export job {job_id} failed: {message} (context: {context or {}})",
            exc_info=(type(error), error, error.__traceback__),
        )
        self.update_progress(job_id, status=ExportStatus.FAILED, error=message)

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a running job.

        Returns:
            True if a live job was cancelled, False for unknown or finished jobs
        """
        token = self._tokens.get(job_id)
        current = self._jobs.get(job_id)
        if token is None or current is None or current.status.is_terminal:
            logger.warning(f"Cannot cancel export job {job_id}: not running")
            return False

        token.cancel()
        self.update_progress(job_id, status=ExportStatus.CANCELLED)
        self.cleanup(job_id)
        logger.info(f"Export job cancelled: {job_id}")
        return True

    def get_token(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    def get_progress(self, job_id: str) -> Optional[ExportProgress]:
        job = self._jobs.get(job_id) or self._history.get(job_id)
        return job.model_copy() if job is not None else None

    def get_active_jobs(self) -> List[ExportProgress]:
        return [job.model_copy() for job in self._jobs.values()]

    def cleanup(self, job_id: str) -> None:
        """Remove a job and its token, running the cleanup hooks first."""
        job = self._jobs.pop(job_id, None)
        self._tokens.pop(job_id, None)
        if job is None:
            return

        for hook in self._cleanup_hooks:
            try:
                hook(job)
            except Exception as e:
                logger.error(f"Cleanup hook failed for export job {job_id}: {str(e)}", exc_info=True)

        if job.status.is_terminal:
            self._remember(job)

        logger.debug(f"Export job cleaned up: {job_id}")

    def _remember(self, job: ExportProgress) -> None:
        if self._history_size <= 0:
            return
        self._history[job.job_id] = job
        self._history.move_to_end(job.job_id)
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    def estimate_memory_usage_mb(self) -> float:
        """Size of the serialized metadata of all active jobs, in MB."""
        payload = json.dumps([job.model_dump(mode="json") for job in self._jobs.values()])
        return round(len(payload) / 1024 / 1024, 2)
