"""
Export Engine Service

Runs export jobs in the background on the event loop and reports progress
through the job orchestrator.

Features:
- Bulk exports of in-memory datasets
- Streaming exports paginated through an async data provider
- Sync or chunked transformation depending on batch size
- Memory guard on the streaming accumulator
- Multi-sheet workbooks and the permissions report
- Object URL creation, download delivery and deferred cleanup
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from export_config import ExportConfig
from error_handlers import AbortedError, DataProviderError, MemoryLimitExceededError
from export_schemas import (
    ExportFormat,
    ExportOptions,
    ExportProgress,
    ExportRequest,
    ExportStatus,
    FieldMapping,
    MultiSheetExportRequest,
    Page,
    PermissionsExportRequest,
    StreamingExportRequest,
)
from services.export_format_handler import ExportFormatHandler, SheetData, XLSX_CONTENT_TYPE
from services.export_job_orchestrator import CancellationToken, ExportJobOrchestrator
from services.field_transformer import transform_items
from services.permissions_report import generate_permissions_workbook
from utils.chunk_processor import process_in_chunks
from utils.export_file_storage import ExportFileStorage, StoredPayload

# Configure logging
logger = logging.getLogger(__name__)

DataProvider = Callable[[int, int], Awaitable[Any]]


class JobMetadataMemoryEstimator:
    """Estimates memory from the serialized metadata of the active jobs."""

    def __init__(self, orchestrator: ExportJobOrchestrator):
        self.orchestrator = orchestrator

    def __call__(self, rows: List[Dict[str, Any]]) -> float:
        return self.orchestrator.estimate_memory_usage_mb()


class AccumulatedRowsMemoryEstimator:
    """Estimates memory from the serialized size of the accumulated rows."""

    def __call__(self, rows: List[Dict[str, Any]]) -> float:
        payload = json.dumps(rows, ensure_ascii=False, default=str)
        return round(len(payload.encode("utf-8")) / 1024 / 1024, 2)


class ExportEngine:
    """
    Core export processing engine.

    Handles:
    - start_export / start_streaming_export: fire-and-forget, return a job id
    - cancel_export, get_progress, get_active_jobs for callers that poll
    - Deferred cleanup of finished jobs and their object URLs
    """

    def __init__(
        self,
        orchestrator: ExportJobOrchestrator = None,
        format_handler: ExportFormatHandler = None,
        storage: ExportFileStorage = None,
        config: ExportConfig = None,
        download_trigger: Callable[[StoredPayload], Any] = None,
        memory_estimator: Callable[[List[Dict[str, Any]]], float] = None,
    ):
        """
        Initialize ExportEngine.

        Args:
            orchestrator: Job registry (default: new ExportJobOrchestrator)
            format_handler: Encoder registry (default: csv, json, xlsx)
            storage: Object URL table (default: new ExportFileStorage)
            config: Export settings (default: read from the environment)
            download_trigger: Called with each finished payload (default: storage.save_download)
            memory_estimator: rows -> estimated MB for the streaming memory guard
        """
        self.config = config or ExportConfig.from_env()
        self.orchestrator = orchestrator or ExportJobOrchestrator(history_size=self.config.job_history_size)
        self.format_handler = format_handler or ExportFormatHandler()
        self.storage = storage or ExportFileStorage(self.config.download_dir)
        self.download_trigger = download_trigger or self.storage.save_download

        if memory_estimator is None:
            if self.config.memory_estimator == "accumulated_rows":
                memory_estimator = AccumulatedRowsMemoryEstimator()
            else:
                memory_estimator = JobMetadataMemoryEstimator(self.orchestrator)
        self.memory_estimator = memory_estimator

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cleanup_handles: Dict[str, asyncio.TimerHandle] = {}
        self.orchestrator.add_cleanup_hook(self._on_job_cleanup)

        logger.info(
            f"ExportEngine initialized (batch size: {self.config.batch_size}, "
            f"memory limit: {self.config.max_memory_mb} MB)"
        )

    # ===== PUBLIC API =====

    def start_export(self, request: Union[ExportRequest, Dict[str, Any]]) -> str:
        """
        Start a bulk export of in-memory records.

        Must be called from a running event loop. Failures are recorded on
        the job, never raised to the caller.

        Returns:
            Job id to poll with get_progress()
        """
        if isinstance(request, dict):
            request = ExportRequest(**request)

        job = self.orchestrator.initialize_job(total_records=len(request.data))
        logger.info(
            f"Starting export job {job.job_id}: {len(request.data)} records, "
            f"format={request.format}, filename={request.filename}"
        )
        self._spawn(job.job_id, self.process_export(request, job.job_id, job.token), "process_export")
        return job.job_id

    async def start_streaming_export(self, request: Union[StreamingExportRequest, Dict[str, Any]]) -> str:
        """
        Start a streaming export fed by request.data_provider.

        When total_records is not given, one record is fetched first to learn
        the total. A failing probe still returns a job id, of a failed job.

        Returns:
            Job id to poll with get_progress()
        """
        if isinstance(request, dict):
            request = StreamingExportRequest(**request)

        total = request.total_records
        if total is None:
            try:
                probe = await self._fetch_page(request.data_provider, 0, 1)
                total = probe.total
            except DataProviderError as e:
                job = self.orchestrator.initialize_job(total_records=0)
                self.orchestrator.handle_error(job.job_id, e, {"phase": "probe_total"})
                return job.job_id

        job = self.orchestrator.initialize_job(total_records=total)
        logger.info(
            f"Starting streaming export job {job.job_id}: {total} records, "
            f"batch size {self.config.batch_size}, format={request.format}"
        )
        self._spawn(
            job.job_id,
            self.process_streaming_export(request, job.job_id, job.token, total),
            "process_streaming_export",
        )
        return job.job_id

    def start_multi_sheet_export(self, request: Union[MultiSheetExportRequest, Dict[str, Any]]) -> str:
        """Start an XLSX export with one sheet per request sheet."""
        if isinstance(request, dict):
            request = MultiSheetExportRequest(**request)

        total = sum(len(sheet.data) for sheet in request.sheets)
        job = self.orchestrator.initialize_job(total_records=total)
        logger.info(f"Starting multi-sheet export job {job.job_id}: {len(request.sheets)} sheets, {total} records")
        self._spawn(job.job_id, self.process_multi_sheet_export(request, job.job_id, job.token), "process_multi_sheet_export")
        return job.job_id

    def start_permissions_export(self, request: Union[PermissionsExportRequest, Dict[str, Any]]) -> str:
        """Start the permissions report workbook export."""
        if isinstance(request, dict):
            request = PermissionsExportRequest(**request)

        job = self.orchestrator.initialize_job(total_records=len(request.role_permissions))
        logger.info(f"Starting permissions export job {job.job_id}: {len(request.roles)} roles")
        self._spawn(job.job_id, self.process_permissions_export(request, job.job_id, job.token), "process_permissions_export")
        return job.job_id

    def cancel_export(self, job_id: str) -> bool:
        return self.orchestrator.cancel(job_id)

    def get_progress(self, job_id: str) -> Optional[ExportProgress]:
        return self.orchestrator.get_progress(job_id)

    def get_active_jobs(self) -> List[ExportProgress]:
        return self.orchestrator.get_active_jobs()

    async def wait_for(self, job_id: str, timeout: float = None) -> Optional[ExportProgress]:
        """Wait until the job's background task finishes, then return its progress."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.get_progress(job_id)

    def cleanup_stale_jobs(self, max_age_seconds: float = None) -> int:
        """
        Clean up finished jobs older than max_age_seconds (default: retention period).

        Returns:
            Number of jobs cleaned up
        """
        if max_age_seconds is None:
            max_age_seconds = self.config.url_retention_seconds
        threshold = time.time() - max_age_seconds

        stale = [
            job.job_id for job in self.orchestrator.get_active_jobs()
            if job.status.is_terminal and job.start_time < threshold
        ]
        for job_id in stale:
            self.orchestrator.cleanup(job_id)

        self.storage.cleanup_expired(max_age_seconds)
        if stale:
            logger.info(f"Cleaned up {len(stale)} stale export jobs")
        return len(stale)

    def force_cleanup(self) -> int:
        """
        Cancel every running job and release every job and object URL.

        Returns:
            Number of jobs removed
        """
        jobs = self.orchestrator.get_active_jobs()
        for job in jobs:
            if not job.status.is_terminal:
                self.orchestrator.cancel(job.job_id)
            else:
                self.orchestrator.cleanup(job.job_id)

        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
        self.storage.revoke_all()

        logger.info(f"Force cleanup removed {len(jobs)} export jobs")
        return len(jobs)

    async def shutdown(self) -> None:
        """Stop all jobs and wait for their tasks to unwind."""
        self.force_cleanup()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("ExportEngine shutdown complete")

    # ===== JOB BODIES =====

    async def process_export(self, request: ExportRequest, job_id: str, token: CancellationToken) -> None:
        """Bulk path: 10% -> transform -> 30% -> encode -> 80% -> completed."""
        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, status=ExportStatus.PROCESSING, progress=10)

        rows = await self.transform_data(request.data, request.fields, request.options, token)

        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, progress=30)

        encoder = self.format_handler.get_encoder(request.format)
        content = encoder.encode(rows, request.fields, request.options)
        logger.info(f"Export content generated for {job_id}: {len(content)} bytes ({encoder.content_type})")

        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, progress=80)

        self._complete(
            job_id,
            content,
            encoder.content_type,
            self.format_handler.get_filename(request.filename, request.format),
            processed_records=len(rows),
        )

    async def process_streaming_export(
        self,
        request: StreamingExportRequest,
        job_id: str,
        token: CancellationToken,
        total_records: int,
    ) -> None:
        """
        Streaming path: pages are fetched, transformed and accumulated until
        total_records is reached or a page comes back empty.
        """
        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, status=ExportStatus.PROCESSING, progress=5)

        batch_size = self.config.batch_size
        accumulated: List[Dict[str, Any]] = []
        processed = 0
        offset = 0
        started = time.monotonic()

        while processed < total_records:
            token.raise_if_cancelled()
            page = await self._fetch_page(request.data_provider, offset, batch_size)
            token.raise_if_cancelled()

            if not page.data:
                logger.debug(f"Empty page at offset {offset} for {job_id}, stopping early")
                break

            # Never export past the declared total, even when the provider overshoots
            records = page.data[:total_records - processed]
            rows = await self.transform_data(records, request.fields, request.options, token)
            accumulated.extend(rows)
            processed += len(records)
            offset += batch_size

            elapsed = time.monotonic() - started
            rate = processed / elapsed if elapsed > 0 else 0
            remaining = max(0, total_records - processed)
            eta = round(remaining / rate, 2) if rate > 0 else None

            self.orchestrator.update_progress(
                job_id,
                progress=min(80, processed / total_records * 80),
                processed_records=processed,
                estimated_time_remaining=eta,
            )
            logger.debug(f"Batch fetched for {job_id}: {processed}/{total_records} records")

            if len(accumulated) >= batch_size * 2:
                self._check_memory(job_id, accumulated)

        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, progress=85)

        encoder = self.format_handler.get_encoder(request.format)
        content = encoder.encode(accumulated, request.fields, request.options)

        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, progress=95)

        self._complete(
            job_id,
            content,
            encoder.content_type,
            self.format_handler.get_filename(request.filename, request.format),
            processed_records=processed,
        )

    async def process_multi_sheet_export(
        self,
        request: MultiSheetExportRequest,
        job_id: str,
        token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, status=ExportStatus.PROCESSING, progress=10)

        increment = 80 / len(request.sheets)
        current = 10.0
        sheets: List[SheetData] = []
        processed = 0

        for sheet in request.sheets:
            token.raise_if_cancelled()
            options = request.options
            if sheet.options is not None:
                options = request.options.model_copy(update=sheet.options.model_dump(exclude_unset=True))

            rows = await self.transform_data(sheet.data, sheet.fields, options, token)
            sheets.append(SheetData(name=sheet.name, rows=rows, fields=sheet.fields))
            processed += len(rows)

            current += increment
            self.orchestrator.update_progress(job_id, progress=round(current), processed_records=processed)

        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, progress=90)

        content = self.format_handler.encode_workbook(sheets, request.include_summary, request.properties)

        token.raise_if_cancelled()
        self._complete(
            job_id,
            content,
            XLSX_CONTENT_TYPE,
            self.format_handler.get_filename(request.filename, ExportFormat.XLSX.value),
            processed_records=processed,
        )

    async def process_permissions_export(
        self,
        request: PermissionsExportRequest,
        job_id: str,
        token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, status=ExportStatus.PROCESSING, progress=10)

        content = generate_permissions_workbook(request.roles, request.role_permissions, request.users)
        await asyncio.sleep(0)

        token.raise_if_cancelled()
        self.orchestrator.update_progress(job_id, progress=90)

        self._complete(
            job_id,
            content,
            XLSX_CONTENT_TYPE,
            self.format_handler.get_filename(request.filename, ExportFormat.XLSX.value),
            processed_records=len(request.role_permissions),
        )

    # ===== TRANSFORM =====

    async def transform_data(
        self,
        items: List[Any],
        fields: List[FieldMapping],
        options: ExportOptions,
        token: CancellationToken = None,
    ) -> List[Dict[str, Any]]:
        """
        Transform records into rows.

        Small batches are transformed inline. Larger ones go through the
        chunk processor and fall back to inline on any non-cancel failure.
        """
        if len(items) < self.config.sync_transform_threshold:
            return transform_items(items, fields, options)

        try:
            return await process_in_chunks(
                items,
                lambda chunk: transform_items(chunk, fields, options),
                chunk_size=self.config.chunk_size,
                concurrency=self.config.chunk_concurrency,
                token=token,
            )
        except AbortedError:
            raise
        except Exception as e:
            logger.warning(f"Chunked transform failed, falling back to synchronous transform: {str(e)}")
            return transform_items(items, fields, options)

    # ===== HELPERS =====

    async def _fetch_page(self, data_provider: DataProvider, offset: int, limit: int) -> Page:
        try:
            result = await data_provider(offset, limit)
        except AbortedError:
            raise
        except Exception as e:
            raise DataProviderError(str(e) or type(e).__name__, offset=offset, limit=limit) from e

        try:
            if isinstance(result, Page):
                return result
            if isinstance(result, dict):
                return Page(**result)
            return Page(data=getattr(result, "data"), total=getattr(result, "total"))
        except Exception as e:
            raise DataProviderError(f"Invalid page: {str(e)}", offset=offset, limit=limit) from e

    def _check_memory(self, job_id: str, rows: List[Dict[str, Any]]) -> None:
        estimated = self.memory_estimator(rows)
        limit = self.config.max_memory_mb

        if estimated > limit:
            logger.error(f"Memory limit exceeded for {job_id}: {estimated} MB > {limit} MB")
            raise MemoryLimitExceededError(estimated_mb=estimated, limit_mb=limit)

        if estimated > limit * self.config.memory_warning_ratio:
            logger.warning(f"High memory usage during export {job_id}: {estimated} MB of {limit} MB")

    def _complete(
        self,
        job_id: str,
        content: bytes,
        content_type: str,
        filename: str,
        processed_records: int,
    ) -> None:
        """Register the payload, mark the job completed, deliver it, schedule cleanup."""
        url = self.storage.create_object_url(content, content_type, filename, job_id=job_id)
        progress = self.orchestrator.update_progress(
            job_id,
            status=ExportStatus.COMPLETED,
            progress=100,
            processed_records=processed_records,
            estimated_time_remaining=0,
            download_url=url,
        )

        if progress is None or progress.status != ExportStatus.COMPLETED:
            # Job was cancelled or removed meanwhile
            self.storage.revoke_object_url(url)
            return

        elapsed = time.time() - progress.start_time
        rate = processed_records / elapsed if elapsed > 0 else processed_records
        logger.info(
            f"Export job {job_id} completed: {processed_records} records, "
            f"{len(content)} bytes in {elapsed:.2f}s ({rate:.0f} records/s)"
        )

        payload = self.storage.get(url)
        try:
            self.download_trigger(payload)
        except Exception as e:
            logger.error(f"Download delivery failed for {job_id}: {str(e)}", exc_info=True)

        self._schedule_cleanup(job_id)

    def _schedule_cleanup(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._cleanup_handles[job_id] = loop.call_later(
            self.config.url_retention_seconds, self._run_scheduled_cleanup, job_id
        )

    def _run_scheduled_cleanup(self, job_id: str) -> None:
        self._cleanup_handles.pop(job_id, None)
        logger.debug(f"Scheduled cleanup executed for {job_id}")
        self.orchestrator.cleanup(job_id)

    def _on_job_cleanup(self, job: ExportProgress) -> None:
        handle = self._cleanup_handles.pop(job.job_id, None)
        if handle is not None:
            handle.cancel()
        if job.download_url:
            self.storage.revoke_object_url(job.download_url)

    def _spawn(self, job_id: str, coro: Awaitable[None], phase: str) -> None:
        task = asyncio.get_running_loop().create_task(self._run_job(job_id, coro, phase))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    async def _run_job(self, job_id: str, coro: Awaitable[None], phase: str) -> None:
        try:
            await coro
        except AbortedError:
            logger.info(f"Export job {job_id} aborted during {phase}")
        except Exception as e:
            self.orchestrator.handle_error(job_id, e, {"phase": phase})
