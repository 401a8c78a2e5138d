"""
Export Jobs API Routes

Provides endpoints for starting export jobs, polling their progress,
cancelling them and downloading finished payloads.

Features:
- Start bulk, multi-sheet and permissions report exports (202 + job id)
- List active jobs and read a single job's progress
- Cancel a running job
- Download a completed payload
- Clean up stale jobs and report engine status
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from error_handlers import ExportJobConflictError, ExportJobNotFoundError, ExportNotReadyError
from export_schemas import (
    ExportCancelResponse,
    ExportJobListResponse,
    ExportJobResponse,
    ExportProgress,
    ExportRequest,
    ExportStatus,
    MultiSheetExportRequest,
    PermissionsExportRequest,
)
from services.export_engine import ExportEngine
from services.export_worker import get_export_engine, get_worker_status

# Configure logging
logger = logging.getLogger(__name__)

# Router setup
router = APIRouter(
    prefix="/v1.0/export/jobs",
    tags=["Export Jobs"],
    responses={404: {"description": "Not found"}},
)

ACCEPTED_MESSAGE = "Export job started. Poll the job status and download when complete."


def _accepted(engine: ExportEngine, job_id: str) -> ExportJobResponse:
    progress = engine.get_progress(job_id)
    return ExportJobResponse(
        job_id=job_id,
        status=progress.status if progress else ExportStatus.PREPARING,
        message=ACCEPTED_MESSAGE,
    )


@router.post("", response_model=ExportJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_export(
    request: ExportRequest,
    engine: ExportEngine = Depends(get_export_engine),
):
    """
    Start a bulk export of the records in the request body.

    **Returns:**
    - job_id to poll with GET /v1.0/export/jobs/{job_id}
    """
    job_id = engine.start_export(request)
    logger.info(f"Export job {job_id} accepted ({len(request.data)} records, {request.format})")
    return _accepted(engine, job_id)


@router.post("/multi-sheet", response_model=ExportJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_multi_sheet_export(
    request: MultiSheetExportRequest,
    engine: ExportEngine = Depends(get_export_engine),
):
    """Start an XLSX export with one sheet per entry in `sheets`."""
    job_id = engine.start_multi_sheet_export(request)
    logger.info(f"Multi-sheet export job {job_id} accepted ({len(request.sheets)} sheets)")
    return _accepted(engine, job_id)


@router.post("/permissions", response_model=ExportJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_permissions_export(
    request: PermissionsExportRequest,
    engine: ExportEngine = Depends(get_export_engine),
):
    """Start the roles and permissions workbook export."""
    job_id = engine.start_permissions_export(request)
    logger.info(f"Permissions export job {job_id} accepted ({len(request.roles)} roles)")
    return _accepted(engine, job_id)


@router.get("", response_model=ExportJobListResponse)
async def list_export_jobs(
    status_filter: Optional[ExportStatus] = Query(None, description="Filter by job status"),
    engine: ExportEngine = Depends(get_export_engine),
):
    """
    List export jobs that have not been cleaned up yet.

    **Query Parameters:**
    - status_filter: preparing, processing, completed, failed or cancelled
    """
    jobs = engine.get_active_jobs()
    if status_filter is not None:
        jobs = [job for job in jobs if job.status == status_filter]
    return ExportJobListResponse(jobs=jobs, total=len(jobs))


@router.get("/status")
async def export_engine_status(engine: ExportEngine = Depends(get_export_engine)):
    """Job counts by status and storage usage."""
    return get_worker_status(engine)


@router.post("/cleanup")
async def cleanup_stale_jobs(
    max_age_seconds: Optional[float] = Query(None, ge=0, description="Age threshold (default: retention period)"),
    engine: ExportEngine = Depends(get_export_engine),
):
    """Remove finished jobs older than the threshold and release their payloads."""
    cleaned = engine.cleanup_stale_jobs(max_age_seconds)
    return {"cleaned_up": cleaned}


@router.get("/{job_id}", response_model=ExportProgress)
async def get_export_job(job_id: str, engine: ExportEngine = Depends(get_export_engine)):
    """Progress of a single export job."""
    progress = engine.get_progress(job_id)
    if progress is None:
        raise ExportJobNotFoundError(job_id)
    return progress


@router.delete("/{job_id}", response_model=ExportCancelResponse)
async def cancel_export_job(job_id: str, engine: ExportEngine = Depends(get_export_engine)):
    """
    Cancel a running export job.

    **Errors:**
    - 404 when the job is unknown
    - 409 when the job already finished
    """
    progress = engine.get_progress(job_id)
    if progress is None:
        raise ExportJobNotFoundError(job_id)

    if not engine.cancel_export(job_id):
        raise ExportJobConflictError(job_id, "cancel", progress.status.value)

    logger.info(f"Export job {job_id} cancelled via API")
    return ExportCancelResponse(job_id=job_id, cancelled=True)


@router.get("/{job_id}/download")
async def download_export(job_id: str, engine: ExportEngine = Depends(get_export_engine)):
    """Download the payload of a completed export job."""
    progress = engine.get_progress(job_id)
    if progress is None:
        raise ExportJobNotFoundError(job_id)

    payload = engine.storage.get(progress.download_url) if progress.download_url else None
    if progress.status != ExportStatus.COMPLETED or payload is None:
        raise ExportNotReadyError(job_id, progress.status.value)

    logger.info(f"Export job {job_id} downloaded ({payload.size} bytes)")
    return Response(
        content=payload.content,
        media_type=payload.content_type,
        headers={"Content-Disposition": f'attachment; filename="{payload.filename}"'},
    )
