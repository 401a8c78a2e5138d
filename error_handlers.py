"""
Export Error Handling

Custom exception classes raised by the export pipeline and the FastAPI
handlers that turn them into structured error responses.

Background export failures never reach a handler: the engine records them on
the job. The handlers cover the HTTP surface (lookups, downloads, requests).
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Dict, Any, List
from datetime import datetime
import logging

from export_schemas import APIError

# Configure logging
logger = logging.getLogger(__name__)


# ===== CUSTOM EXCEPTION CLASSES =====

class ExportException(Exception):
    """Base exception for export operations."""

    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code or "EXPORT_ERROR"
        self.details = details or {}
        super().__init__(self.message)


class UnsupportedFormatError(ExportException):
    """Exception raised when no encoder exists for the requested format."""

    def __init__(self, format: str):
        super().__init__(
            message=f"Unsupported export format: {format}",
            error_code="UNSUPPORTED_FORMAT",
            details={"format": format}
        )


class MemoryLimitExceededError(ExportException):
    """Exception raised when a streaming export outgrows the memory ceiling."""

    def __init__(self, estimated_mb: float = None, limit_mb: float = None):
        super().__init__(
            message="Export size exceeds memory limit. Please use smaller batches or add filters.",
            error_code="MEMORY_LIMIT_EXCEEDED",
            details={"estimated_mb": estimated_mb, "limit_mb": limit_mb}
        )


class TransformError(ExportException):
    """Exception raised when chunked transformation fails."""

    def __init__(self, reason: str, chunk_index: int = None):
        details = {"reason": reason}
        if chunk_index is not None:
            details["chunk_index"] = chunk_index
        super().__init__(
            message=f"Record transformation failed: {reason}",
            error_code="TRANSFORM_FAILED",
            details=details
        )


class DataProviderError(ExportException):
    """Exception raised when the data provider fails to deliver a page."""

    def __init__(self, reason: str, offset: int = None, limit: int = None):
        super().__init__(
            message=f"Data provider failed at offset {offset}: {reason}",
            error_code="DATA_PROVIDER_FAILED",
            details={"reason": reason, "offset": offset, "limit": limit}
        )


class AbortedError(ExportException):
    """Exception raised at a suspension point after the job was cancelled."""

    def __init__(self, job_id: str = None):
        super().__init__(
            message=f"Export job '{job_id}' was cancelled",
            error_code="EXPORT_ABORTED",
            details={"job_id": job_id}
        )


class ExportJobNotFoundError(ExportException):
    """Exception raised when a job id is unknown."""

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Export job '{job_id}' not found",
            error_code="EXPORT_JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class ExportNotReadyError(ExportException):
    """Exception raised when a payload is requested before it exists or after it was revoked."""

    def __init__(self, job_id: str, job_status: str = None):
        super().__init__(
            message=f"Export job '{job_id}' has no downloadable payload",
            error_code="EXPORT_NOT_READY",
            details={"job_id": job_id, "status": job_status}
        )


class ExportJobConflictError(ExportException):
    """Exception raised when an operation does not apply to the job's current state."""

    def __init__(self, job_id: str, operation: str, job_status: str = None):
        super().__init__(
            message=f"Cannot {operation} export job '{job_id}' in status '{job_status}'",
            error_code="EXPORT_JOB_CONFLICT",
            details={"job_id": job_id, "operation": operation, "status": job_status}
        )


# ===== ERROR HANDLER FUNCTIONS =====

def _error_content(exc: ExportException) -> Dict[str, Any]:
    error_response = APIError(
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details
    )
    return error_response.model_dump(mode="json")


async def export_job_not_found_handler(request: Request, exc: ExportJobNotFoundError) -> JSONResponse:
    """Handle ExportJobNotFoundError exceptions."""
    logger.warning(f"Export job not found: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_content(exc)
    )


async def export_not_ready_handler(request: Request, exc: ExportNotReadyError) -> JSONResponse:
    """Handle ExportNotReadyError exceptions."""
    logger.warning(f"Export not ready: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_content(exc)
    )


async def export_conflict_handler(request: Request, exc: ExportJobConflictError) -> JSONResponse:
    logger.warning(f"Export job conflict: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_content(exc)
    )


async def unsupported_format_handler(request: Request, exc: UnsupportedFormatError) -> JSONResponse:
    logger.warning(f"Unsupported format requested: {exc.details.get('format')}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_content(exc)
    )


async def export_exception_handler(request: Request, exc: ExportException) -> JSONResponse:
    """Handle any other ExportException."""
    logger.error(f"Export error: {exc.error_code} - {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_content(exc)
    )


async def pydantic_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors from FastAPI."""
    logger.warning(f"Pydantic validation error: {exc.errors()}")

    field_errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        field_path = ".".join(str(loc) for loc in error["loc"])
        field_errors.setdefault(field_path, []).append(error["msg"])

    error_response = APIError(
        message="Request validation failed",
        error_code="REQUEST_VALIDATION_ERROR",
        details={"field_errors": field_errors}
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response.model_dump(mode="json")
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException with our error format."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    error_response = {
        "error": True,
        "message": str(exc.detail),
        "error_code": f"HTTP_{exc.status_code}",
        "details": {"status_code": exc.status_code},
        "timestamp": datetime.utcnow().isoformat()
    }
    return JSONResponse(status_code=exc.status_code, content=error_response)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle any unhandled exceptions."""
    logger.error(f"Unhandled exception: {type(exc).__name__}: {str(exc)}", exc_info=True)

    error_response = {
        "error": True,
        "message": "An internal server error occurred",
        "error_code": "INTERNAL_SERVER_ERROR",
        "details": {"exception_type": type(exc).__name__},
        "timestamp": datetime.utcnow().isoformat()
    }
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response
    )


# ===== ERROR HANDLER REGISTRY =====

def register_error_handlers(app):
    """Register all error handlers with the FastAPI application."""

    # Export exception handlers (most specific first)
    app.add_exception_handler(ExportJobNotFoundError, export_job_not_found_handler)
    app.add_exception_handler(ExportNotReadyError, export_not_ready_handler)
    app.add_exception_handler(ExportJobConflictError, export_conflict_handler)
    app.add_exception_handler(UnsupportedFormatError, unsupported_format_handler)
    app.add_exception_handler(ExportException, export_exception_handler)

    # Framework exception handlers
    app.add_exception_handler(RequestValidationError, pydantic_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)

    # Generic exception handler (catch-all)
    app.add_exception_handler(Exception, generic_exception_handler)
