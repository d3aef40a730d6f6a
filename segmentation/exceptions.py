"""
Segmentation errors and RFC 7807 Problem Details handling.

Domain exceptions are raised by the services; the HTTP layer converts
them into standardized "Problem Details for HTTP APIs" responses.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List, Sequence
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError
import logging
import traceback
from datetime import datetime, timezone

from segmentation.core.sentry import capture_exception
from segmentation.middleware.correlation import current_ids, new_id

logger = logging.getLogger(__name__)


# =============================================================================
# DOMAIN EXCEPTIONS
# =============================================================================


class SegmentationError(Exception):
    """Base class for segmentation engine errors."""


class SegmentNotFoundError(SegmentationError):
    def __init__(self, segment_id: str):
        self.segment_id = segment_id
        super().__init__(f"Segment {segment_id} not found")


class JobQueueError(SegmentationError):
    """The job queue rejected or failed to accept a job."""


class DispatchError(SegmentationError):
    """One or more flow trigger jobs could not be enqueued."""

    def __init__(
        self,
        failed_flow_ids: Sequence[str],
        errors: Sequence[BaseException] = (),
        enqueued: int = 0,
    ):
        self.failed_flow_ids = list(failed_flow_ids)
        self.errors = list(errors)
        self.enqueued = enqueued
        super().__init__(f"Failed to enqueue flow triggers for flows: {', '.join(self.failed_flow_ids)}")


class WorkerNotRunningError(SegmentationError):
    """A reconcile job was submitted to a worker pool that is not running."""


# =============================================================================
# PROBLEM DETAILS
# =============================================================================


def _get_trace_id() -> str:
    """Get trace ID from correlation context or generate a new one."""
    _, request_id = current_ids()
    if request_id:
        return request_id
    return new_id()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ErrorCode(str, Enum):
    """Standardized error codes for the segmentation API."""

    # Authentication
    UNAUTHORIZED = "AUTH_001"

    # Validation
    VALIDATION_ERROR = "VAL_001"

    # Resource
    NOT_FOUND = "RES_001"
    CONFLICT = "RES_003"

    # External Services
    DATABASE_ERROR = "EXT_004"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Unique identifier for tracing in logs
        errors: List of field-level validation errors (for 422)
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str
    errors: Optional[List[Dict[str, Any]]] = None


_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    409: "Conflict",
    422: "Validation Error",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


def _problem_type(code: ErrorCode) -> str:
    return f"urn:problem:segmentation:{code.value.lower().replace('_', '-')}"


class APIException(HTTPException):
    """
    Base HTTP exception with RFC 7807 support.

    Usage:
        raise APIException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Segment not found",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.title = title or _TITLES.get(status_code, "Error")
        self.instance = instance
        self.errors = errors
        self.trace_id = _get_trace_id()
        self.timestamp = _utc_timestamp()

        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def to_problem_detail(self) -> ProblemDetail:
        return ProblemDetail(
            type=_problem_type(self.code),
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=self.instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
        )


class UnauthorizedError(APIException):
    """Missing or invalid internal API key (401)."""

    def __init__(self, detail: str = "Invalid or missing internal API key"):
        super().__init__(status_code=401, code=ErrorCode.UNAUTHORIZED, detail=detail)


class ServiceUnavailableError(APIException):
    """Dependent component not available (503)."""

    def __init__(self, detail: str):
        super().__init__(status_code=503, code=ErrorCode.SERVICE_UNAVAILABLE, detail=detail)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================


def create_problem_response(
    status_code: int,
    code: ErrorCode,
    detail: str,
    request: Request,
    errors: Optional[List[Dict[str, Any]]] = None,
    trace_id: Optional[str] = None,
) -> JSONResponse:
    """Create a RFC 7807 compliant JSON response."""
    problem = ProblemDetail(
        type=_problem_type(code),
        title=_TITLES.get(status_code, "Error"),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code.value,
        timestamp=_utc_timestamp(),
        trace_id=trace_id or _get_trace_id(),
        errors=errors,
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def handle_api_exception(request: Request, exc: APIException) -> JSONResponse:
    logger.warning(
        "APIException: %s - %s", exc.code.value, exc.detail,
        extra={"trace_id": exc.trace_id, "status_code": exc.status_code, "path": request.url.path},
    )
    problem = exc.to_problem_detail()
    problem.instance = problem.instance or str(request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=exc.headers,
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTPException with RFC 7807 response."""
    code_map = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.UNAUTHORIZED,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        503: ErrorCode.SERVICE_UNAVAILABLE,
    }
    return create_problem_response(
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
        detail=str(exc.detail),
        request=request,
    )


async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with field-level details."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return create_problem_response(
        status_code=422,
        code=ErrorCode.VALIDATION_ERROR,
        detail="Request validation failed",
        request=request,
        errors=errors,
    )


async def handle_segment_not_found(request: Request, exc: SegmentNotFoundError) -> JSONResponse:
    return create_problem_response(
        status_code=404,
        code=ErrorCode.NOT_FOUND,
        detail=str(exc),
        request=request,
    )


async def handle_worker_not_running(request: Request, exc: WorkerNotRunningError) -> JSONResponse:
    return create_problem_response(
        status_code=503,
        code=ErrorCode.SERVICE_UNAVAILABLE,
        detail=str(exc),
        request=request,
    )


async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # SECURITY: statement text and parameters stay in the logs
    logger.error("Database error on %s: %s", request.url.path, type(exc).__name__, exc_info=True)
    return create_problem_response(
        status_code=503,
        code=ErrorCode.DATABASE_ERROR,
        detail="Database temporarily unavailable",
        request=request,
    )


async def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with RFC 7807 response."""
    trace_id = new_id()
    logger.error(
        "Unhandled exception: %s", exc,
        extra={"trace_id": trace_id, "path": request.url.path},
    )
    logger.error(traceback.format_exc())
    capture_exception(
        exc,
        context={"trace_id": trace_id, "path": request.url.path, "method": request.method},
    )

    # Don't expose internal details in production
    from segmentation.config import settings
    detail = str(exc) if settings.DEBUG else "An unexpected error occurred"

    return create_problem_response(
        status_code=500,
        code=ErrorCode.INTERNAL_ERROR,
        detail=detail,
        request=request,
        trace_id=trace_id,
    )


def register_exception_handlers(app) -> None:
    """Attach all Problem Details handlers to a FastAPI app."""
    app.add_exception_handler(APIException, handle_api_exception)
    app.add_exception_handler(SegmentNotFoundError, handle_segment_not_found)
    app.add_exception_handler(WorkerNotRunningError, handle_worker_not_running)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_exception)
    app.add_exception_handler(Exception, handle_generic_exception)
