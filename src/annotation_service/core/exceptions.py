"""Error taxonomy and exception handlers for consistent error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from annotation_service.clients.sheets_client import RowStoreError, RowStoreErrorKind
from annotation_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """Base error carrying an error code, message, HTTP status, and details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


class ValidationError(ServiceError):
    """Malformed or missing request fields."""

    def __init__(
        self,
        message: str,
        error: str = "INVALID_PAYLOAD",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error, message, 400, details)


class InvalidActionError(ValidationError):
    """Disposition action outside the known action set."""

    def __init__(self, action: object) -> None:
        super().__init__(
            f"Invalid action: {action!r}",
            error="INVALID_ACTION",
            details={"action": action},
        )


class AuthenticationError(ServiceError):
    """Missing, malformed, expired or forged actor session."""

    def __init__(self, message: str, error: str = "UNAUTHENTICATED") -> None:
        super().__init__(error, message, 401, {})


class PermissionDeniedError(ServiceError):
    """Missing write capability on the store, or wrong actor role."""

    def __init__(
        self,
        message: str,
        error: str = "FORBIDDEN",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error, message, 403, details)


class NotFoundError(ServiceError):
    """Resource or file absent."""

    def __init__(
        self,
        message: str,
        error: str = "NOT_FOUND",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error, message, 404, details)


class QuotaExceededError(ServiceError):
    """Upstream rate limiting. Always carries a numeric retry hint."""

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__("QUOTA_EXCEEDED", message, 429, {"retryAfter": retry_after})
        self.retry_after = retry_after


class ConflictError(ServiceError):
    """Request conflicts with the current state of the store."""

    def __init__(
        self,
        message: str,
        error: str = "CONFLICT",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(error, message, 409, details)


class DuplicateSubmissionError(ConflictError):
    """An annotation with the same row id was already logged."""

    def __init__(self, row_id: str) -> None:
        super().__init__(
            f"An annotation for row '{row_id}' already exists",
            error="DUPLICATE_ANNOTATION",
            details={"rowId": row_id},
        )


class InvalidTransitionError(ConflictError):
    """Known action applied from a status that does not allow it."""

    def __init__(self, from_status: str, action: str) -> None:
        super().__init__(
            f"Action '{action}' is not allowed from status '{from_status}'",
            error="INVALID_TRANSITION",
            details={"status": from_status, "action": action},
        )


class InternalError(ServiceError):
    """Unclassified failure."""

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__("internal_error", message, 500, {})


class UpstreamUnavailableError(ServiceError):
    """Row store unreachable or timed out."""

    def __init__(self, message: str = "Row store is unavailable") -> None:
        super().__init__("ROW_STORE_UNAVAILABLE", message, 502, {})


def map_row_store_error(exc: RowStoreError) -> ServiceError:
    """Translate a typed row-store failure into the service error taxonomy."""
    if exc.kind is RowStoreErrorKind.QUOTA:
        return QuotaExceededError(
            "Row store quota exceeded, retry later",
            retry_after=exc.retry_after if exc.retry_after is not None else 60,
        )
    if exc.kind is RowStoreErrorKind.UNAUTHENTICATED:
        return PermissionDeniedError(
            "Row store credential was rejected; sign in again to refresh access",
            error="CREDENTIAL_REJECTED",
        )
    if exc.kind is RowStoreErrorKind.PERMISSION:
        return PermissionDeniedError(
            "No access to the requested file; ask its owner to share it with edit access",
            error="NO_EDIT_ACCESS",
            details={"resource": exc.resource},
        )
    if exc.kind is RowStoreErrorKind.NOT_FOUND:
        return NotFoundError(
            "File not found, or not shared with this account",
            error="FILE_NOT_FOUND",
            details={"resource": exc.resource},
        )
    if exc.kind is RowStoreErrorKind.UNAVAILABLE:
        return UpstreamUnavailableError()
    return InternalError(f"Row store request failed: {exc}")


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    headers: dict[str, str] | None = None
    if isinstance(exc, QuotaExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
        headers=headers,
    )


async def row_store_error_handler(request: Request, exc: RowStoreError) -> JSONResponse:
    """Map row-store failures that escaped the service layer."""
    return await service_error_handler(request, map_row_store_error(exc))


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(RowStoreError, cast("ExceptionHandler", row_store_error_handler))
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)
