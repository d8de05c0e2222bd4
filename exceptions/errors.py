"""
Custom exception classes for the application.

Hard errors derive from AppError and map to an HTTP status.
Soft import errors (ImportSoftError) never escape the reconciler; they are
recorded as strings in ImportResult.errors.
"""

from typing import Optional, Any
from datetime import datetime, timezone


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "DOCUMENT_FORMAT_INVALID")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class DuplicateError(ConflictError):
    """Duplicate resource (409)."""

    def __init__(
        self,
        resource: str,
        field: str,
        value: str
    ):
        super().__init__(
            code=f"{resource.upper()}_{field.upper()}_EXISTS",
            message=f"{resource} with this {field} already exists",
            details={field: value}
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# DOCUMENT PARSING ERRORS
# ===================

class DocumentFormatError(ValidationError):
    """Uploaded document is empty, undecodable, or not markup."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            message=message,
            code="DOCUMENT_FORMAT_INVALID",
            details=details
        )


class UploadRejectedError(AppError):
    """Upload refused before parsing (missing, wrong type, too large)."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        code: str = "UPLOAD_REJECTED",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=details
        )


class PreviewNotFoundError(NotFoundError):
    """Preview expired or never existed."""

    def __init__(self, preview_id: str):
        super().__init__("Preview", preview_id, code="PREVIEW_NOT_FOUND")


# ===================
# CATALOG STORE ERRORS
# ===================

class StorageUnavailableError(ExternalServiceError):
    """Catalog store unreachable. Aborts the remaining import batch."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="catalog_store",
            message=message,
            details=details
        )
        self.code = "STORAGE_UNAVAILABLE"


# ===================
# IMPORT SESSION ERRORS
# ===================

class ImportTimeoutError(AppError):
    """Parse or commit exceeded its configured ceiling (504)."""

    def __init__(self, phase: str, timeout_seconds: float):
        super().__init__(
            code="IMPORT_TIMEOUT",
            message=f"Import {phase} exceeded {timeout_seconds:g}s",
            status_code=504,
            details={"phase": phase, "timeout_seconds": timeout_seconds}
        )


class ImportCancelledError(AppError):
    """Session cancelled by the caller (client disconnected)."""

    def __init__(self, phase: str):
        super().__init__(
            code="IMPORT_CANCELLED",
            message=f"Import {phase} was cancelled",
            status_code=499,
            details={"phase": phase}
        )


# ===================
# SOFT IMPORT ERRORS
# ===================

class ImportSoftError(Exception):
    """
    Per-order or per-item failure that does not stop the batch.

    str(error) is the line appended to ImportResult.errors.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DuplicateOrderSkip(ImportSoftError):
    """Order with the same (order number, supplier) already persisted."""

    def __init__(self, order_number: str, supplier: str):
        self.order_number = order_number
        self.supplier = supplier
        super().__init__(
            f"Order {order_number}: already imported from {supplier}, skipped"
        )


class ComponentResolutionWarning(ImportSoftError):
    """Item left unlinked because no component matched and creation is off."""

    def __init__(self, product_title: str):
        self.product_title = product_title
        super().__init__(
            f'Item "{product_title}": no matching component, left unlinked for review'
        )


class ItemPersistError(ImportSoftError):
    """Item row could not be written; its order still commits."""

    def __init__(self, product_title: str, reason: str):
        self.product_title = product_title
        self.reason = reason
        super().__init__(f'Item "{product_title}": {reason}')


class OrderPersistError(ImportSoftError):
    """Order header could not be written; the order is rolled back."""

    def __init__(self, order_number: str, reason: str):
        self.order_number = order_number
        self.reason = reason
        super().__init__(f"Order {order_number}: {reason}")
