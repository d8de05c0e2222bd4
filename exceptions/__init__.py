"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    DuplicateError,
    ExternalServiceError,
    DatabaseError,

    # Document parsing
    DocumentFormatError,
    UploadRejectedError,
    PreviewNotFoundError,

    # Catalog store
    StorageUnavailableError,

    # Import session
    ImportTimeoutError,
    ImportCancelledError,

    # Soft import errors
    ImportSoftError,
    DuplicateOrderSkip,
    ComponentResolutionWarning,
    ItemPersistError,
    OrderPersistError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "DuplicateError",
    "ExternalServiceError",
    "DatabaseError",

    # Document parsing
    "DocumentFormatError",
    "UploadRejectedError",
    "PreviewNotFoundError",

    # Catalog store
    "StorageUnavailableError",

    # Import session
    "ImportTimeoutError",
    "ImportCancelledError",

    # Soft import errors
    "ImportSoftError",
    "DuplicateOrderSkip",
    "ComponentResolutionWarning",
    "ItemPersistError",
    "OrderPersistError",
]
