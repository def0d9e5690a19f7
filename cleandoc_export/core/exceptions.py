"""Custom exception classes for the export pipeline."""

from typing import Optional

from fastapi import HTTPException, status


class CleanDocExportError(Exception):
    """Base exception for the export pipeline."""

    error_code = "EXPORT_ERROR"

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ValidationError(CleanDocExportError):
    """Raised when activity records or trigger inputs are malformed."""
    error_code = "VALIDATION_FAILED"


class GenerationError(CleanDocExportError):
    """Raised when CSV, PDF, manifest or archive generation fails."""
    error_code = "GENERATION_FAILED"


class StorageError(CleanDocExportError):
    """Raised when a MinIO/storage operation fails."""
    error_code = "STORAGE_FAILED"


class DeliveryError(CleanDocExportError):
    """Raised by a delivery channel; never aborts an export run.

    ``retryable=False`` stops the retry loop at once (e.g. a webhook 4xx).
    """
    error_code = "DELIVERY_FAILED"

    def __init__(self, message: str = "Delivery failed", retryable: bool = True, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class ResourceNotFoundError(CleanDocExportError):
    """Raised when a requested resource is not found."""
    error_code = "NOT_FOUND"


class ResourceConflictError(CleanDocExportError):
    """Raised when a resource already exists."""
    error_code = "CONFLICT"


class ExportInProgressError(ResourceConflictError):
    """Raised when an export for the same tenant and date is already running."""
    error_code = "EXPORT_IN_PROGRESS"


# HTTP exception shortcuts
def not_found(detail: str = "Resource not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def conflict(detail: str = "Resource conflict") -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def bad_request(detail: str = "Bad request") -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def forbidden(detail: str = "Insufficient permissions") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
