"""Error handling module for cloudbay.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "RESOURCE_NOT_FOUND",
        "message": "Resource not found"
    }
}

Asynchronous workflows never let these escape: the provisioning engine
records the message on the resource (status="error"). Synchronous operations
raise them to the caller.
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INVALID_STATE = "INVALID_STATE"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    BACKUP_NOT_FOUND = "BACKUP_NOT_FOUND"
    DRIVER_ERROR = "DRIVER_ERROR"
    PROVISIONING_TIMEOUT = "PROVISIONING_TIMEOUT"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    UNAUTHORIZED = "UNAUTHORIZED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class CloudbayError(Exception):
    """Base exception for cloudbay.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class ValidationError(CloudbayError):
    """400 Bad Request - rejected before any side effect."""

    def __init__(
        self,
        message: str = "Invalid request",
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        status_code: int = 400,
    ) -> None:
        super().__init__(code, message, status_code)


class QuotaExceededError(ValidationError):
    """400 Bad Request - project resource quota exhausted."""

    def __init__(self, limit: int, message: str | None = None) -> None:
        self.limit = limit
        super().__init__(
            message or f"Project resource limit exceeded (max {limit})",
            code=ErrorCode.QUOTA_EXCEEDED,
        )


class InvalidStateError(ValidationError):
    """409 Conflict - operation not allowed in the current status."""

    def __init__(self, message: str = "Operation not allowed in current state") -> None:
        super().__init__(message, code=ErrorCode.INVALID_STATE, status_code=409)


class NotFoundError(CloudbayError):
    """404 Not Found - absent, or outside the caller's project."""


class ResourceNotFoundError(NotFoundError):
    """404 Not Found - Resource not found."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(ErrorCode.RESOURCE_NOT_FOUND, message, 404)


class BackupNotFoundError(NotFoundError):
    """404 Not Found - Backup not found."""

    def __init__(self, message: str = "Backup not found") -> None:
        super().__init__(ErrorCode.BACKUP_NOT_FOUND, message, 404)


class DriverError(CloudbayError):
    """502 Bad Gateway - a substrate call failed."""

    def __init__(self, message: str = "Driver operation failed") -> None:
        super().__init__(ErrorCode.DRIVER_ERROR, message, 502)


class ProvisioningTimeoutError(CloudbayError):
    """504 Gateway Timeout - instance never reported running."""

    def __init__(self, message: str = "Timed out waiting for instance") -> None:
        super().__init__(ErrorCode.PROVISIONING_TIMEOUT, message, 504)


class UnsupportedOperationError(CloudbayError):
    """501 Not Implemented - the active substrate cannot do this."""

    def __init__(self, message: str = "Operation not supported by this driver") -> None:
        super().__init__(ErrorCode.UNSUPPORTED_OPERATION, message, 501)


class UnauthorizedError(CloudbayError):
    """401 Unauthorized - Authentication required."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401)


class UpstreamUnavailableError(CloudbayError):
    """502 Bad Gateway - Upstream service unavailable."""

    def __init__(self, message: str = "Upstream service unavailable") -> None:
        super().__init__(ErrorCode.UPSTREAM_UNAVAILABLE, message, 502)
