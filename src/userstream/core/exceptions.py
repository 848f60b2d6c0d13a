"""
Custom exceptions for UserStream service.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses. Ingestion-path failures are wrapped
into PipelineError records by the stages; read-path failures propagate to
the caller and are rendered by the FastAPI exception handler.
"""

from typing import Any, Dict, Optional


class UserStreamException(Exception):
    """Base exception for UserStream service."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(UserStreamException):
    """Raised when request validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class DecodeError(UserStreamException):
    """Raised when a batch payload cannot be decoded into user records."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="decode_error",
            details=details,
        )


class DuplicateError(UserStreamException):
    """Raised when a record with the same id already exists in the store."""

    def __init__(
        self,
        message: str = "user already exist in database",
        record_id: Optional[int] = None,
    ) -> None:
        details = {}
        if record_id is not None:
            details["id"] = record_id

        super().__init__(
            message=message,
            status_code=409,
            error_code="conflict",
            details=details,
        )


class NotFoundError(UserStreamException):
    """Raised when the requested record does not exist."""

    def __init__(
        self,
        message: str = "requested data not found",
        record_id: Optional[str] = None,
    ) -> None:
        details = {}
        if record_id is not None:
            details["id"] = record_id

        super().__init__(
            message=message,
            status_code=404,
            error_code="not_found",
            details=details,
        )


class StoreTimeoutError(UserStreamException):
    """Raised when a durable store operation exceeds its deadline."""

    def __init__(
        self,
        message: str = "deadline exceeded, please try again after some time",
        timeout_seconds: Optional[float] = None,
    ) -> None:
        details = {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds

        super().__init__(
            message=message,
            status_code=408,
            error_code="timeout",
            details=details,
        )


class TransientStoreError(UserStreamException):
    """Raised when the durable store fails for a reason other than duplicate/not-found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="store_error",
            details=details,
        )


class CacheError(UserStreamException):
    """Raised by cache adapters. Always logged, never surfaced to callers."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="cache_error",
            details=details,
        )


class CacheMissError(CacheError):
    """Raised when a key is not present in the cache."""

    def __init__(self, key: str) -> None:
        super().__init__(message=f"cache miss for key {key}", details={"key": key})


class EncryptionError(UserStreamException):
    """Raised when encrypting or decrypting a PII field fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="encryption_error",
            details=details,
        )


class PipelineStateError(UserStreamException):
    """Raised on an invalid ingestion pipeline lifecycle transition."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="pipeline_state_error",
            details=details,
        )
