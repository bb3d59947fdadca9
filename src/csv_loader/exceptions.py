# src/csv_loader/exceptions.py

"""
Shared custom exceptions for the CSV Loader service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- CsvLoaderError (base)
  - RetryableError (can be retried by redelivering the notification)
    - S3ThrottlingError
    - S3TimeoutError
    - DeadlineExceededError
    - SinkError (when the driver reports a transient failure)
  - NonRetryableError (redelivery will not help)
    - NotificationParseError
    - MissingReferenceFieldsError
    - ObjectNotFoundError
    - AccessDeniedError
    - EmptyBodyError
    - DecodeError
      - InvalidHeaderError
    - ConfigurationError
"""

from typing import Any, Dict, Optional


class CsvLoaderError(Exception):
    """Base exception for all CSV Loader service errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": is_retryable_error(self),
        }


class RetryableError(CsvLoaderError):
    """Base class for errors that can be retried."""

    retryable = True


class NonRetryableError(CsvLoaderError):
    """Base class for errors that should not be retried."""

    retryable = False


# === Notification Errors ===


class NotificationParseError(NonRetryableError):
    """Raised when a message body is not a recognizable S3 notification."""

    def __init__(self, reason: str, **kwargs):
        message = f"Failed to parse notification body: {reason}"
        context = {"reason": reason}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="NOTIFICATION_PARSE_ERROR", context=context, **kwargs
        )


class MissingReferenceFieldsError(NonRetryableError):
    """Raised when an S3 record lacks a bucket name or an object key."""

    def __init__(self, missing: list[str], **kwargs):
        message = f"S3 record is missing required fields: {', '.join(missing)}"
        context = {"missing_fields": list(missing)}
        super().__init__(
            message, error_code="MISSING_REFERENCE_FIELDS", context=context, **kwargs
        )


# === S3-Related Errors ===


class S3Error(CsvLoaderError):
    """Base class for S3-related errors."""

    pass


class ObjectNotFoundError(S3Error, NonRetryableError):
    """Raised when a requested S3 object (or its bucket) does not exist."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"S3 object not found: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="S3_OBJECT_NOT_FOUND", context=context, **kwargs
        )


class AccessDeniedError(S3Error, NonRetryableError):
    """Raised when access is denied to an S3 object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="S3_ACCESS_DENIED", context=context, **kwargs
        )


class EmptyBodyError(S3Error, NonRetryableError):
    """Raised when S3 answers a GET without a readable body."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"S3 object returned no body: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        super().__init__(message, error_code="S3_EMPTY_BODY", context=context, **kwargs)


class S3ThrottlingError(S3Error, RetryableError):
    """Raised when S3 operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation throttled: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_THROTTLING", context=context, **kwargs)


class S3TimeoutError(S3Error, RetryableError):
    """Raised when S3 operations time out or the endpoint is unreachable."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation timed out: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_TIMEOUT", context=context, **kwargs)


# === Processing Errors ===


class DecodeError(NonRetryableError):
    """Raised when the object byte stream cannot be read or tokenized."""

    def __init__(self, reason: str, **kwargs):
        message = f"Failed to decode CSV stream: {reason}"
        context = {"reason": reason}
        context.update(kwargs.pop("context", None) or {})
        kwargs.setdefault("error_code", "CSV_DECODE_ERROR")
        super().__init__(message, context=context, **kwargs)


class InvalidHeaderError(DecodeError):
    """Raised when header names cannot be used as table column names."""

    def __init__(self, reason: str, header: list[str], **kwargs):
        super().__init__(
            reason,
            error_code="INVALID_CSV_HEADER",
            context={"header": list(header)},
            **kwargs,
        )


class SinkError(CsvLoaderError):
    """
    Raised for any failure reported by the database driver.

    Whether redelivery can help depends on the driver failure, so the flag
    is decided per instance rather than by the class.
    """

    def __init__(
        self, operation: str, reason: str, retryable: bool = False, **kwargs
    ):
        message = f"Database {operation} failed: {reason}"
        context = {"operation": operation, "reason": reason}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="SINK_ERROR", context=context, **kwargs)
        self.retryable = retryable


class DeadlineExceededError(RetryableError):
    """Raised when too little invocation time remains to keep writing batches."""

    def __init__(self, remaining_time_ms: int, **kwargs):
        message = f"Insufficient time remaining to continue loading: {remaining_time_ms}ms"
        context = {"remaining_time_ms": remaining_time_ms}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            message, error_code="DEADLINE_EXCEEDED", context=context, **kwargs
        )


# === Configuration Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, CsvLoaderError) and bool(error.retryable)


def get_error_context(error: BaseException) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, CsvLoaderError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
