"""
Custom exceptions for the catalog sync service.
Provides structured error handling with rich context for debugging and monitoring.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from enum import Enum


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for routing and handling."""
    AUTHENTICATION = "authentication"
    FEED = "feed"
    DATA_QUALITY = "data_quality"
    STORAGE = "storage"
    IMAGE = "image"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"


@dataclass
class ErrorContext:
    """Rich context for error tracking and debugging."""
    correlation_id: Optional[str] = None
    external_id: Optional[str] = None
    filename: Optional[str] = None
    field_name: Optional[str] = None
    actual_value: Optional[Any] = None
    bucket: Optional[str] = None
    key: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    additional_data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert context to dictionary for logging."""
        return {
            "correlation_id": self.correlation_id,
            "external_id": self.external_id,
            "filename": self.filename,
            "field_name": self.field_name,
            "actual_value": str(self.actual_value) if self.actual_value else None,
            "bucket": self.bucket,
            "key": self.key,
            "timestamp": self.timestamp,
            **self.additional_data,
        }


class SyncError(Exception):
    """Base exception for all catalog sync errors."""

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.FEED,
        retryable: bool = False,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.severity = severity
        self.category = category
        self.retryable = retryable
        self.original_exception = original_exception

    def to_dict(self) -> dict:
        """Serialize exception for logging and API error bodies."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "original_exception": str(self.original_exception) if self.original_exception else None,
        }


class AuthenticationError(SyncError):
    """Raised when a request carries a missing or wrong credential."""

    def __init__(
        self,
        message: str = "Unauthorized",
        realm: str = "1C Exchange",
        context: Optional[ErrorContext] = None,
    ):
        ctx = context or ErrorContext()
        ctx.additional_data["realm"] = realm

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.AUTHENTICATION,
            retryable=False,
        )
        self.realm = realm


class MalformedFeedError(SyncError):
    """Raised when a CommerceML document cannot be parsed."""

    def __init__(
        self,
        message: str,
        filename: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.filename = filename

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.FEED,
            retryable=False,
            original_exception=original_exception,
        )
        self.filename = filename


class MissingIdentityError(SyncError):
    """Raised when a feed entry references a product that does not exist."""

    def __init__(
        self,
        message: str,
        external_id: Optional[str],
        context: Optional[ErrorContext] = None,
    ):
        ctx = context or ErrorContext()
        ctx.external_id = external_id

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.DATA_QUALITY,
            retryable=False,
        )
        self.external_id = external_id


class StorageError(SyncError):
    """Raised when the object store or the row backend fails."""

    def __init__(
        self,
        message: str,
        service_name: str,
        operation: str,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.additional_data["service"] = service_name
        ctx.additional_data["operation"] = operation

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            retryable=True,
            original_exception=original_exception,
        )
        self.service_name = service_name
        self.operation = operation


class ObjectStoreError(StorageError):
    """Raised when object store operations fail."""

    def __init__(
        self,
        message: str,
        bucket: Optional[str],
        key: str,
        operation: str = "GetObject",
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.bucket = bucket
        ctx.key = key

        super().__init__(
            message=message,
            service_name="ObjectStore",
            operation=operation,
            context=ctx,
            original_exception=original_exception,
        )


class BackendError(StorageError):
    """Raised when the row backend fails or returns an undecodable value."""

    def __init__(
        self,
        message: str,
        table: str,
        operation: str,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.additional_data["table"] = table

        super().__init__(
            message=message,
            service_name="Backend",
            operation=operation,
            context=ctx,
            original_exception=original_exception,
        )
        self.table = table


class ImageProcessingError(SyncError):
    """Raised when an uploaded image cannot be decoded or re-encoded."""

    def __init__(
        self,
        message: str,
        filename: str,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.filename = filename

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.IMAGE,
            retryable=False,
            original_exception=original_exception,
        )
        self.filename = filename


class ValidationError(SyncError):
    """Raised when a request payload or a state transition is invalid."""

    def __init__(
        self,
        message: str,
        field_name: str,
        actual: Any = None,
        context: Optional[ErrorContext] = None,
    ):
        ctx = context or ErrorContext()
        ctx.field_name = field_name
        ctx.actual_value = actual

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            retryable=False,
        )
        self.field_name = field_name
        self.actual = actual


class ConfigurationError(SyncError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: str,
        context: Optional[ErrorContext] = None,
    ):
        ctx = context or ErrorContext()
        ctx.additional_data["config_key"] = config_key

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.CONFIGURATION,
            retryable=False,
        )
        self.config_key = config_key
