"""
Custom exceptions for the sync pipeline with structured error context.

This module provides the exception hierarchy used by extraction, loading,
scheduling and monitoring. Every exception carries a context dictionary for
debugging and an error category that the error tracker uses directly
instead of inferring one from the message text.

Exception Hierarchy:
    SyncException (base)
    ├── WarehouseError
    │   ├── ExtractionError
    │   ├── WarehouseConnectionError (retryable)
    │   └── PermissionDeniedError (non-retryable)
    ├── StoreError
    │   ├── LoadError
    │   │   └── UpsertError
    │   ├── CheckpointError
    │   └── StoreConnectionError (retryable)
    ├── ConfigurationError
    │   ├── CyclicDependencyError
    │   └── UnknownHandlerError
    ├── NetworkError
    │   └── RunTimeoutError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
import enum

from core.timeutils import utcnow


class ErrorCategory(str, enum.Enum):
    """Error taxonomy shared by exceptions and the error tracker"""
    WAREHOUSE = "warehouse"
    STORE = "store"
    VALIDATION = "validation"
    SYNC = "sync"
    NETWORK = "network"
    DATA_QUALITY = "data_quality"
    CONFIGURATION = "configuration"


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (table, run id, batch, etc.)
        original_exception: The original exception that was caught (if any)
        category: Error category reported to the error tracker
    """

    category: ErrorCategory = ErrorCategory.SYNC

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Warehouse (source) Errors
# ============================================================================

class WarehouseError(SyncException):
    """
    Base exception for failures talking to the source warehouse.

    Context should include:
        - table: Warehouse table being read
        - offset / limit: Page being fetched (if applicable)
    """
    category = ErrorCategory.WAREHOUSE


class ExtractionError(WarehouseError):
    """Raised when an extraction cannot produce a result set."""
    pass


# ============================================================================
# Store (destination) Errors
# ============================================================================

class StoreError(SyncException):
    """Base exception for operational store failures."""
    category = ErrorCategory.STORE


class LoadError(StoreError):
    """
    Exception raised when loading parent or child rows fails.

    Context should include:
        - table_name: Destination table
        - operation: UPSERT, SELECT, ...
        - batch_index: Sub-batch index (if applicable)
    """
    pass


class UpsertError(LoadError):
    """Exception raised when a batch upsert is rejected."""
    pass


class CheckpointError(StoreError):
    """
    Exception raised when extraction state cannot be read or written.

    Context should include:
        - pipeline_id: Named incremental pipeline
        - watermark: The watermark value involved
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(SyncException):
    """
    Missing settings or invalid refresh configuration.

    Configuration errors abort a whole refresh cycle before any table runs.
    """
    category = ErrorCategory.CONFIGURATION


class CyclicDependencyError(ConfigurationError):
    """
    Raised when refresh dependencies form a cycle.

    Context should include:
        - cycle: The table names on the cycle, in order
    """
    pass


class UnknownHandlerError(ConfigurationError):
    """Raised when a due table has no registered sync handler."""
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Temporary warehouse or store connection issues
    """
    pass


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication or permission failures
    - Invalid data format
    """
    pass


# ============================================================================
# Network Errors
# ============================================================================

class NetworkError(RetryableError):
    """Network-related errors that should be retried."""
    category = ErrorCategory.NETWORK


class RunTimeoutError(NetworkError):
    """
    A table run exceeded its maximum duration.

    Context should include:
        - table_name: The table whose run timed out
        - timeout_seconds: The configured limit
    """
    pass


class WarehouseConnectionError(RetryableError, WarehouseError):
    """Warehouse connection errors that should be retried."""
    pass


class StoreConnectionError(RetryableError, StoreError):
    """Store connection errors that should be retried."""
    pass


class PermissionDeniedError(NonRetryableError, WarehouseError):
    """Authentication or permission failures that should not be retried."""
    pass

