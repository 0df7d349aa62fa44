"""
Custom exceptions for the job execution engine with structured error context.

This module provides the exception hierarchy used by the scheduler, the job
executor and the destination adapters. Each exception carries context
information for debugging and for the progress events surfaced to operators.

Exception Hierarchy:
    EngineException (base)
    ├── ConnectionExecutionError
    │   ├── QueryExecutionError
    │   ├── QueryTimeoutError
    │   └── ConnectivityError
    ├── DestinationError
    │   ├── DestinationWriteError
    │   └── UnsupportedWriteStrategyError
    ├── CheckpointError
    ├── ResourceExhaustedError
    │   └── MemoryThresholdExceededError
    ├── ConfigurationError
    │   ├── ScheduleError
    │   └── DestinationConfigError
    ├── SchedulerError
    │   ├── JobNotFoundError
    │   └── JobBusyError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class EngineException(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job, connection, destination, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
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
        """Convert exception to dictionary for logging/events."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }

    @property
    def summary(self) -> str:
        """Short message without context, used in run error lists."""
        if self.original_exception:
            return f"{self.message}: {self.original_exception}"
        return self.message


# ============================================================================
# Connection-level Errors
# ============================================================================

class ConnectionExecutionError(EngineException):
    """
    Base exception for failures running a query against one connection.

    These never abort a run: the connection is recorded as failed and the
    executor moves on to the next connection.
    """
    pass


class QueryExecutionError(ConnectionExecutionError):
    """
    Exception raised when the database rejects or fails the query.

    Context should include:
        - connection_id: Connection the query ran against
        - query_name: Name of the query (multi-query jobs)
    """
    pass


class QueryTimeoutError(ConnectionExecutionError):
    """
    Exception raised when a query exceeds the per-query timeout.

    Context should include:
        - connection_id: Connection the query ran against
        - timeout_ms: The timeout that was exceeded
    """
    pass


class ConnectivityError(ConnectionExecutionError):
    """
    Exception raised when the connection cannot be established.

    Context should include:
        - connection_id: Connection that could not be reached
    """
    pass


# ============================================================================
# Destination-level Errors
# ============================================================================

class DestinationError(EngineException):
    """Base exception for destination write failures."""
    pass


class DestinationWriteError(DestinationError):
    """
    Exception raised when a destination rejects or fails a write.

    Context should include:
        - destination_type: Adapter kind
        - connection_id: Connection whose rows were written (if per-connection)
        - status_code: HTTP status code (if applicable)
    """
    pass


class UnsupportedWriteStrategyError(DestinationError):
    """Raised when a destination is asked for a write path it does not declare."""
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(EngineException):
    """
    Exception raised when checkpoint persistence fails.

    Context should include:
        - job_id: Job whose checkpoint failed
        - operation: Operation that failed (load, save, clear)
    """
    pass


# ============================================================================
# Resource Errors
# ============================================================================

class ResourceExhaustedError(EngineException):
    """Base exception for controlled stops caused by resource limits."""
    pass


class MemoryThresholdExceededError(ResourceExhaustedError):
    """
    Raised (or recorded) when process memory exceeds the configured ceiling.

    Context should include:
        - resident_mb: Sampled resident memory
        - threshold_mb: Configured ceiling
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(EngineException):
    """Base exception for job definitions that are rejected before a run starts."""
    pass


class ScheduleError(ConfigurationError):
    """
    Exception raised for malformed schedule descriptors.

    Context should include:
        - schedule: The descriptor that failed to parse
    """
    pass


class DestinationConfigError(ConfigurationError):
    """
    Exception raised when a destination configuration is unusable.

    Context should include:
        - destination_type: Adapter kind
        - missing_fields: Required fields that are absent
    """
    pass


# ============================================================================
# Scheduler Errors
# ============================================================================

class SchedulerError(EngineException):
    """Base exception for scheduler requests that cannot be honoured."""
    pass


class JobNotFoundError(SchedulerError):
    """Raised when a job id is not registered."""
    pass


class JobBusyError(SchedulerError):
    """Raised when a job is fired while a run of the same job is still active."""
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(EngineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 503)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(EngineException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    - Invalid destination configuration
    """
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, DestinationWriteError):
    """Network-related write errors that should be retried."""
    pass


class RateLimitError(RetryableError, DestinationWriteError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError, DestinationWriteError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, DestinationWriteError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass
