"""
Custom exceptions for the sync pipeline with structured error context.

Every exception carries a context dictionary and an ``error_class`` used by
the orchestrator to decide between retrying, aborting the run, or isolating
the failure to a single record.

Exception Hierarchy:
    SyncException (base)
    ├── FetchError
    │   ├── APIClientError
    │   │   ├── NetworkError / ServerError / ThrottledError   (transient)
    │   │   ├── UnauthorizedError                             (authentication)
    │   │   └── NotFoundError
    │   └── RateLimitedError                                  (transient)
    ├── ConfigurationError                                    (authentication)
    ├── TransformationError
    │   └── ValidationError                                   (validation)
    ├── StoreError
    │   └── IntegrityViolationError                           (integrity)
    ├── StepTimeoutError                                      (transient)
    └── orchestration errors (InvalidTransitionError, RunInProgressError,
        RunCancelledError)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


TRANSIENT = "transient"
AUTHENTICATION = "authentication"
VALIDATION = "validation"
INTEGRITY = "integrity"
INTERNAL = "internal"


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (tenant, external id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    error_class = INTERNAL

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc).replace(tzinfo=None)

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

    @property
    def retryable(self) -> bool:
        return self.error_class == TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "error_class": self.error_class,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def describe_error(exc: BaseException) -> Dict[str, Any]:
    """Structured detail for any exception, including foreign ones."""
    if isinstance(exc, SyncException):
        return exc.to_dict()
    return {
        "error_type": type(exc).__name__,
        "error_class": INTERNAL,
        "message": str(exc),
        "context": {},
    }


# ============================================================================
# Retry Strategy Bases
# ============================================================================

class RetryableError(SyncException):
    """
    Base for transient errors that are retried with backoff:
    network timeouts, HTTP 429, HTTP 5xx, bounded waits that expired.
    """

    error_class = TRANSIENT


class NonRetryableError(SyncException):
    """
    Base for errors where retrying cannot succeed:
    authentication failures, missing credentials, missing resources.
    """

    error_class = AUTHENTICATION


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchError(SyncException):
    """Base exception for upstream fetch failures."""
    pass


class APIClientError(FetchError):
    """
    Exception raised when an upstream API request fails.

    Context should include:
        - tenant_id: Tenant whose request failed
        - url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - attempts: Number of attempts made
    """

    error_class = AUTHENTICATION


class NetworkError(RetryableError, APIClientError):
    """Timeouts and connection errors, after the attempt budget is spent."""
    error_class = TRANSIENT


class ServerError(RetryableError, APIClientError):
    """HTTP 5xx responses, after the attempt budget is spent."""
    error_class = TRANSIENT


class ThrottledError(RetryableError, APIClientError):
    """HTTP 429 responses, after the attempt budget is spent."""

    error_class = TRANSIENT

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after is not None:
            self.context["retry_after"] = retry_after


class RateLimitedError(RetryableError, FetchError):
    """Local token bucket could not grant a token within the bounded wait."""
    error_class = TRANSIENT


class UnauthorizedError(NonRetryableError, APIClientError):
    """HTTP 401/403 responses."""
    error_class = AUTHENTICATION


class NotFoundError(NonRetryableError, APIClientError):
    """HTTP 404 responses."""
    error_class = AUTHENTICATION


class ConfigurationError(NonRetryableError):
    """Missing credentials or unusable tenant configuration."""
    error_class = AUTHENTICATION


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(SyncException):
    """Base exception for raw-to-normalized transformation failures."""
    error_class = VALIDATION


class ValidationError(TransformationError):
    """
    Exception raised when a raw payload fails validation.

    Context should include:
        - external_id: Upstream id of the offending record
        - field_name: Name of the field that failed validation
        - field_value: Value that failed validation
    """
    error_class = VALIDATION


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(SyncException):
    """Base exception for raw/normalized store failures."""
    pass


class IntegrityViolationError(StoreError):
    """
    Uniqueness or referential integrity violation on a normalized write.

    Context should include:
        - external_id: External id of the offending entity
        - table_name: Table the write targeted
    """
    error_class = INTEGRITY


# ============================================================================
# Orchestration Errors
# ============================================================================

class StepTimeoutError(RetryableError):
    """A pipeline step exceeded its time bound."""
    error_class = TRANSIENT


class InvalidTransitionError(SyncException):
    """Execution log status change not allowed by the run state machine."""
    pass


class RunInProgressError(SyncException):
    """A run for this tenant is already in progress."""
    pass


class RunCancelledError(SyncException):
    """Raised inside a step when cancellation has been requested."""
    pass
