"""
Common exception types and error classification for polling_cdc.

Provides:
- ErrorCategory enum for error handling decisions
- Typed exception hierarchy for polling session errors
- Error classification utilities
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures an owner may choose to restart after
                   (e.g., dropped connections, timeouts)
        PERMANENT: Failures that won't succeed on restart without a change
                   (e.g., unsupported database, bad configuration)
        UNKNOWN: Unclassified errors
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class PollingError(Exception):
    """
    Base exception for all polling errors.

    Attributes:
        message: Human-readable error description
        category: Error classification
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_restartable(self) -> bool:
        """Whether restarting the session may succeed without operator action."""
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transient Errors
# =============================================================================


class TransientError(PollingError):
    """Base class for transient errors."""

    category = ErrorCategory.TRANSIENT


class ConnectionError(TransientError):
    """Cannot obtain or validate a database connection."""

    pass


class QueryExecutionError(TransientError):
    """Failure while preparing, executing or fetching a query."""

    pass


# =============================================================================
# Permanent Errors
# =============================================================================


class PermanentError(PollingError):
    """Base class for permanent errors."""

    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Invalid configuration."""

    pass


class UnsupportedDatabaseError(PermanentError):
    """No select template resolvable for the database product."""

    def __init__(
        self,
        database_name: str,
        override_key: str,
        cause: Optional[BaseException] = None,
    ):
        message = (
            f"Unsupported database: {database_name}. "
            f"Configure system parameter: {override_key}"
        )
        super().__init__(
            message,
            cause,
            {"database_name": database_name, "override_key": override_key},
        )
        self.database_name = database_name
        self.override_key = override_key


# =============================================================================
# Session Failure
# =============================================================================


class PollingFailure(PollingError):
    """
    Fatal session error handed to the completion reporter.

    Wraps whatever stopped the poll loop; the category follows the cause.
    """

    def __init__(
        self,
        table: str,
        cause: BaseException,
        context: Optional[dict] = None,
    ):
        message = f"Error in polling for changes on {table}"
        super().__init__(message, cause, {"table": table, **(context or {})})
        self.table = table
        self.category = classify_exception(cause)


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    if isinstance(exc, PollingError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    # Connection errors
    connection_markers = (
        "operationalerror",
        "interfaceerror",
        "disconnectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "server closed the connection",
        "lost connection",
        "no route to host",
        "network unreachable",
        "name resolution",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    # Schema/permission problems won't fix themselves
    permanent_markers = (
        "programmingerror",
        "no such table",
        "no such column",
        "does not exist",
        "permission denied",
        "access denied",
        "syntax error",
    )
    if any(m in exc_type or m in exc_str for m in permanent_markers):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: BaseException,
    default_class: type = QueryExecutionError,
    message: Optional[str] = None,
    context: Optional[dict] = None,
) -> PollingError:
    """
    Wrap a driver exception in the appropriate PollingError subclass.

    Args:
        exc: Exception to wrap
        default_class: Class to use for anything not already a PollingError
        message: Message prefix (default: str(exc))
        context: Additional context to include

    Returns:
        PollingError subclass instance
    """
    if isinstance(exc, PollingError):
        if context:
            exc.context.update(context)
        return exc

    text = f"{message}: {exc}" if message else str(exc)
    return default_class(text, cause=exc, context=context)
