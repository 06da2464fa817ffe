"""
Custom exceptions for the load engine with structured error context.

This module provides the exception hierarchy used by every load-engine
component. Each exception carries context information for debugging and
monitoring, and the retry markers decide what the retry coordinator may
re-run.

Exception Hierarchy:
    LoadEngineException (base)
    ├── ConfigurationError                      (pre-flight, never retried)
    ├── StoreError
    │   ├── TransientStoreError                 (retryable)
    │   │   ├── LockTimeoutError
    │   │   ├── SerializationConflictError
    │   │   └── ConcurrentWriteError
    │   └── FatalStoreError                     (non-retryable)
    │       ├── ConstraintViolationError
    │       ├── PartitionClosedError
    │       └── RetryExhaustedError
    ├── CheckpointError
    ├── PartitionStateError
    ├── BatchLoadError                          (consolidated run() failure)
    └── RetryableError / NonRetryableError (mixins)

Per-record validation failures are not exceptions: they are captured as
``RejectReason`` values inside ``ValidationOutcome``.
"""

from typing import Optional, Dict, Any

from sqlalchemy.exc import DBAPIError

from core.utils import utc_now


class LoadEngineException(Exception):
    """
    Base exception for all load-engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (batch_id, table, key, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = utc_now()

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
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(LoadEngineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient contention signals:
    - Lock wait timeouts
    - Serialization failures / deadlocks
    - Lost compare-and-swap on a target row
    """
    pass


class NonRetryableError(LoadEngineException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Constraint violations
    - Type mismatches
    - Writes into closed partitions
    - Invalid configuration
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Raised before any write when the entity configuration is unusable.

    Context should include:
        - entity: Entity name
        - field_name: Offending field (if applicable)
    """
    pass


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(LoadEngineException):
    """Base exception for target/checkpoint store failures."""
    pass


class TransientStoreError(RetryableError, StoreError):
    """Operation-level failure that is expected to succeed on retry."""
    pass


class LockTimeoutError(TransientStoreError):
    """Lock wait timeout or lock-not-available on a row or partition."""
    pass


class SerializationConflictError(TransientStoreError):
    """Serialization failure or deadlock detected by the database."""
    pass


class ConcurrentWriteError(TransientStoreError):
    """
    Another writer changed the same business key between read and write.

    Context should include:
        - entity: Entity name
        - business_key: The contended key
    """
    pass


class FatalStoreError(NonRetryableError, StoreError):
    """Operation-level failure that retrying cannot fix."""
    pass


class ConstraintViolationError(FatalStoreError):
    """
    Database constraint violation (unique, check, foreign key, not null).

    Context should include:
        - constraint_name: Name of violated constraint (if available)
        - sqlstate: Database error code (if available)
    """
    pass


class PartitionClosedError(FatalStoreError):
    """
    Write attempted into a Sealed/Archived partition, or a new partition
    would overlap an archived range.

    Context should include:
        - table_name: Partitioned table
        - partition_key: Partition key
        - state: Current partition state
    """
    pass


class RetryExhaustedError(FatalStoreError):
    """Retryable failures persisted for every allowed attempt."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        attempts: int = 0
    ):
        super().__init__(message, context, original_exception)
        self.attempts = attempts
        self.context["attempts"] = attempts


# ============================================================================
# Checkpoint / Partition Administration Errors
# ============================================================================

class CheckpointError(NonRetryableError):
    """
    Exception raised when a checkpoint transition is not allowed.

    Context should include:
        - batch_id: Batch identifier
        - operation: Operation that failed (begin, advance, commit, fail)
        - status: Status observed at the time of the failure
    """
    pass


class PartitionStateError(NonRetryableError):
    """Illegal administrative partition transition (e.g. archive an Open partition)."""
    pass


# ============================================================================
# Orchestration Errors
# ============================================================================

class BatchLoadError(LoadEngineException):
    """
    Consolidated failure surfaced by ``LoadOrchestrator.run``.

    The ``report`` attribute holds the LoadReport describing which step failed
    and the counts reached before the failure.
    """

    def __init__(
        self,
        message: str,
        report=None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, context, original_exception)
        self.report = report


# ============================================================================
# Database error classification
# ============================================================================

SERIALIZATION_SQLSTATES = {"40001", "40P01"}
LOCK_SQLSTATES = {"55P03", "57014"}


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, exc):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def classify_db_error(exc: BaseException, context: Optional[Dict[str, Any]] = None) -> LoadEngineException:
    """
    Map a raw database exception onto the load-engine taxonomy.

    Load-engine exceptions are returned unchanged.
    """
    if isinstance(exc, LoadEngineException):
        return exc

    context = dict(context or {})
    code = _sqlstate(exc)
    if code:
        context["sqlstate"] = code

    if code in SERIALIZATION_SQLSTATES:
        return SerializationConflictError("Serialization conflict", context, exc)
    if code in LOCK_SQLSTATES:
        return LockTimeoutError("Lock wait timeout", context, exc)
    if code and code.startswith("23"):
        return ConstraintViolationError("Constraint violation", context, exc)

    if isinstance(exc, DBAPIError):
        text = str(exc.orig if exc.orig is not None else exc).lower()
        if "database is locked" in text or "database is busy" in text:
            return LockTimeoutError("Database is locked", context, exc)

    return FatalStoreError(f"Unexpected store failure: {type(exc).__name__}", context, exc)


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: only transient contention signals are retried."""
    return isinstance(classify_db_error(exc), RetryableError)
