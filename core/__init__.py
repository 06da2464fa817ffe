"""
Core utilities and configuration for the load engine.

This package provides foundational components used by every load-engine
component:

Modules:
    config: Application configuration and environment variable management
    database: Async engine/session factory and dialect-aware insert helper
    exceptions: Exception hierarchy and database error classification
    logging: Logging configuration
    utils: Time and hashing helpers

Usage:
    from core.config import settings
    from core.database import get_session
    from core.exceptions import TransientStoreError, FatalStoreError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session",
    "setup_logging",
    # Exceptions
    "LoadEngineException",
    "RetryableError",
    "NonRetryableError",
    "ConfigurationError",
    "StoreError",
    "TransientStoreError",
    "LockTimeoutError",
    "SerializationConflictError",
    "ConcurrentWriteError",
    "FatalStoreError",
    "ConstraintViolationError",
    "PartitionClosedError",
    "RetryExhaustedError",
    "CheckpointError",
    "PartitionStateError",
    "BatchLoadError",
    "classify_db_error",
    "is_retryable",
]
