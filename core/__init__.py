"""
Core utilities and configuration for the pipeline orchestrator.

This package provides foundational components used throughout the system:

Modules:
    config: Application configuration and environment variable management
    database: Async database engine and session factories
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    observability: Fire-and-forget observability sink
    clock: Injectable clock for scheduling logic

Usage:
    from core.config import settings
    from core.exceptions import NotFoundError, ValidationError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()
"""

__all__ = [
    "settings",
    "setup_logging",
    "build_engine",
    "build_session_maker",
    "ObservabilitySink",
    "LoggingSink",
    "SafeSink",
    "SystemClock",
    "MockClock",
    # Exceptions
    "PipelineError",
    "RetryableError",
    "NonRetryableError",
    "ValidationError",
    "NotFoundError",
    "AlreadyRunningError",
    "NotRunningError",
    "DependencyNotMetError",
    "ExtractError",
    "TransformationError",
    "DataValidationError",
    "LoadError",
    "StoreError",
    "StoreUnavailableError",
    "LedgerError",
    "ExecutionCancelled",
]
