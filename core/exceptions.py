"""
Custom exceptions for the pipeline orchestrator with structured error context.

This module provides the exception hierarchy used by the job registry,
execution engine and stage runner. Each exception carries context
information for debugging and for the observability sink.

Exception Hierarchy:
    PipelineError (base)
    ├── ValidationError              (bad job/step definition, non-retryable)
    ├── NotFoundError                (unknown job/execution id)
    ├── JobStateError
    │   ├── AlreadyRunningError
    │   └── NotRunningError
    ├── DependencyNotMetError
    ├── ExtractError
    ├── TransformationError
    │   └── DataValidationError      (record rejected under onFailure=fail)
    ├── LoadError
    ├── StoreError
    │   └── StoreUnavailableError    (connectivity failure, retryable)
    ├── LedgerError
    ├── ExecutionCancelled
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any

from core.clock import utcnow


class PipelineError(Exception):
    """
    Base exception for all orchestrator errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job_id, step, etc.)
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
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineError):
    """
    Mixin for errors that are subject to the job's retry policy.

    Use this for transient errors like:
    - Data store connectivity loss
    - Source/target I/O failures
    """
    pass


class NonRetryableError(PipelineError):
    """
    Mixin for errors that must NOT trigger retry logic.

    A failed execution caused by one of these goes straight to the
    terminal ``failed`` status.
    """
    pass


# ============================================================================
# Definition & Lookup Errors
# ============================================================================

class ValidationError(NonRetryableError):
    """
    Raised when a job or step definition is invalid.

    Rejected before persistence. Context should include:
        - field_errors: list of field-level errors (if applicable)
        - job_id: id of the job being updated (if applicable)
    """
    pass


class NotFoundError(PipelineError):
    """Raised when a job or execution id is unknown."""
    pass


# ============================================================================
# State Conflict Errors
# ============================================================================

class JobStateError(PipelineError):
    """Base exception for execute/cancel state conflicts."""
    pass


class AlreadyRunningError(JobStateError):
    """Raised when executing a job that is running or already queued."""
    pass


class NotRunningError(JobStateError):
    """Raised when cancelling a job that is not running."""
    pass


class DependencyNotMetError(PipelineError):
    """
    Raised when a dependency's last execution did not complete.

    Context should include:
        - job_id: the job being executed
        - unmet_dependencies: ids of the blocking dependency jobs
    """
    pass


# ============================================================================
# Stage Errors
# ============================================================================

class ExtractError(RetryableError):
    """
    Raised when the Extract stage cannot read from the source.

    Context should include:
        - collection: source collection name
    """
    pass


class TransformationError(PipelineError):
    """
    Raised when a transformation step fails. Fatal for the current execution.

    Context should include:
        - step_id / step_name / step_type: the failing step
    """
    pass


class DataValidationError(TransformationError):
    """
    Raised when a record fails validation under the ``fail`` policy.

    Context should include:
        - record_index: position of the rejected record
        - errors: rule failure messages
    """
    pass


class LoadError(RetryableError):
    """
    Raised when the Load stage aborts.

    Context should include:
        - collection: target collection name
        - records_written / records_failed: progress at abort time
    """
    pass


# ============================================================================
# Persistence Errors
# ============================================================================

class StoreError(PipelineError):
    """Base exception for data store failures."""
    pass


class StoreUnavailableError(RetryableError, StoreError):
    """Data store connectivity failure. Fatal for the current stage."""
    pass


class LedgerError(PipelineError):
    """
    Raised when the execution ledger rejects a write.

    Context should include:
        - execution_id: id of the execution
        - status: stored terminal status
    """
    pass


class ExecutionCancelled(PipelineError):
    """Raised by the stage runner when cooperative cancellation is detected."""
    pass
