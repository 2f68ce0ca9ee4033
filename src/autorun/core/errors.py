"""
Structured error types for the automation core.

Every failure the core can produce maps onto one of five outcomes for a
run: validation (fail fast, never retried), lock contention (not an error,
a deferred delivery), execution (recorded and retried within the attempt
budget), cancellation (surfaced as "Cancelled by user"), and infrastructure
(queue or lock backend down, triggers the degraded path).

Manifesto:
    - **Typed hierarchy:** Retry decisions come from the type, never from
      matching substrings in an error message
    - **Explicit retry semantics:** Each error knows if it's retryable
    - **Rich context:** Errors carry run/schedule/workflow identifiers
    - **Error chaining:** Original exceptions are kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       AutorunError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError     ExecutionError       InfrastructureError   │
        │  (never retried)     (retryable)          (retryable)           │
        │       │                   │                     │               │
        │  MissingEntityError  NoCompletionSignal   QueueUnavailableError │
        │  InvalidWorkflowError                     LockServiceError      │
        │                                                                  │
        │  ConfigError         RunCancelledError    JobRemovalError       │
        │  (CONFIG)            (CANCELLED)          (ACTIVE/NOT_FOUND)    │
        └─────────────────────────────────────────────────────────────────┘

        DelayJob is a control-flow signal raised by job handlers; the
        queue re-delivers the job later without consuming an attempt.

Examples:
    >>> err = MissingEntityError("agent", "agent_123")
    >>> err.retryable
    False
    >>> str(err)
    'Agent not found: agent_123'

    >>> JobRemovalError.active("run_1").reason
    <JobRemovalReason.ACTIVE: 'active'>

Tags:
    error-handling, exception-hierarchy, retry-logic, cancellation,
    autorun, observability

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

CANCELLED_MESSAGE = "Cancelled by user"


class ErrorCategory(str, Enum):
    """Error categories for classification and retry routing."""

    VALIDATION = "VALIDATION"     # Missing user/agent/prompt, invalid graph
    CONFIG = "CONFIG"             # Invalid settings
    EXECUTION = "EXECUTION"       # Agent runtime failures
    CANCELLED = "CANCELLED"       # User-initiated abort
    QUEUE = "QUEUE"               # Job queue backend
    LOCK = "LOCK"                 # Lock backend
    DATABASE = "DATABASE"         # Persistence failures
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging.

    Attributes:
        run_id: Run or workflow run identifier
        schedule_id: Schedule that produced the run
        workflow_id: Workflow being executed
        agent_id: Target agent
        step: Zero-based workflow step index
        metadata: Additional key-value pairs
    """

    run_id: str | None = None
    schedule_id: str | None = None
    workflow_id: str | None = None
    agent_id: str | None = None
    step: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["run_id", "schedule_id", "workflow_id", "agent_id", "step"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class AutorunError(Exception):
    """
    Base exception for all automation core errors.

    Subclasses set ``default_category`` and ``default_retryable`` so the
    job queue can decide whether to re-deliver without inspecting messages.

    Attributes:
        message: Human-readable message, stored on the run when it fails
        category: ErrorCategory for classification
        retryable: Whether the queue may re-deliver the job
        retry_after: Optional seconds to wait before retrying
        context: ErrorContext with run identifiers
        cause: Underlying exception, also set as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> AutorunError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS (never retried)
# =============================================================================


class ValidationError(AutorunError):
    """Input or reference validation failed before any execution started."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class MissingEntityError(ValidationError):
    """A referenced user, agent, schedule, workflow or run does not exist."""

    def __init__(self, entity: str, entity_id: str | None, **kwargs: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}", **kwargs)


class InvalidWorkflowError(ValidationError):
    """Workflow graph or node configuration is unusable."""

    def __init__(self, message: str, *, node_id: str | None = None, **kwargs: Any):
        self.node_id = node_id
        super().__init__(message, **kwargs)


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(AutorunError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(AutorunError):
    """The agent runtime reported a failure. Retried within the attempt budget."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = True


class NoCompletionSignalError(ExecutionError):
    """The runtime finished a turn without a persistence completion signal."""

    def __init__(self, **kwargs: Any):
        super().__init__("No completion signal", **kwargs)


class RunCancelledError(AutorunError):
    """A run was aborted through its cancellation token."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False

    def __init__(self, message: str = CANCELLED_MESSAGE, **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================


class InfrastructureError(AutorunError):
    """Queue, lock or database backend failure."""

    default_category = ErrorCategory.QUEUE
    default_retryable = True


class QueueUnavailableError(InfrastructureError):
    """The durable job queue cannot be reached."""

    default_category = ErrorCategory.QUEUE


class LockServiceError(InfrastructureError):
    """The lock backend cannot be reached."""

    default_category = ErrorCategory.LOCK


class JobRemovalReason(str, Enum):
    """Why a pending job could not be removed."""

    ACTIVE = "active"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


_REMOVAL_MESSAGES = {
    JobRemovalReason.ACTIVE: "Job is being processed",
    JobRemovalReason.NOT_FOUND: "Job not found",
    JobRemovalReason.UNAVAILABLE: "Queue unavailable",
}


class JobRemovalError(AutorunError):
    """A pending job could not be removed from the queue.

    The message is one of the fixed strings callers surface to users:
    ``"Job is being processed"``, ``"Job not found"`` or ``"Queue unavailable"``.
    """

    default_category = ErrorCategory.QUEUE
    default_retryable = False

    def __init__(self, reason: JobRemovalReason, job_id: str, **kwargs: Any):
        self.reason = reason
        self.job_id = job_id
        super().__init__(_REMOVAL_MESSAGES[reason], **kwargs)
        self.context.run_id = job_id

    @classmethod
    def active(cls, job_id: str) -> JobRemovalError:
        return cls(JobRemovalReason.ACTIVE, job_id)

    @classmethod
    def not_found(cls, job_id: str) -> JobRemovalError:
        return cls(JobRemovalReason.NOT_FOUND, job_id)

    @classmethod
    def unavailable(cls, job_id: str) -> JobRemovalError:
        return cls(JobRemovalReason.UNAVAILABLE, job_id)


# =============================================================================
# CONTROL FLOW
# =============================================================================


class DelayJob(Exception):
    """Raised by a job handler to re-deliver the job after ``delay_seconds``.

    The attempt that raised it is not counted against the retry budget.
    """

    def __init__(self, delay_seconds: float, reason: str = "delayed"):
        super().__init__(f"{reason} (retry in {delay_seconds}s)")
        self.delay_seconds = delay_seconds
        self.reason = reason


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, AutorunError):
        return error.retryable
    if isinstance(error, TimeoutError):
        return True
    return isinstance(error, (ConnectionError, OSError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, AutorunError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.QUEUE
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "CANCELLED_MESSAGE",
    "ErrorCategory",
    "ErrorContext",
    "AutorunError",
    "ValidationError",
    "MissingEntityError",
    "InvalidWorkflowError",
    "ConfigError",
    "ExecutionError",
    "NoCompletionSignalError",
    "RunCancelledError",
    "InfrastructureError",
    "QueueUnavailableError",
    "LockServiceError",
    "JobRemovalReason",
    "JobRemovalError",
    "DelayJob",
    "is_retryable",
    "categorize_error",
]
