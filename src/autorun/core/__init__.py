"""Core primitives: errors, logging, settings, models and repositories."""

from autorun.core.errors import (
    CANCELLED_MESSAGE,
    AutorunError,
    DelayJob,
    ErrorCategory,
    JobRemovalError,
    JobRemovalReason,
    MissingEntityError,
    RunCancelledError,
    ValidationError,
)
from autorun.core.logging import LogContext, configure_logging, get_logger
from autorun.core.models import (
    Run,
    RunStatus,
    Schedule,
    ScheduleKind,
    TargetType,
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    WorkflowRun,
)
from autorun.core.settings import AutorunSettings, get_settings

__all__ = [
    "CANCELLED_MESSAGE",
    "AutorunError",
    "DelayJob",
    "ErrorCategory",
    "JobRemovalError",
    "JobRemovalReason",
    "MissingEntityError",
    "RunCancelledError",
    "ValidationError",
    "LogContext",
    "configure_logging",
    "get_logger",
    "Run",
    "RunStatus",
    "Schedule",
    "ScheduleKind",
    "TargetType",
    "Workflow",
    "WorkflowEdge",
    "WorkflowNode",
    "WorkflowRun",
    "AutorunSettings",
    "get_settings",
]
