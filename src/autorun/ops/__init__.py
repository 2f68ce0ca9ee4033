"""
Operations layer: what the API, the CLI and agent tools call.

Every operation returns an ``OperationResult`` and never raises for
expected failures (missing entities, validation, queue state).

Usage::

    from autorun.ops import SchedulingService

    result = await core.scheduling.run_schedule(user_id, schedule_id)
    if result.success:
        print(result.data["runId"])
"""

from autorun.ops.result import OperationError, OperationResult
from autorun.ops.schedules import SchedulingService
from autorun.ops.tools import SchedulingTools
from autorun.ops.workflows import WorkflowService

__all__ = [
    "OperationError",
    "OperationResult",
    "SchedulingService",
    "SchedulingTools",
    "WorkflowService",
]
