"""Removing and cancelling runs, shared by agent and workflow runs.

``remove_pending`` only touches jobs that have not started. ``cancel``
first tries the abort registry (the run is in flight in this process)
and falls back to ``remove_pending``.

A run whose job could not be found in the durable queue (degraded mode,
or the job was already purged) but whose record is still ``queued`` is
marked failed anyway, so the executor skips it when it is reached.
"""

from __future__ import annotations

from typing import Any, Protocol

from autorun.core.errors import CANCELLED_MESSAGE, JobRemovalError, JobRemovalReason
from autorun.core.logging import get_logger
from autorun.execution.abort import AbortRegistry
from autorun.execution.dispatch import RunDispatcher

from .result import JOB_ACTIVE, NOT_FOUND, QUEUE_UNAVAILABLE, OperationResult

logger = get_logger(__name__)

_REMOVAL_CODES = {
    JobRemovalReason.ACTIVE: JOB_ACTIVE,
    JobRemovalReason.NOT_FOUND: NOT_FOUND,
    JobRemovalReason.UNAVAILABLE: QUEUE_UNAVAILABLE,
}


class _RunRecords(Protocol):
    def get(self, run_id: str) -> Any: ...

    def mark_failed(self, run_id: str, error: str) -> bool: ...


async def remove_pending(
    dispatcher: RunDispatcher, records: _RunRecords, run_id: str
) -> OperationResult[dict[str, Any]]:
    """Remove a not-yet-started job.

    Returns ``{"removed": True}`` or a failure whose message is one of
    "Job is being processed", "Job not found", "Queue unavailable".
    """
    try:
        await dispatcher.remove(run_id)
    except JobRemovalError as e:
        return OperationResult.fail(_REMOVAL_CODES[e.reason], e.message, details={"removed": False})
    records.mark_failed(run_id, CANCELLED_MESSAGE)
    return OperationResult.ok({"removed": True})


async def cancel(
    registry: AbortRegistry,
    abort_key: str,
    dispatcher: RunDispatcher,
    records: _RunRecords,
    run_id: str,
) -> OperationResult[dict[str, Any]]:
    if registry.abort(abort_key):
        logger.info("run.cancel.aborted", run_id=run_id)
        return OperationResult.ok({"cancelled": True, "aborted": True, "removed": False})

    removal = await remove_pending(dispatcher, records, run_id)
    if removal.success:
        logger.info("run.cancel.removed", run_id=run_id)
        return OperationResult.ok({"cancelled": True, "aborted": False, "removed": True})

    if removal.error.code == JOB_ACTIVE:
        # In flight on another worker process; its token is not reachable here.
        return removal

    run = records.get(run_id)
    if run is not None and not run.status.is_terminal and records.mark_failed(run_id, CANCELLED_MESSAGE):
        logger.info("run.cancel.marked", run_id=run_id, reason=removal.error.message)
        return OperationResult.ok({"cancelled": True, "aborted": False, "removed": False})
    return removal
