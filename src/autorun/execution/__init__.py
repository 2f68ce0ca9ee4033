"""Execution: abort registry, agent locks, job queue, runtime contract and the Agent Run Executor.

Queue workers (``autorun.execution.workers``) and the dispatcher
(``autorun.execution.dispatch``) are imported from their modules; the
workers depend on the workflow engine, which itself builds on this
package.
"""

from autorun.execution.abort import AbortRegistry, CancellationToken
from autorun.execution.executor import AgentRunExecutor, AgentRunJob, ExecutionResult
from autorun.execution.locks import AgentLockService, InMemoryLockService, RedisLockService
from autorun.execution.queue import InMemoryJobStore, Job, JobOptions, JobQueue, JobState, JobStore
from autorun.execution.runtime import (
    AgentRunRequest,
    AgentRuntime,
    AgentTurn,
    Cancelled,
    Completed,
    Failed,
    run_to_completion,
)
from autorun.execution.serial import KeyedSerializer

__all__ = [
    "AbortRegistry",
    "AgentLockService",
    "AgentRunExecutor",
    "AgentRunJob",
    "AgentRunRequest",
    "AgentRuntime",
    "AgentTurn",
    "Cancelled",
    "CancellationToken",
    "Completed",
    "ExecutionResult",
    "Failed",
    "InMemoryJobStore",
    "InMemoryLockService",
    "Job",
    "JobOptions",
    "JobQueue",
    "JobState",
    "JobStore",
    "KeyedSerializer",
    "RedisLockService",
    "run_to_completion",
]
