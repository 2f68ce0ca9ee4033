"""Queue job handlers.

``AgentRunWorker`` guards each agent run with the per-agent lock: a busy
agent turns into a delayed re-delivery (no attempt consumed), never a
failure. ``WorkflowRunWorker`` takes no lock, since one workflow may span
several agents and a WorkflowRun is only ever claimed by one delivery.

Both expose ``on_final_failure``, which the queue calls when a job runs out
of attempts without the handler recording an outcome, so the run record
still ends up ``failed``.
"""

from __future__ import annotations

from autorun.core.errors import DelayJob
from autorun.core.logging import get_logger
from autorun.orchestration.engine import WorkflowEngine, WorkflowJob, WorkflowResult

from .executor import AgentRunExecutor, AgentRunJob, ExecutionResult
from .locks import AgentLockService
from .queue import Job, JobOptions

logger = get_logger(__name__)


def is_final_attempt(job: Job, options: JobOptions) -> bool:
    return job.attempts_made + 1 >= options.attempts


class AgentRunWorker:
    """Adapts ``scheduled-agent-runs`` jobs to the AgentRunExecutor."""

    def __init__(
        self,
        executor: AgentRunExecutor,
        locks: AgentLockService,
        options: JobOptions,
        contention_delay_seconds: float = 5.0,
    ) -> None:
        self.executor = executor
        self.locks = locks
        self.options = options
        self.contention_delay_seconds = contention_delay_seconds

    async def __call__(self, job: Job) -> ExecutionResult:
        payload = AgentRunJob.from_payload(job.data)
        ttl = self.options.timeout_seconds
        if not await self.locks.acquire(payload.agent_id, payload.run_id, ttl):
            holder = await self.locks.holder(payload.agent_id)
            logger.info(
                "worker.agent_busy",
                agent_id=payload.agent_id,
                run_id=payload.run_id,
                holder=holder,
                delay_seconds=self.contention_delay_seconds,
            )
            raise DelayJob(self.contention_delay_seconds, reason=f"agent {payload.agent_id} busy")
        try:
            return await self.executor.execute(
                payload, final_attempt=is_final_attempt(job, self.options)
            )
        finally:
            await self.locks.release(payload.agent_id, payload.run_id)

    async def on_final_failure(self, job: Job, reason: str) -> None:
        self.executor.abandon(AgentRunJob.from_payload(job.data), reason)


class WorkflowRunWorker:
    """Adapts ``workflow-scheduled-runs`` jobs to the WorkflowEngine."""

    def __init__(self, engine: WorkflowEngine, options: JobOptions) -> None:
        self.engine = engine
        self.options = options

    async def __call__(self, job: Job) -> WorkflowResult:
        payload = WorkflowJob.from_payload(job.data)
        return await self.engine.execute(payload, final_attempt=is_final_attempt(job, self.options))

    async def on_final_failure(self, job: Job, reason: str) -> None:
        self.engine.abandon(WorkflowJob.from_payload(job.data), reason)
