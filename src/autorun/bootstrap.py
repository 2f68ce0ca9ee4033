"""
Composition root.

``create_core`` builds every service from ``AutorunSettings`` and an
agent runtime, so the API, the CLI and tests never wire components by
hand.

Manifesto:
    Backends are chosen once, here. With Redis the agent and workflow
    queues are durable, agent runs take a cross-process lock and only
    the elected leader ticks. Without Redis the process runs degraded:
    submissions are serialized in-process per target, there is no
    retry and nothing survives a restart.

Architecture:
    ::

        AutomationCore
          ├─ repositories (sqlite3)
          ├─ AbortRegistry
          ├─ agent queue ─► AgentRunWorker ─► AgentRunExecutor
          ├─ workflow queue ─► WorkflowRunWorker ─► WorkflowEngine
          ├─ RunDispatcher x2 (queue, or KeyedSerializer when degraded)
          ├─ SchedulingService / WorkflowService
          └─ SchedulerService (AsyncioSchedulerBackend + leader)

Tags:
    autorun, bootstrap, composition-root, degraded-mode

Doc-Types:
    architecture-diagram, api-reference
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from autorun.core.errors import ConfigError
from autorun.core.logging import get_logger
from autorun.core.repositories import (
    ConversationRepository,
    DirectoryRepository,
    RunRepository,
    ScheduleRepository,
    WorkflowRepository,
    WorkflowRunRepository,
)
from autorun.core.schema import connect
from autorun.core.settings import AutorunSettings
from autorun.execution.abort import AbortRegistry
from autorun.execution.dispatch import RunDispatcher
from autorun.execution.executor import AgentRunExecutor, AgentRunJob
from autorun.execution.locks import AgentLockService, RedisLockService
from autorun.execution.queue import JobOptions, JobQueue
from autorun.execution.redis_store import RedisJobStore
from autorun.execution.runtime import AgentRuntime
from autorun.execution.workers import AgentRunWorker, WorkflowRunWorker
from autorun.ops.schedules import SchedulingService
from autorun.ops.workflows import WorkflowService
from autorun.orchestration.engine import WorkflowEngine, WorkflowJob
from autorun.scheduling.backend import AsyncioSchedulerBackend
from autorun.scheduling.leader import LeaderElector, RedisLeaderElector, StaticLeader
from autorun.scheduling.service import SchedulerService

logger = get_logger(__name__)


@dataclass
class AutomationCore:
    """Every wired service of one process."""

    settings: AutorunSettings
    conn: sqlite3.Connection
    schedules: ScheduleRepository
    runs: RunRepository
    workflows: WorkflowRepository
    workflow_runs: WorkflowRunRepository
    directory: DirectoryRepository
    conversations: ConversationRepository
    registry: AbortRegistry
    executor: AgentRunExecutor
    engine: WorkflowEngine
    agent_dispatcher: RunDispatcher
    workflow_dispatcher: RunDispatcher
    scheduling: SchedulingService
    workflow_service: WorkflowService
    scheduler: SchedulerService
    redis: Any = None
    locks: AgentLockService | None = None
    agent_queue: JobQueue | None = None
    workflow_queue: JobQueue | None = None
    agent_worker: AgentRunWorker | None = None
    workflow_worker: WorkflowRunWorker | None = None
    _started: bool = field(default=False, repr=False)

    @property
    def degraded(self) -> bool:
        return self.agent_queue is None

    async def start(self, *, scheduler: bool = True) -> None:
        """Start queue workers and, optionally, the scheduler tick."""
        if self._started:
            return
        if self.agent_queue is not None:
            self.agent_queue.start(self.agent_worker)
        if self.workflow_queue is not None:
            self.workflow_queue.start(self.workflow_worker)
        if scheduler:
            self.scheduler.start()
        self._started = True
        logger.info("core.started", degraded=self.degraded, scheduler=scheduler)

    async def stop(self) -> None:
        """Stop the tick, then the workers, then wait for serialized runs."""
        if not self._started:
            return
        await self.scheduler.stop()
        for queue in (self.agent_queue, self.workflow_queue):
            if queue is not None:
                await queue.stop()
        await self.agent_dispatcher.drain()
        await self.workflow_dispatcher.drain()
        self._started = False
        logger.info("core.stopped")

    async def health(self) -> dict[str, Any]:
        queues = {}
        for queue in (self.agent_queue, self.workflow_queue):
            if queue is not None:
                queues[queue.name] = await queue.health()
        if self.degraded:
            status = "degraded"
        else:
            status = "healthy" if all(q["available"] for q in queues.values()) else "unhealthy"
        return {
            "status": status,
            "degraded": self.degraded,
            "active_runs": len(self.registry),
            "scheduler": self.scheduler.health(),
            "queues": queues,
        }


def _job_options(settings: AutorunSettings, *, agent: bool) -> JobOptions:
    if agent:
        return JobOptions(
            attempts=settings.agent_retry_attempts,
            backoff_seconds=settings.agent_backoff_seconds,
            timeout_seconds=settings.agent_job_timeout_seconds,
            remove_on_complete_seconds=settings.completed_retention_seconds,
            remove_on_fail_seconds=settings.failed_retention_seconds,
        )
    return JobOptions(
        attempts=settings.workflow_retry_attempts,
        backoff_seconds=settings.workflow_backoff_seconds,
        timeout_seconds=settings.workflow_job_timeout_seconds,
        remove_on_complete_seconds=settings.completed_retention_seconds,
        remove_on_fail_seconds=settings.failed_retention_seconds,
    )


def open_database(settings: AutorunSettings) -> sqlite3.Connection:
    path = settings.database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    return connect(str(path))


def create_core(
    settings: AutorunSettings,
    runtime: AgentRuntime,
    conn: sqlite3.Connection | None = None,
    redis: Any = None,
) -> AutomationCore:
    """Wire an AutomationCore.

    ``redis`` takes precedence over ``settings.redis_url``; pass a client
    (or a test double) to share one connection pool.

    Raises:
        ConfigError: ``require_redis`` is set and no Redis is configured
    """
    if redis is None and settings.redis_url:
        redis = aioredis.from_url(settings.redis_url)
    if redis is None:
        if settings.require_redis:
            raise ConfigError("Redis is required but AUTORUN_REDIS_URL is not set")
        logger.warning(
            "core.degraded_mode",
            reason="no redis configured",
            effect="runs are serialized in-process without retries or durability",
        )

    conn = conn if conn is not None else open_database(settings)
    schedules = ScheduleRepository(conn)
    runs = RunRepository(conn)
    workflows = WorkflowRepository(conn)
    workflow_runs = WorkflowRunRepository(conn)
    directory = DirectoryRepository(conn)
    conversations = ConversationRepository(conn)
    registry = AbortRegistry()

    executor = AgentRunExecutor(
        runs,
        schedules,
        directory,
        conversations,
        runtime,
        registry,
        timeout_seconds=settings.agent_job_timeout_seconds,
    )
    engine = WorkflowEngine(
        workflows,
        workflow_runs,
        directory,
        conversations,
        runtime,
        registry,
        schedules=schedules,
        timeout_seconds=settings.workflow_job_timeout_seconds,
    )

    locks: AgentLockService | None = None
    agent_queue: JobQueue | None = None
    workflow_queue: JobQueue | None = None
    agent_worker: AgentRunWorker | None = None
    workflow_worker: WorkflowRunWorker | None = None
    leader: LeaderElector = StaticLeader()

    if redis is not None:
        agent_prefix = settings.key_prefix(settings.agent_queue_prefix)
        workflow_prefix = settings.key_prefix(settings.workflow_queue_prefix)
        agent_options = _job_options(settings, agent=True)
        workflow_options = _job_options(settings, agent=False)

        locks = RedisLockService(redis, prefix=agent_prefix)
        agent_queue = JobQueue(
            settings.agent_queue_name,
            RedisJobStore(redis, agent_prefix, settings.agent_queue_name),
            agent_options,
            concurrency=settings.agent_queue_concurrency,
            poll_interval=settings.poll_interval_seconds,
        )
        workflow_queue = JobQueue(
            settings.workflow_queue_name,
            RedisJobStore(redis, workflow_prefix, settings.workflow_queue_name),
            workflow_options,
            concurrency=settings.workflow_queue_concurrency,
            poll_interval=settings.poll_interval_seconds,
        )
        agent_worker = AgentRunWorker(
            executor,
            locks,
            agent_options,
            contention_delay_seconds=settings.lock_contention_delay_seconds,
        )
        workflow_worker = WorkflowRunWorker(engine, workflow_options)
        leader = RedisLeaderElector(
            redis,
            key=f"{agent_prefix}:scheduler-leader",
            lease_seconds=settings.leader_lease_seconds,
        )

    async def run_agent_directly(payload: dict[str, Any]) -> Any:
        return await executor.execute(AgentRunJob.from_payload(payload), final_attempt=True)

    async def run_workflow_directly(payload: dict[str, Any]) -> Any:
        return await engine.execute(WorkflowJob.from_payload(payload), final_attempt=True)

    agent_dispatcher = RunDispatcher(settings.agent_queue_name, agent_queue, run_agent_directly)
    workflow_dispatcher = RunDispatcher(settings.workflow_queue_name, workflow_queue, run_workflow_directly)

    scheduling = SchedulingService(
        schedules,
        runs,
        directory,
        conversations,
        workflows,
        workflow_runs,
        agent_dispatcher,
        workflow_dispatcher,
        registry,
    )
    workflow_service = WorkflowService(
        workflows, workflow_runs, directory, conversations, workflow_dispatcher, registry
    )
    scheduler = SchedulerService(
        schedules,
        scheduling,
        backend=AsyncioSchedulerBackend(),
        leader=leader,
        interval_seconds=settings.tick_interval_seconds,
    )

    return AutomationCore(
        settings=settings,
        conn=conn,
        schedules=schedules,
        runs=runs,
        workflows=workflows,
        workflow_runs=workflow_runs,
        directory=directory,
        conversations=conversations,
        registry=registry,
        executor=executor,
        engine=engine,
        agent_dispatcher=agent_dispatcher,
        workflow_dispatcher=workflow_dispatcher,
        scheduling=scheduling,
        workflow_service=workflow_service,
        scheduler=scheduler,
        redis=redis,
        locks=locks,
        agent_queue=agent_queue,
        workflow_queue=workflow_queue,
        agent_worker=agent_worker,
        workflow_worker=workflow_worker,
    )
