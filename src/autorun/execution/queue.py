"""Durable job queue with a bounded asyncio worker pool.

The run id doubles as the job id, which makes ``enqueue`` idempotent: the
cron tick and a user's "run now" can both submit the same run and it
executes once.

Architecture:
    ::

        enqueue(id, data) ──► store.add   (no-op if id exists)
                                  │
                  ┌───────────────▼────────────────┐
                  │ waiting ──claim──► active       │
                  │    ▲                 │          │
                  │    │ promote         ├─ ok ───► completed ─┐
                  │ delayed ◄────────────┤                     ├─► purged after
                  │    (DelayJob: attempt refunded)            │   retention
                  │    (retryable error: backoff)              │
                  │                      └─ final ► failed ────┘
                  └────────────────────────────────┘

        Worker pool: ``concurrency`` asyncio tasks, each claim → handle.
        Every handler call runs under ``asyncio.timeout(timeout_seconds + grace)``;
        executors enforce ``timeout_seconds`` and record the failure themselves.
        A handler may define ``on_final_failure(job, reason)``; the queue awaits it
        when a job fails for good, so failures outside the executor still
        reach the run record.

Delivery is at-least-once: an active job whose worker vanished (process
crash) is charged one attempt once it has been active for longer than its
timeout plus a grace period, then returned to ``waiting`` or, with no
attempts left, failed.

Tags:
    autorun, queue, worker-pool, retry, backoff, idempotency

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from autorun.core.errors import (
    AutorunError,
    DelayJob,
    JobRemovalError,
    QueueUnavailableError,
)
from autorun.core.logging import LogContext, get_logger

logger = get_logger(__name__)

STALLED_GRACE_SECONDS = 60.0
# Handlers enforce timeout_seconds themselves; the queue cancels only past this margin
TIMEOUT_GRACE_SECONDS = 5.0
MAINTENANCE_INTERVAL_SECONDS = 60.0
STALLED_REASON = "Job stalled"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOptions:
    """Per-queue delivery policy."""

    attempts: int = 3
    backoff_seconds: float = 5.0
    timeout_seconds: float = 30 * 60
    remove_on_complete_seconds: float = 24 * 3600
    remove_on_fail_seconds: float = 7 * 24 * 3600

    def backoff_delay(self, attempts_made: int) -> float:
        """Exponential backoff after the ``attempts_made``-th failed attempt."""
        return self.backoff_seconds * (2 ** max(0, attempts_made - 1))


@dataclass
class Job:
    """A queued unit of work. ``attempts_made`` counts finished failed attempts."""

    id: str
    name: str
    data: dict[str, Any]
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    created_at: float = 0.0
    processed_at: float | None = None
    finished_at: float | None = None
    available_at: float | None = None
    failed_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "available_at": self.available_at,
            "failed_reason": self.failed_reason,
        }


JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass
class StalledJobs:
    """Outcome of one stalled-job sweep."""

    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@runtime_checkable
class JobStore(Protocol):
    """Storage contract the queue runs on. All state changes are atomic."""

    async def add(self, job: Job) -> bool:
        """Insert ``job`` unless its id exists. Returns True if inserted."""
        ...

    async def get(self, job_id: str) -> Job | None: ...

    async def claim(self, now: float) -> Job | None:
        """Promote due delayed jobs, then move the oldest waiting job to active."""
        ...

    async def complete(self, job_id: str, now: float) -> None: ...

    async def fail(self, job_id: str, reason: str, attempts_made: int, now: float) -> None: ...

    async def delay(
        self, job_id: str, available_at: float, attempts_made: int, reason: str | None
    ) -> None:
        """Move an active job to delayed with the given attempt count."""
        ...

    async def remove(self, job_id: str) -> None:
        """Remove a non-active job. Raises JobRemovalError."""
        ...

    async def clean(self, completed_before: float, failed_before: float) -> int: ...

    async def recover_stalled(
        self, started_before: float, max_attempts: int, now: float
    ) -> StalledJobs:
        """Charge stalled active jobs one attempt; requeue them or fail them if spent."""
        ...

    async def counts(self) -> dict[str, int]: ...

    async def ping(self) -> bool: ...


class InMemoryJobStore:
    """Process-local JobStore.

    Used by tests and by single-process deployments that still want retry
    and contention semantics. It does not survive restart.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._waiting: deque[str] = deque()

    async def add(self, job: Job) -> bool:
        if job.id in self._jobs:
            return False
        job.state = JobState.WAITING
        self._jobs[job.id] = job
        self._waiting.append(job.id)
        return True

    async def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def _promote(self, now: float) -> None:
        due = sorted(
            (j for j in self._jobs.values() if j.state is JobState.DELAYED and (j.available_at or 0) <= now),
            key=lambda j: j.available_at or 0,
        )
        for job in due:
            job.state = JobState.WAITING
            self._waiting.append(job.id)

    async def claim(self, now: float) -> Job | None:
        self._promote(now)
        while self._waiting:
            job = self._jobs.get(self._waiting.popleft())
            if job is None or job.state is not JobState.WAITING:
                continue
            job.state = JobState.ACTIVE
            job.processed_at = now
            return job
        return None

    async def complete(self, job_id: str, now: float) -> None:
        job = self._jobs[job_id]
        job.state = JobState.COMPLETED
        job.finished_at = now

    async def fail(self, job_id: str, reason: str, attempts_made: int, now: float) -> None:
        job = self._jobs[job_id]
        job.state = JobState.FAILED
        job.failed_reason = reason
        job.attempts_made = attempts_made
        job.finished_at = now

    async def delay(
        self, job_id: str, available_at: float, attempts_made: int, reason: str | None
    ) -> None:
        job = self._jobs[job_id]
        job.state = JobState.DELAYED
        job.available_at = available_at
        job.attempts_made = attempts_made
        if reason:
            job.failed_reason = reason

    async def remove(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobRemovalError.not_found(job_id)
        if job.state is JobState.ACTIVE:
            raise JobRemovalError.active(job_id)
        del self._jobs[job_id]

    async def clean(self, completed_before: float, failed_before: float) -> int:
        expired = [
            j.id
            for j in self._jobs.values()
            if (j.state is JobState.COMPLETED and (j.finished_at or 0) < completed_before)
            or (j.state is JobState.FAILED and (j.finished_at or 0) < failed_before)
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    async def recover_stalled(
        self, started_before: float, max_attempts: int, now: float
    ) -> StalledJobs:
        result = StalledJobs()
        for job in list(self._jobs.values()):
            if job.state is not JobState.ACTIVE or (job.processed_at or 0) >= started_before:
                continue
            job.attempts_made += 1
            if job.attempts_made >= max_attempts:
                job.state = JobState.FAILED
                job.failed_reason = STALLED_REASON
                job.finished_at = now
                result.failed.append(job.id)
            else:
                job.state = JobState.WAITING
                self._waiting.append(job.id)
                result.requeued.append(job.id)
        return result

    async def counts(self) -> dict[str, int]:
        result = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            result[job.state.value] += 1
        return result

    async def ping(self) -> bool:
        return True


@dataclass
class QueueStats:
    """Counters for one JobQueue in this process."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    delayed: int = 0
    timed_out: int = 0
    active: int = 0
    recovered: int = 0
    started_at: float | None = None
    last_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "delayed": self.delayed,
            "timed_out": self.timed_out,
            "active": self.active,
            "recovered": self.recovered,
            "last_error": self.last_error,
            **self.extra,
        }


def _should_retry(error: BaseException) -> bool:
    # Typed errors decide for themselves; anything else the runtime throws
    # is an execution error and gets the attempt budget.
    if isinstance(error, AutorunError):
        return error.retryable
    return True


class JobQueue:
    """Named queue with ``concurrency`` asyncio workers.

    Example:
        >>> queue = JobQueue("scheduled-agent-runs", InMemoryJobStore(), concurrency=3)
        >>> await queue.enqueue("run_1", {"runId": "run_1", "agentId": "a1"})
        >>> queue.start(handler)
        >>> ...
        >>> await queue.stop()
    """

    def __init__(
        self,
        name: str,
        store: JobStore,
        options: JobOptions | None = None,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.store = store
        self.options = options or JobOptions()
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._clock = clock
        self._workers: list[asyncio.Task] = []
        self._maintenance: asyncio.Task | None = None
        self._handler: JobHandler | None = None
        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        self.stats = QueueStats()

    # === Producer API ===

    async def enqueue(self, job_id: str, data: dict[str, Any], name: str | None = None) -> Job:
        """Add a job keyed by ``job_id``. Re-enqueueing an existing id is a no-op.

        Raises:
            QueueUnavailableError: the store cannot be reached
        """
        job = Job(id=job_id, name=name or self.name, data=data, created_at=self._clock())
        inserted = await self.store.add(job)
        if inserted:
            logger.info("queue.job.enqueued", queue=self.name, job_id=job_id)
            self._wakeup.set()
            return job
        logger.info("queue.job.duplicate", queue=self.name, job_id=job_id)
        existing = await self.store.get(job_id)
        return existing or job

    async def remove(self, job_id: str) -> bool:
        """Remove a job that has not started.

        Raises:
            JobRemovalError: job is active ("Job is being processed"),
                unknown ("Job not found"), or the store is down
        """
        await self.store.remove(job_id)
        logger.info("queue.job.removed", queue=self.name, job_id=job_id)
        return True

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get(job_id)

    async def counts(self) -> dict[str, int]:
        return await self.store.counts()

    async def is_available(self) -> bool:
        try:
            return await self.store.ping()
        except QueueUnavailableError:
            return False

    # === Worker Pool ===

    def start(self, handler: JobHandler) -> None:
        """Spawn the worker tasks. Must be called from inside a running loop."""
        if self._workers:
            logger.warning("queue.already_started", queue=self.name)
            return
        self._stopping.clear()
        self.stats.started_at = self._clock()
        self._handler = handler
        loop = asyncio.get_running_loop()
        self._workers = [
            loop.create_task(self._worker(i, handler), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        self._maintenance = loop.create_task(self._maintain(), name=f"{self.name}-maintenance")
        logger.info("queue.started", queue=self.name, concurrency=self.concurrency)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop claiming; wait up to ``timeout`` for in-flight jobs, then cancel."""
        if not self._workers:
            return
        self._stopping.set()
        self._wakeup.set()
        tasks = [*self._workers, *([self._maintenance] if self._maintenance else [])]
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        self._maintenance = None
        logger.info("queue.stopped", queue=self.name, cancelled=len(pending))

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._workers)

    async def _worker(self, index: int, handler: JobHandler) -> None:
        while not self._stopping.is_set():
            try:
                handled = await self.process_next(handler)
            except QueueUnavailableError as e:
                self.stats.last_error = str(e)
                logger.error("queue.claim_failed", queue=self.name, worker=index, error=str(e))
                handled = False
            if handled:
                continue
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

    async def process_next(self, handler: JobHandler) -> bool:
        """Claim and handle one job. Returns False when nothing was ready."""
        job = await self.store.claim(self._clock())
        if job is None:
            return False
        await self._handle(job, handler)
        return True

    async def _handle(self, job: Job, handler: JobHandler) -> None:
        attempt = job.attempts_made + 1
        self.stats.processed += 1
        self.stats.active += 1
        async with LogContext(queue=self.name, job_id=job.id, attempt=attempt):
            try:
                async with asyncio.timeout(self.options.timeout_seconds + TIMEOUT_GRACE_SECONDS):
                    await handler(job)
            except DelayJob as signal:
                self.stats.delayed += 1
                await self.store.delay(
                    job.id, self._clock() + signal.delay_seconds, job.attempts_made, signal.reason
                )
                logger.info(
                    "queue.job.delayed",
                    delay_seconds=signal.delay_seconds,
                    reason=signal.reason,
                )
            except TimeoutError:
                self.stats.timed_out += 1
                await self._record_failure(job, attempt, "Job timed out", handler, retry=True)
            except Exception as e:
                await self._record_failure(
                    job, attempt, str(e) or type(e).__name__, handler, retry=_should_retry(e)
                )
            else:
                self.stats.completed += 1
                await self.store.complete(job.id, self._clock())
                logger.debug("queue.job.completed")
            finally:
                self.stats.active -= 1

    async def _record_failure(
        self, job: Job, attempt: int, reason: str, handler: JobHandler, *, retry: bool
    ) -> None:
        self.stats.last_error = reason
        if retry and attempt < self.options.attempts:
            delay = self.options.backoff_delay(attempt)
            self.stats.retried += 1
            await self.store.delay(job.id, self._clock() + delay, attempt, reason)
            logger.warning("queue.job.retry_scheduled", reason=reason, delay_seconds=delay)
            return
        self.stats.failed += 1
        await self.store.fail(job.id, reason, attempt, self._clock())
        logger.error("queue.job.failed", reason=reason, attempts=attempt)
        await self._notify_final_failure(job, reason, handler)

    async def _notify_final_failure(self, job: Job, reason: str, handler: JobHandler | None) -> None:
        on_final_failure = getattr(handler, "on_final_failure", None)
        if on_final_failure is None:
            return
        try:
            await on_final_failure(job, reason)
        except Exception:
            logger.exception("queue.job.final_failure_hook_failed", job_id=job.id)

    # === Maintenance ===

    async def _maintain(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_maintenance()
            except QueueUnavailableError as e:
                logger.error("queue.maintenance_failed", queue=self.name, error=str(e))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=MAINTENANCE_INTERVAL_SECONDS)
            except TimeoutError:
                pass

    async def run_maintenance(self, handler: JobHandler | None = None) -> None:
        """Purge expired finished jobs and sweep stalled active ones.

        A stalled job is charged one attempt. Jobs with attempts left go
        back to waiting; the rest fail and ``handler`` (defaults to the
        running one) gets its final-failure hook.
        """
        now = self._clock()
        removed = await self.store.clean(
            now - self.options.remove_on_complete_seconds,
            now - self.options.remove_on_fail_seconds,
        )
        if removed:
            logger.debug("queue.cleaned", queue=self.name, removed=removed)
        stalled = await self.store.recover_stalled(
            now - self.options.timeout_seconds - STALLED_GRACE_SECONDS,
            self.options.attempts,
            now,
        )
        if stalled.requeued:
            self.stats.recovered += len(stalled.requeued)
            self._wakeup.set()
            logger.warning("queue.stalled_recovered", queue=self.name, job_ids=stalled.requeued)
        handler = handler or self._handler
        for job_id in stalled.failed:
            self.stats.failed += 1
            logger.error("queue.stalled_failed", queue=self.name, job_id=job_id)
            job = await self.store.get(job_id)
            if job is not None:
                await self._notify_final_failure(job, STALLED_REASON, handler)

    async def health(self) -> dict[str, Any]:
        available = await self.is_available()
        counts = await self.counts() if available else {}
        return {
            "queue": self.name,
            "healthy": available and self.is_running,
            "available": available,
            "running": self.is_running,
            "concurrency": self.concurrency,
            "counts": counts,
            "stats": self.stats.to_dict(),
        }
