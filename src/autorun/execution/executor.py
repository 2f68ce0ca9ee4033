"""Agent Run Executor.

Runs exactly one agent invocation for a queued Run and persists its
outcome.

::

    execute(job)
      │
      ├─ runs.mark_running(run_id)          terminal run → skip
      ├─ resolve user + agent               missing → ValidationError
      ├─ resolve prompt template
      ├─ registry.register(run_id, token)
      │     runtime.run(request) ─► Completed | Cancelled | Failed
      │     await turn.completion           absent → "No completion signal"
      ├─ registry.unregister(run_id)        always
      │
      ├─ success: run → success, tag conversation, schedule last-run
      └─ failure: run → failed ("Cancelled by user" for cancellation),
                  schedule last-run failed; writes are best effort

Retries belong to the job queue. When an attempt fails with a retryable
error and the queue still has attempts left (``final_attempt=False``) the
run stays ``running`` and the error is re-raised, so the status sequence
never revisits ``queued`` and never leaves a terminal state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from autorun.core.errors import (
    CANCELLED_MESSAGE,
    AutorunError,
    ExecutionError,
    MissingEntityError,
    RunCancelledError,
)
from autorun.core.logging import LogContext, get_logger
from autorun.core.models import RunStatus
from autorun.core.repositories import (
    ConversationRepository,
    DirectoryRepository,
    RunRepository,
    ScheduleRepository,
)
from autorun.orchestration.prompts import PromptContext, resolve_prompt

from .abort import AbortRegistry, CancellationToken
from .runtime import AgentRunRequest, AgentRuntime, AgentTurn, run_to_completion

logger = get_logger(__name__)


@dataclass
class AgentRunJob:
    """Queue payload for a single-agent run (``runId`` is also the job id)."""

    run_id: str
    schedule_id: str
    user_id: str
    agent_id: str
    prompt: str
    conversation_id: str | None = None
    selected_tools: list[str] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "runId": self.run_id,
            "scheduleId": self.schedule_id,
            "userId": self.user_id,
            "agentId": self.agent_id,
            "prompt": self.prompt,
        }
        if self.conversation_id:
            payload["conversationId"] = self.conversation_id
        if self.selected_tools is not None:
            payload["selectedTools"] = list(self.selected_tools)
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AgentRunJob:
        return cls(
            run_id=payload["runId"],
            schedule_id=payload["scheduleId"],
            user_id=payload["userId"],
            agent_id=payload["agentId"],
            prompt=payload.get("prompt", ""),
            conversation_id=payload.get("conversationId"),
            selected_tools=payload.get("selectedTools"),
        )


@dataclass
class ExecutionResult:
    run_id: str
    status: RunStatus
    conversation_id: str | None = None
    error: str | None = None
    text: str | None = None
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "conversation_id": self.conversation_id,
            "error": self.error,
            "skipped": self.skipped,
        }


def classify_failure(error: BaseException, final_attempt: bool) -> tuple[str, bool]:
    """Return ``(message stored on the run, hand back to the queue for retry)``."""
    if isinstance(error, RunCancelledError):
        return CANCELLED_MESSAGE, False
    if isinstance(error, AutorunError):
        return error.message, error.retryable and not final_attempt
    return str(error) or type(error).__name__, not final_attempt


def run_title(name: str, at: datetime, agent_name: str | None = None) -> str:
    """Conversation title for an automated run."""
    title = f"{name or 'Scheduled run'} - {at.strftime('%Y-%m-%d %H:%M')} UTC"
    if agent_name:
        title = f"{title} ({agent_name})"
    return title


class AgentRunExecutor:
    """Executes AgentRunJobs against the agent runtime."""

    def __init__(
        self,
        runs: RunRepository,
        schedules: ScheduleRepository,
        directory: DirectoryRepository,
        conversations: ConversationRepository,
        runtime: AgentRuntime,
        registry: AbortRegistry,
        timeout_seconds: float | None = None,
    ) -> None:
        self.runs = runs
        self.schedules = schedules
        self.directory = directory
        self.conversations = conversations
        self.runtime = runtime
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    async def execute(self, job: AgentRunJob, *, final_attempt: bool = True) -> ExecutionResult:
        """Run ``job`` once.

        Returns an ExecutionResult for terminal outcomes. Re-raises the
        error only when it is retryable and ``final_attempt`` is False.
        """
        async with LogContext(run_id=job.run_id, schedule_id=job.schedule_id, agent_id=job.agent_id):
            if not self.runs.mark_running(job.run_id):
                existing = self.runs.get(job.run_id)
                if existing is not None and existing.status.is_terminal:
                    logger.info("executor.run.skipped", status=existing.status.value)
                    return ExecutionResult(
                        run_id=job.run_id,
                        status=existing.status,
                        conversation_id=existing.conversation_id,
                        error=existing.error,
                        skipped=True,
                    )
                logger.warning("executor.run.missing_record")

            conversation_id = job.conversation_id or str(uuid4())
            run_at = datetime.now(UTC)
            try:
                turn = await self._invoke(job, conversation_id, run_at)
            except Exception as e:
                return self._handle_failure(job, conversation_id, e, final_attempt)

            self._record_success(job, turn, run_at)
            return ExecutionResult(
                run_id=job.run_id,
                status=RunStatus.SUCCESS,
                conversation_id=turn.conversation_id,
                text=turn.text,
            )

    def abandon(self, job: AgentRunJob, reason: str) -> bool:
        """Fail a run whose last delivery died outside ``execute``.

        Covers the queue's own timeout and errors raised before the run
        started (lock backend down). Terminal runs are left as they are.
        """
        if not self.runs.mark_failed(job.run_id, reason):
            return False
        logger.error("executor.run.abandoned", run_id=job.run_id, error=reason)
        try:
            self.schedules.record_last_run(job.schedule_id, RunStatus.FAILED)
        except Exception:
            logger.exception("executor.schedule_write_failed")
        return True

    async def _invoke(self, job: AgentRunJob, conversation_id: str, run_at: datetime) -> AgentTurn:
        user = self.directory.get_user(job.user_id)
        if user is None:
            raise MissingEntityError("user", job.user_id)
        agent = self.directory.get_agent(job.agent_id)
        if agent is None:
            raise MissingEntityError("agent", job.agent_id)

        text = resolve_prompt(
            job.prompt,
            PromptContext(user=user, run_at=run_at, conversation_id=conversation_id),
        )
        token = CancellationToken()
        request = AgentRunRequest(
            run_id=job.run_id,
            user=user,
            agent=agent,
            text=text,
            conversation_id=conversation_id,
            token=token,
            selected_tools=job.selected_tools,
        )

        logger.info("executor.run.started", prompt_chars=len(text))
        deadline = asyncio.timeout(self.timeout_seconds)
        self.registry.register(job.run_id, token)
        try:
            async with deadline:
                return await run_to_completion(self.runtime, request)
        except TimeoutError as e:
            if not deadline.expired():
                raise
            raise ExecutionError(f"Run timed out after {self.timeout_seconds:g}s", cause=e) from e
        finally:
            self.registry.unregister(job.run_id)

    def _record_success(self, job: AgentRunJob, turn: AgentTurn, run_at: datetime) -> None:
        conversation_id = turn.conversation_id
        try:
            self.runs.mark_success(job.run_id, conversation_id)
            schedule = self.schedules.get(job.schedule_id)
            agent = self.directory.get_agent(job.agent_id)
            self.conversations.ensure(conversation_id, job.user_id, job.agent_id)
            self.conversations.tag(
                conversation_id,
                tags=[f"run:{job.run_id}"],
                title=run_title(
                    schedule.name if schedule else "Scheduled run",
                    run_at,
                    agent.name if agent else None,
                ),
                agent_id=job.agent_id,
            )
            self.schedules.record_last_run(job.schedule_id, RunStatus.SUCCESS, run_at.isoformat())
        except Exception:
            logger.exception("executor.status_write_failed", status=RunStatus.SUCCESS.value)
        logger.info("executor.run.succeeded", conversation_id=conversation_id)

    def _handle_failure(
        self,
        job: AgentRunJob,
        conversation_id: str,
        error: Exception,
        final_attempt: bool,
    ) -> ExecutionResult:
        message, retry = classify_failure(error, final_attempt)
        if retry:
            logger.warning("executor.run.attempt_failed", error=message)
            raise error

        logger.error("executor.run.failed", error=message, error_type=type(error).__name__)
        try:
            self.runs.mark_failed(job.run_id, message)
        except Exception:
            logger.exception("executor.status_write_failed", status=RunStatus.FAILED.value)
        try:
            self.schedules.record_last_run(job.schedule_id, RunStatus.FAILED)
        except Exception:
            logger.exception("executor.schedule_write_failed")
        return ExecutionResult(
            run_id=job.run_id,
            status=RunStatus.FAILED,
            conversation_id=conversation_id,
            error=message,
        )
