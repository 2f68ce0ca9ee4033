"""
Schedule operations.

CRUD for schedules, submit-for-immediate-run, run inspection and
cancellation. Used by the HTTP API, the CLI, the agent-exposed
management tools and, through ``submit``, by the scheduler tick.

``run_schedule`` returns as soon as the run is queued::

    {"runId": "run_...", "status": "queued", "conversationId": "..."}

The run itself executes later on a queue worker (or, with no durable
queue, on the in-process serialized path).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from autorun.core.errors import AutorunError, MissingEntityError, ValidationError
from autorun.core.logging import get_logger
from autorun.core.models import RunStatus, Schedule, ScheduleKind, TargetType
from autorun.core.repositories import (
    ConversationRepository,
    DirectoryRepository,
    RunRepository,
    ScheduleCreate,
    ScheduleRepository,
    ScheduleUpdate,
    WorkflowRepository,
    WorkflowRunRepository,
)
from autorun.execution.abort import AbortRegistry
from autorun.execution.dispatch import RunDispatcher
from autorun.execution.executor import AgentRunJob
from autorun.orchestration.engine import WorkflowJob
from autorun.scheduling.cron import compute_next_run_at, parse_run_at, validate_cron, validate_timezone
from autorun.scheduling.protocol import SubmitResult

from . import cancellation
from .result import NOT_FOUND, VALIDATION_FAILED, OperationResult, start_timer, to_plain

logger = get_logger(__name__)

MAX_RUNS_LIMIT = 100


def schedule_to_dict(schedule: Schedule, now: datetime | None = None) -> dict[str, Any]:
    data = to_plain(schedule)
    try:
        next_run = compute_next_run_at(schedule, now)
    except ValidationError:
        next_run = None
    data["next_run_at"] = next_run.isoformat() if next_run else None
    return data


class SchedulingService:
    """Schedule CRUD plus run submission for agent- and workflow-targeted schedules.

    Example:
        >>> service = SchedulingService(schedules, runs, directory, conversations,
        ...                             workflows, workflow_runs, agent_dispatch,
        ...                             workflow_dispatch, registry)
        >>> result = await service.run_schedule("user_1", "sch_abc")
        >>> result.data["status"]
        'queued'
    """

    def __init__(
        self,
        schedules: ScheduleRepository,
        runs: RunRepository,
        directory: DirectoryRepository,
        conversations: ConversationRepository,
        workflows: WorkflowRepository,
        workflow_runs: WorkflowRunRepository,
        agent_dispatcher: RunDispatcher,
        workflow_dispatcher: RunDispatcher,
        registry: AbortRegistry,
    ) -> None:
        self.schedules = schedules
        self.runs = runs
        self.directory = directory
        self.conversations = conversations
        self.workflows = workflows
        self.workflow_runs = workflow_runs
        self.agent_dispatcher = agent_dispatcher
        self.workflow_dispatcher = workflow_dispatcher
        self.registry = registry

    # === Schedule CRUD ===

    def list_schedules(self, user_id: str) -> OperationResult[list[dict[str, Any]]]:
        timer = start_timer()
        now = datetime.now(UTC)
        items = [schedule_to_dict(s, now) for s in reversed(self.schedules.list_for_user(user_id))]
        return OperationResult.ok(items, elapsed_ms=timer.elapsed_ms)

    def get_schedule(self, user_id: str, schedule_id: str) -> OperationResult[dict[str, Any]]:
        schedule = self.schedules.get_for_user(schedule_id, user_id)
        if schedule is None:
            return OperationResult.fail(NOT_FOUND, "Schedule not found")
        return OperationResult.ok(schedule_to_dict(schedule))

    def create_schedule(self, draft: ScheduleCreate) -> OperationResult[dict[str, Any]]:
        timer = start_timer()
        try:
            self._validate_create(draft)
        except AutorunError as e:
            return OperationResult.from_error(e, elapsed_ms=timer.elapsed_ms)

        if draft.kind is ScheduleKind.RECURRING:
            draft.run_at = None
        else:
            draft.cron_expression = None
        schedule = self.schedules.create(draft)
        logger.info("schedule.created", schedule_id=schedule.id, user_id=draft.user_id, kind=draft.kind.value)
        return OperationResult.ok(schedule_to_dict(schedule), elapsed_ms=timer.elapsed_ms)

    def update_schedule(
        self, user_id: str, schedule_id: str, updates: ScheduleUpdate
    ) -> OperationResult[dict[str, Any]]:
        timer = start_timer()
        existing = self.schedules.get_for_user(schedule_id, user_id)
        if existing is None:
            return OperationResult.fail(NOT_FOUND, "Schedule not found")

        try:
            kind = ScheduleKind(updates.kind) if updates.kind is not None else existing.kind
        except ValueError:
            return OperationResult.fail(VALIDATION_FAILED, f"Invalid kind: {updates.kind}")
        try:
            if updates.cron_expression is not None and kind is ScheduleKind.RECURRING:
                updates.cron_expression = validate_cron(updates.cron_expression)
            if updates.run_at is not None and kind is ScheduleKind.ONE_OFF:
                updates.run_at = parse_run_at(updates.run_at).isoformat()
            if updates.timezone is not None:
                validate_timezone(updates.timezone)
            if updates.agent_id is not None and self.directory.get_agent(updates.agent_id) is None:
                raise MissingEntityError("agent", updates.agent_id)
            if kind is ScheduleKind.RECURRING and updates.kind is not None:
                validate_cron(updates.cron_expression or existing.cron_expression)
            if kind is ScheduleKind.ONE_OFF and updates.kind is not None and not (updates.run_at or existing.run_at):
                raise ValidationError("run_at is required for one-off schedules")
        except AutorunError as e:
            return OperationResult.from_error(e, elapsed_ms=timer.elapsed_ms)

        # A field that does not apply to the kind is ignored
        if kind is not ScheduleKind.RECURRING:
            updates.cron_expression = None
        if kind is not ScheduleKind.ONE_OFF:
            updates.run_at = None

        schedule = self.schedules.update(schedule_id, updates)
        logger.info("schedule.updated", schedule_id=schedule_id)
        return OperationResult.ok(schedule_to_dict(schedule), elapsed_ms=timer.elapsed_ms)

    def delete_schedule(self, user_id: str, schedule_id: str) -> OperationResult[dict[str, Any]]:
        if self.schedules.get_for_user(schedule_id, user_id) is None:
            return OperationResult.fail(NOT_FOUND, "Schedule not found")
        self.schedules.delete(schedule_id)
        logger.info("schedule.deleted", schedule_id=schedule_id)
        return OperationResult.ok({"deleted": True})

    def _validate_create(self, draft: ScheduleCreate) -> None:
        if not draft.name or not draft.name.strip():
            raise ValidationError("name is required")
        try:
            draft.kind = ScheduleKind(draft.kind)
            draft.target_type = TargetType(draft.target_type)
        except ValueError as e:
            raise ValidationError(str(e), cause=e) from e
        draft.timezone = validate_timezone(draft.timezone)

        if draft.kind is ScheduleKind.RECURRING:
            draft.cron_expression = validate_cron(draft.cron_expression)
        elif not draft.run_at:
            raise ValidationError("run_at is required for one-off schedules")
        else:
            draft.run_at = parse_run_at(draft.run_at).isoformat()

        if draft.target_type is TargetType.AGENT:
            if not draft.agent_id:
                raise ValidationError("agent_id is required for agent schedules")
            if self.directory.get_agent(draft.agent_id) is None:
                raise MissingEntityError("agent", draft.agent_id)
            if not draft.prompt:
                raise ValidationError("prompt is required for agent schedules")
        else:
            if not draft.workflow_id:
                raise ValidationError("workflow_id is required for workflow schedules")
            if self.workflows.get(draft.workflow_id) is None:
                raise MissingEntityError("workflow", draft.workflow_id)

    # === Submission ===

    async def run_schedule(self, user_id: str, schedule_id: str) -> OperationResult[dict[str, Any]]:
        """Submit a schedule for immediate execution."""
        schedule = self.schedules.get_for_user(schedule_id, user_id)
        if schedule is None:
            return OperationResult.fail(NOT_FOUND, "Schedule not found")
        result = await self.submit(schedule)
        if not result.success:
            return OperationResult.fail(VALIDATION_FAILED, result.error or "Failed to run schedule")
        return OperationResult.ok(result.to_dict())

    async def submit(self, schedule: Schedule) -> SubmitResult:
        """Create a ``queued`` run for ``schedule`` and dispatch it.

        Implements ``ScheduleSubmitter`` for the scheduler tick.
        """
        try:
            if schedule.target_type is TargetType.WORKFLOW:
                return await self._submit_workflow(schedule)
            return await self._submit_agent(schedule)
        except AutorunError as e:
            logger.error("schedule.submit_failed", schedule_id=schedule.id, error=e.message)
            return SubmitResult(success=False, error=e.message)

    async def _submit_agent(self, schedule: Schedule) -> SubmitResult:
        if not schedule.agent_id:
            raise ValidationError("Schedule has no target agent")
        conversation_id = schedule.conversation_id or str(uuid4())
        run = self.runs.create(
            schedule.id,
            schedule.user_id,
            run_at=datetime.now(UTC).isoformat(),
            conversation_id=conversation_id,
        )
        job = AgentRunJob(
            run_id=run.id,
            schedule_id=schedule.id,
            user_id=schedule.user_id,
            agent_id=schedule.agent_id,
            prompt=schedule.prompt,
            conversation_id=conversation_id,
            selected_tools=schedule.selected_tools,
        )
        mode = await self.agent_dispatcher.submit(run.id, job.to_payload(), key=schedule.agent_id)
        logger.info("schedule.run.queued", schedule_id=schedule.id, run_id=run.id, mode=mode.value)
        return SubmitResult(
            success=True,
            run_id=run.id,
            status=RunStatus.QUEUED.value,
            conversation_id=conversation_id,
        )

    async def _submit_workflow(self, schedule: Schedule) -> SubmitResult:
        if not schedule.workflow_id or self.workflows.get(schedule.workflow_id) is None:
            raise MissingEntityError("workflow", schedule.workflow_id)
        conversation_id = str(uuid4())
        run = self.workflow_runs.create(
            schedule.workflow_id,
            schedule.user_id,
            schedule_id=schedule.id,
            run_at=datetime.now(UTC).isoformat(),
            conversation_id=conversation_id,
        )
        job = WorkflowJob(run_id=run.id, workflow_id=schedule.workflow_id, user_id=schedule.user_id)
        mode = await self.workflow_dispatcher.submit(run.id, job.to_payload(), key=schedule.workflow_id)
        logger.info("schedule.workflow_run.queued", schedule_id=schedule.id, run_id=run.id, mode=mode.value)
        return SubmitResult(
            success=True,
            run_id=run.id,
            status=RunStatus.QUEUED.value,
            conversation_id=conversation_id,
        )

    # === Runs ===

    def list_runs(
        self, user_id: str, *, schedule_id: str | None = None, limit: int = 25
    ) -> OperationResult[list[dict[str, Any]]]:
        limit = max(1, min(limit, MAX_RUNS_LIMIT))
        if schedule_id is not None:
            if self.schedules.get_for_user(schedule_id, user_id) is None:
                return OperationResult.fail(NOT_FOUND, "Schedule not found")
            runs = self.runs.list_for_schedule(schedule_id, limit)
        else:
            runs = self.runs.list_for_user(user_id, limit)
        return OperationResult.ok([self._run_summary(run) for run in runs])

    def get_run(self, user_id: str, run_id: str) -> OperationResult[dict[str, Any]]:
        """Run with its schedule summary, conversation and transcript."""
        run = self.runs.get(run_id)
        if run is None or run.user_id != user_id:
            return OperationResult.fail(NOT_FOUND, "Run not found")
        data = self._run_summary(run)
        conversation = self.conversations.get(run.conversation_id) if run.conversation_id else None
        data["conversation"] = to_plain(conversation) if conversation else None
        data["messages"] = (
            [to_plain(m) for m in self.conversations.list_messages(run.conversation_id)]
            if conversation
            else []
        )
        return OperationResult.ok(data)

    def _run_summary(self, run) -> dict[str, Any]:
        data = to_plain(run)
        schedule = self.schedules.get(run.schedule_id)
        data["schedule"] = (
            {"id": schedule.id, "name": schedule.name, "agent_id": schedule.agent_id}
            if schedule
            else None
        )
        return data

    async def remove_pending_run(self, user_id: str, run_id: str) -> OperationResult[dict[str, Any]]:
        run = self.runs.get(run_id)
        if run is None or run.user_id != user_id:
            return OperationResult.fail(NOT_FOUND, "Run not found")
        return await cancellation.remove_pending(self.agent_dispatcher, self.runs, run_id)

    async def cancel_run(self, user_id: str, run_id: str) -> OperationResult[dict[str, Any]]:
        """Abort an in-flight run, or remove it if it has not started."""
        run = self.runs.get(run_id)
        if run is None or run.user_id != user_id:
            return OperationResult.fail(NOT_FOUND, "Run not found")
        if run.status.is_terminal:
            return OperationResult.fail(VALIDATION_FAILED, f"Run already {run.status.value}")
        return await cancellation.cancel(self.registry, run_id, self.agent_dispatcher, self.runs, run_id)
