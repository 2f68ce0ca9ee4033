"""Workflow Engine.

Executes a Workflow's steps in dependency order inside one conversation.

Architecture:
    ::

        execute(WorkflowJob)
          │
          ├─ workflow_runs.mark_running       terminal → skip
          ├─ load workflow, user; validate every node (agent + prompt)
          ├─ order = topological_sort(nodes, edges)
          ├─ resolve every step's agent and prompt source up front
          │
          ├─ registry.register("workflow_{runId}", token)   one token, all steps
          │   for step i:
          │     text = pending hand-off  or  resolved template
          │     run_to_completion(runtime, request(parent = last message))
          │     outputs[i] = text or "(no output)"
          │     if step i+1: instructions = outputs[i] + "\\n\\n" + next prompt
          │                  persist hand-off message, parent = hand-off id
          ├─ registry.unregister(...)         always
          │
          ├─ success: run → success(outputs), tag + title conversation
          └─ failure: run → failed ("Cancelled by user" for cancellation)

Steps never run in parallel, even where the graph would allow it.

Tags:
    autorun, workflow, orchestration, hand-off, topological-sort

Doc-Types:
    architecture-diagram, api-reference
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from autorun.core.errors import ExecutionError, InvalidWorkflowError, MissingEntityError
from autorun.core.logging import LogContext, get_logger
from autorun.core.models import (
    Agent,
    PromptSource,
    RunStatus,
    User,
    Workflow,
    WorkflowNode,
)
from autorun.core.repositories import (
    ConversationRepository,
    DirectoryRepository,
    ScheduleRepository,
    WorkflowRepository,
    WorkflowRunRepository,
)
from autorun.execution.abort import AbortRegistry, CancellationToken
from autorun.execution.executor import classify_failure
from autorun.execution.runtime import AgentRunRequest, AgentRuntime, run_to_completion

from .handoff import build_handoff_message, handoff_instructions
from .prompts import PromptContext, resolve_workflow_prompt
from .topology import find_unordered_nodes, topological_sort

logger = get_logger(__name__)

NO_OUTPUT = "(no output)"
INVALID_STEPS_MESSAGE = "All workflow steps must have a prompt and agent selected"


@dataclass
class WorkflowJob:
    """Queue payload for a workflow run (``runId`` is also the job id)."""

    run_id: str
    workflow_id: str
    user_id: str

    def to_payload(self) -> dict[str, Any]:
        return {"runId": self.run_id, "workflowId": self.workflow_id, "userId": self.user_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkflowJob:
        return cls(
            run_id=payload["runId"],
            workflow_id=payload["workflowId"],
            user_id=payload["userId"],
        )


@dataclass
class WorkflowResult:
    run_id: str
    status: RunStatus
    conversation_id: str | None = None
    error: str | None = None
    step_outputs: list[str] = field(default_factory=list)
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
            "step_outputs": list(self.step_outputs),
            "skipped": self.skipped,
        }


@dataclass
class _Step:
    node: WorkflowNode
    agent: Agent
    prompt: PromptSource


def workflow_title(name: str | None, at: datetime) -> str:
    return f"{name or 'Workflow'} - {at.strftime('%Y-%m-%d %H:%M')} UTC"


class WorkflowEngine:
    """Runs WorkflowJobs step by step against the agent runtime."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        workflow_runs: WorkflowRunRepository,
        directory: DirectoryRepository,
        conversations: ConversationRepository,
        runtime: AgentRuntime,
        registry: AbortRegistry,
        schedules: ScheduleRepository | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.workflows = workflows
        self.workflow_runs = workflow_runs
        self.directory = directory
        self.conversations = conversations
        self.runtime = runtime
        self.registry = registry
        self.schedules = schedules
        self.timeout_seconds = timeout_seconds

    async def execute(self, job: WorkflowJob, *, final_attempt: bool = True) -> WorkflowResult:
        async with LogContext(run_id=job.run_id, workflow_id=job.workflow_id):
            if not self.workflow_runs.mark_running(job.run_id):
                existing = self.workflow_runs.get(job.run_id)
                if existing is None:
                    raise MissingEntityError("workflow run", job.run_id)
                logger.info("workflow.run.skipped", status=existing.status.value)
                return WorkflowResult(
                    run_id=job.run_id,
                    status=existing.status,
                    conversation_id=existing.conversation_id,
                    error=existing.error,
                    step_outputs=existing.step_outputs,
                    skipped=True,
                )

            run = self.workflow_runs.get(job.run_id)
            conversation_id = run.conversation_id or str(uuid4())
            if not run.conversation_id:
                self.workflow_runs.set_conversation(job.run_id, conversation_id)
            run_at = datetime.now(UTC)
            outputs: list[str] = []

            try:
                workflow, user, steps = self._prepare(job)
                await self._run_with_deadline(job, user, steps, workflow, conversation_id, run_at, outputs)
            except Exception as e:
                return self._handle_failure(job, run.schedule_id, conversation_id, outputs, e, final_attempt)

            self._record_success(job, run.schedule_id, workflow, steps, conversation_id, run_at, outputs)
            return WorkflowResult(
                run_id=job.run_id,
                status=RunStatus.SUCCESS,
                conversation_id=conversation_id,
                step_outputs=outputs,
            )

    def abandon(self, job: WorkflowJob, reason: str) -> bool:
        """Fail a workflow run whose last delivery died outside ``execute``."""
        if not self.workflow_runs.mark_failed(job.run_id, reason):
            return False
        logger.error("workflow.run.abandoned", run_id=job.run_id, error=reason)
        run = self.workflow_runs.get(job.run_id)
        if run is not None and run.schedule_id and self.schedules is not None:
            try:
                self.schedules.record_last_run(run.schedule_id, RunStatus.FAILED)
            except Exception:
                logger.exception("workflow.schedule_write_failed")
        return True

    # === Preparation ===

    def _prepare(self, job: WorkflowJob) -> tuple[Workflow, User, list[_Step]]:
        """Load and validate everything before the first step runs."""
        workflow = self.workflows.get(job.workflow_id)
        if workflow is None:
            raise MissingEntityError("workflow", job.workflow_id)
        user = self.directory.get_user(job.user_id)
        if user is None:
            raise MissingEntityError("user", job.user_id)

        if not workflow.nodes or any(not n.agent_id or not n.prompt_id for n in workflow.nodes):
            raise InvalidWorkflowError(INVALID_STEPS_MESSAGE)

        order = topological_sort(workflow.nodes, workflow.edges)
        dropped = find_unordered_nodes(workflow.nodes, workflow.edges)
        if dropped:
            logger.warning("workflow.nodes_unreachable", node_ids=dropped)
        if not order:
            raise InvalidWorkflowError("Workflow has no runnable steps")

        steps: list[_Step] = []
        for node_id in order:
            node = workflow.node(node_id)
            agent = self.directory.get_agent(node.agent_id)
            if agent is None:
                raise MissingEntityError("agent", node.agent_id)
            prompt = self.directory.get_prompt(node.prompt_id)
            if prompt is None or not prompt.template:
                raise InvalidWorkflowError(
                    f"Prompt source {node.prompt_id} has no template", node_id=node.id
                )
            steps.append(_Step(node=node, agent=agent, prompt=prompt))
        return workflow, user, steps

    # === Step Loop ===

    async def _run_with_deadline(self, job: WorkflowJob, *args: Any) -> None:
        deadline = asyncio.timeout(self.timeout_seconds)
        try:
            async with deadline:
                await self._run_steps(job, *args)
        except TimeoutError as e:
            if not deadline.expired():
                raise
            raise ExecutionError(f"Workflow timed out after {self.timeout_seconds:g}s", cause=e) from e

    async def _run_steps(
        self,
        job: WorkflowJob,
        user: User,
        steps: list[_Step],
        workflow: Workflow,
        conversation_id: str,
        run_at: datetime,
        outputs: list[str],
    ) -> None:
        self.conversations.ensure(conversation_id, job.user_id, steps[0].agent.id)
        token = CancellationToken()
        key = self.registry.workflow_key(job.run_id)
        self.registry.register(key, token)

        parent_message_id: str | None = None
        pending: str | None = None
        try:
            for index, step in enumerate(steps):
                context = PromptContext(
                    user=user,
                    run_at=run_at,
                    conversation_id=conversation_id,
                    parent_message_id=parent_message_id,
                )
                resolved = resolve_workflow_prompt(step.prompt.template, context, outputs)
                text = pending if pending is not None else resolved
                pending = None

                logger.info("workflow.step.started", step=index, node_id=step.node.id, agent_id=step.agent.id)
                turn = await run_to_completion(
                    self.runtime,
                    AgentRunRequest(
                        run_id=job.run_id,
                        user=user,
                        agent=step.agent,
                        text=text,
                        conversation_id=conversation_id,
                        token=token,
                        parent_message_id=parent_message_id,
                        selected_tools=step.node.selected_tools,
                        workflow_triggered=True,
                    ),
                )
                outputs.append(turn.text or NO_OUTPUT)
                self.workflow_runs.record_step_outputs(job.run_id, outputs)
                parent_message_id = turn.message_id

                if index + 1 < len(steps):
                    pending, parent_message_id = self._hand_off(
                        workflow, step, steps[index + 1], user, run_at,
                        conversation_id, parent_message_id, outputs,
                    )
        finally:
            self.registry.unregister(key)

    def _hand_off(
        self,
        workflow: Workflow,
        step: _Step,
        next_step: _Step,
        user: User,
        run_at: datetime,
        conversation_id: str,
        parent_message_id: str | None,
        outputs: list[str],
    ) -> tuple[str, str]:
        next_prompt = resolve_workflow_prompt(
            next_step.prompt.template,
            PromptContext(
                user=user,
                run_at=run_at,
                conversation_id=conversation_id,
                parent_message_id=parent_message_id,
            ),
            outputs,
        )
        edge = workflow.edge(step.node.id, next_step.node.id)
        feed = edge is None or edge.feed_output_to_next
        instructions = handoff_instructions(outputs[-1], next_prompt, feed_output=feed)

        message = build_handoff_message(
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
            from_agent_id=step.agent.id,
            to_agent_id=next_step.agent.id,
            instructions=instructions,
        )
        self.conversations.add_message(message)
        logger.debug("workflow.handoff.saved", from_agent=step.agent.id, to_agent=next_step.agent.id)
        return instructions, message.id

    # === Outcome ===

    def _record_success(
        self,
        job: WorkflowJob,
        schedule_id: str | None,
        workflow: Workflow,
        steps: list[_Step],
        conversation_id: str,
        run_at: datetime,
        outputs: list[str],
    ) -> None:
        try:
            self.workflow_runs.mark_success(job.run_id, conversation_id, outputs)
            self.conversations.tag(
                conversation_id,
                tags=[f"workflow-run:{job.run_id}"],
                title=workflow_title(workflow.name, run_at),
                agent_id=steps[-1].agent.id,
            )
            if schedule_id and self.schedules is not None:
                self.schedules.record_last_run(schedule_id, RunStatus.SUCCESS, run_at.isoformat())
        except Exception:
            logger.exception("workflow.status_write_failed", status=RunStatus.SUCCESS.value)
        logger.info("workflow.run.succeeded", conversation_id=conversation_id, steps=len(outputs))

    def _handle_failure(
        self,
        job: WorkflowJob,
        schedule_id: str | None,
        conversation_id: str,
        outputs: list[str],
        error: Exception,
        final_attempt: bool,
    ) -> WorkflowResult:
        message, retry = classify_failure(error, final_attempt)
        if retry:
            logger.warning("workflow.run.attempt_failed", error=message, completed_steps=len(outputs))
            raise error

        logger.error("workflow.run.failed", error=message, completed_steps=len(outputs))
        try:
            self.workflow_runs.mark_failed(job.run_id, message)
        except Exception:
            logger.exception("workflow.status_write_failed", status=RunStatus.FAILED.value)
        if schedule_id and self.schedules is not None:
            try:
                self.schedules.record_last_run(schedule_id, RunStatus.FAILED)
            except Exception:
                logger.exception("workflow.schedule_write_failed")
        return WorkflowResult(
            run_id=job.run_id,
            status=RunStatus.FAILED,
            conversation_id=conversation_id,
            error=message,
            step_outputs=outputs,
        )
