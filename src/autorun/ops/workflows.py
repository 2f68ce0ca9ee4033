"""Workflow operations: definition CRUD, run-now, run inspection, cancellation."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from autorun.core.errors import InvalidWorkflowError, MissingEntityError, ValidationError
from autorun.core.logging import get_logger
from autorun.core.models import RunStatus, Workflow, WorkflowEdge, WorkflowNode
from autorun.core.repositories import (
    ConversationRepository,
    DirectoryRepository,
    WorkflowCreate,
    WorkflowRepository,
    WorkflowRunRepository,
)
from autorun.execution.abort import AbortRegistry
from autorun.execution.dispatch import RunDispatcher
from autorun.orchestration.engine import INVALID_STEPS_MESSAGE, WorkflowJob
from autorun.orchestration.topology import find_unordered_nodes

from . import cancellation
from .result import NOT_FOUND, VALIDATION_FAILED, OperationResult, start_timer, to_plain

logger = get_logger(__name__)

MAX_RUNS_LIMIT = 100


def _node(data: WorkflowNode | dict[str, Any]) -> WorkflowNode:
    if isinstance(data, WorkflowNode):
        return data
    return WorkflowNode(
        id=data["id"],
        agent_id=data.get("agent_id"),
        prompt_id=data.get("prompt_id"),
        selected_tools=data.get("selected_tools"),
    )


def _edge(data: WorkflowEdge | dict[str, Any]) -> WorkflowEdge:
    if isinstance(data, WorkflowEdge):
        return data
    return WorkflowEdge(
        source=data["source"],
        target=data["target"],
        feed_output_to_next=data.get("feed_output_to_next", True),
    )


class WorkflowService:
    """Workflow definitions and their runs, scoped to the owning user."""

    def __init__(
        self,
        workflows: WorkflowRepository,
        workflow_runs: WorkflowRunRepository,
        directory: DirectoryRepository,
        conversations: ConversationRepository,
        dispatcher: RunDispatcher,
        registry: AbortRegistry,
    ) -> None:
        self.workflows = workflows
        self.workflow_runs = workflow_runs
        self.directory = directory
        self.conversations = conversations
        self.dispatcher = dispatcher
        self.registry = registry

    def _owned(self, user_id: str, workflow_id: str) -> Workflow | None:
        workflow = self.workflows.get(workflow_id)
        if workflow is None or workflow.user_id != user_id:
            return None
        return workflow

    # === Definitions ===

    def create_workflow(
        self,
        user_id: str,
        name: str,
        nodes: list[WorkflowNode | dict[str, Any]],
        edges: list[WorkflowEdge | dict[str, Any]] | None = None,
    ) -> OperationResult[dict[str, Any]]:
        """Validate and store a workflow.

        Nodes on or behind a cycle are accepted but reported as warnings;
        they are skipped when the workflow runs.
        """
        timer = start_timer()
        try:
            parsed_nodes = [_node(n) for n in nodes]
            parsed_edges = [_edge(e) for e in edges or []]
            self._validate(name, parsed_nodes, parsed_edges)
        except (KeyError, TypeError) as e:
            return OperationResult.fail(VALIDATION_FAILED, f"Malformed workflow definition: {e}")
        except ValidationError as e:
            return OperationResult.from_error(e, elapsed_ms=timer.elapsed_ms)

        workflow = self.workflows.create(
            WorkflowCreate(user_id=user_id, name=name.strip(), nodes=parsed_nodes, edges=parsed_edges)
        )
        warnings = [
            f"Step {node_id} is part of a cycle and will not run"
            for node_id in find_unordered_nodes(parsed_nodes, parsed_edges)
        ]
        logger.info("workflow.created", workflow_id=workflow.id, steps=len(parsed_nodes), warnings=len(warnings))
        return OperationResult.ok(to_plain(workflow), warnings=warnings, elapsed_ms=timer.elapsed_ms)

    def _validate(self, name: str, nodes: list[WorkflowNode], edges: list[WorkflowEdge]) -> None:
        if not name or not name.strip():
            raise ValidationError("name is required")
        if not nodes:
            raise InvalidWorkflowError("Workflow has no steps")
        seen: set[str] = set()
        for node in nodes:
            if node.id in seen:
                raise InvalidWorkflowError(f"Duplicate step id: {node.id}", node_id=node.id)
            seen.add(node.id)
            if not node.agent_id or not node.prompt_id:
                raise InvalidWorkflowError(INVALID_STEPS_MESSAGE, node_id=node.id)
            if self.directory.get_agent(node.agent_id) is None:
                raise MissingEntityError("agent", node.agent_id)
            if self.directory.get_prompt(node.prompt_id) is None:
                raise MissingEntityError("prompt source", node.prompt_id)
        for edge in edges:
            if edge.source not in seen or edge.target not in seen:
                raise InvalidWorkflowError(f"Edge {edge.source} -> {edge.target} references an unknown step")

    def list_workflows(self, user_id: str) -> OperationResult[list[dict[str, Any]]]:
        return OperationResult.ok([to_plain(w) for w in self.workflows.list_for_user(user_id)])

    def get_workflow(self, user_id: str, workflow_id: str) -> OperationResult[dict[str, Any]]:
        workflow = self._owned(user_id, workflow_id)
        if workflow is None:
            return OperationResult.fail(NOT_FOUND, "Workflow not found")
        return OperationResult.ok(to_plain(workflow))

    def delete_workflow(self, user_id: str, workflow_id: str) -> OperationResult[dict[str, Any]]:
        if self._owned(user_id, workflow_id) is None:
            return OperationResult.fail(NOT_FOUND, "Workflow not found")
        self.workflows.delete(workflow_id)
        logger.info("workflow.deleted", workflow_id=workflow_id)
        return OperationResult.ok({"deleted": True})

    # === Runs ===

    async def run_workflow(self, user_id: str, workflow_id: str) -> OperationResult[dict[str, Any]]:
        """Queue a workflow run and return ``{runId, status, conversationId}``."""
        if self._owned(user_id, workflow_id) is None:
            return OperationResult.fail(NOT_FOUND, "Workflow not found")
        conversation_id = str(uuid4())
        run = self.workflow_runs.create(
            workflow_id,
            user_id,
            run_at=datetime.now(UTC).isoformat(),
            conversation_id=conversation_id,
        )
        job = WorkflowJob(run_id=run.id, workflow_id=workflow_id, user_id=user_id)
        mode = await self.dispatcher.submit(run.id, job.to_payload(), key=workflow_id)
        logger.info("workflow.run.queued", workflow_id=workflow_id, run_id=run.id, mode=mode.value)
        return OperationResult.ok(
            {"runId": run.id, "status": RunStatus.QUEUED.value, "conversationId": conversation_id}
        )

    def list_runs(self, user_id: str, workflow_id: str, limit: int = 25) -> OperationResult[list[dict[str, Any]]]:
        if self._owned(user_id, workflow_id) is None:
            return OperationResult.fail(NOT_FOUND, "Workflow not found")
        limit = max(1, min(limit, MAX_RUNS_LIMIT))
        return OperationResult.ok([to_plain(r) for r in self.workflow_runs.list_for_workflow(workflow_id, limit)])

    def get_run(self, user_id: str, run_id: str) -> OperationResult[dict[str, Any]]:
        run = self.workflow_runs.get(run_id)
        if run is None or run.user_id != user_id:
            return OperationResult.fail(NOT_FOUND, "Run not found")
        data = to_plain(run)
        if run.conversation_id and self.conversations.get(run.conversation_id):
            data["messages"] = [to_plain(m) for m in self.conversations.list_messages(run.conversation_id)]
        else:
            data["messages"] = []
        return OperationResult.ok(data)

    async def remove_pending_run(self, user_id: str, run_id: str) -> OperationResult[dict[str, Any]]:
        run = self.workflow_runs.get(run_id)
        if run is None or run.user_id != user_id:
            return OperationResult.fail(NOT_FOUND, "Run not found")
        return await cancellation.remove_pending(self.dispatcher, self.workflow_runs, run_id)

    async def cancel_run(self, user_id: str, run_id: str) -> OperationResult[dict[str, Any]]:
        run = self.workflow_runs.get(run_id)
        if run is None or run.user_id != user_id:
            return OperationResult.fail(NOT_FOUND, "Run not found")
        if run.status.is_terminal:
            return OperationResult.fail(VALIDATION_FAILED, f"Run already {run.status.value}")
        return await cancellation.cancel(
            self.registry,
            self.registry.workflow_key(run_id),
            self.dispatcher,
            self.workflow_runs,
            run_id,
        )
