"""Automation table models.

Manifesto:
    Schedules, runs, workflows and conversations need typed dataclass
    representations so the scheduler, queue workers and API all work
    with the same structured objects.

Timestamps are stored and carried as ISO-8601 strings in UTC, the same
representation the SQLite tables use.

Tags:
    autorun, models, dataclasses, scheduling, workflows, schema-mapping

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ScheduleKind(str, Enum):
    RECURRING = "recurring"
    ONE_OFF = "one-off"


class TargetType(str, Enum):
    AGENT = "agent"
    WORKFLOW = "workflow"


class RunStatus(str, Enum):
    """Run lifecycle: ``queued → running → {success, failed}``.

    Terminal states are final. ``running → running`` is allowed so a job
    re-delivered by the queue can resume the same run.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)

    def can_transition(self, to: RunStatus) -> bool:
        if self.is_terminal:
            return False
        if self is RunStatus.RUNNING:
            return to is not RunStatus.QUEUED
        return True


# ---------------------------------------------------------------------------
# autorun_schedules / autorun_runs
# ---------------------------------------------------------------------------


@dataclass
class Schedule:
    """Schedule definition row (``autorun_schedules``).

    ``kind`` decides which of ``cron_expression`` / ``run_at`` is meaningful.
    ``target_type`` decides which of ``agent_id`` / ``workflow_id`` is.
    ``selected_tools`` of None means every tool the agent has; an empty list
    means none.
    """

    id: str = ""
    user_id: str = ""
    name: str = ""
    target_type: TargetType = TargetType.AGENT
    agent_id: str | None = None
    workflow_id: str | None = None
    prompt: str = ""
    kind: ScheduleKind = ScheduleKind.RECURRING
    cron_expression: str | None = None
    run_at: str | None = None
    timezone: str = "UTC"
    enabled: bool = True
    selected_tools: list[str] | None = None
    conversation_id: str | None = None
    last_run_at: str | None = None
    last_run_status: RunStatus | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def target_id(self) -> str | None:
        if self.target_type is TargetType.WORKFLOW:
            return self.workflow_id
        return self.agent_id


@dataclass
class Run:
    """One execution of an agent schedule (``autorun_runs``)."""

    id: str = ""
    schedule_id: str = ""
    user_id: str = ""
    conversation_id: str | None = None
    run_at: str = ""
    status: RunStatus = RunStatus.QUEUED
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    created_at: str = ""


# ---------------------------------------------------------------------------
# autorun_workflows / autorun_workflow_runs
# ---------------------------------------------------------------------------


@dataclass
class WorkflowNode:
    """A workflow step bound to an agent and a prompt source."""

    id: str
    agent_id: str | None = None
    prompt_id: str | None = None
    selected_tools: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "prompt_id": self.prompt_id,
            "selected_tools": self.selected_tools,
        }


@dataclass
class WorkflowEdge:
    """Dependency arc: ``source`` completes before ``target`` starts."""

    source: str
    target: str
    feed_output_to_next: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "feed_output_to_next": self.feed_output_to_next,
        }


@dataclass
class Workflow:
    """Workflow definition row (``autorun_workflows``)."""

    id: str = ""
    user_id: str = ""
    name: str = ""
    nodes: list[WorkflowNode] = field(default_factory=list)
    edges: list[WorkflowEdge] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def edge(self, source: str, target: str) -> WorkflowEdge | None:
        for edge in self.edges:
            if edge.source == source and edge.target == target:
                return edge
        return None


@dataclass
class WorkflowRun:
    """One execution of a workflow (``autorun_workflow_runs``).

    All steps write into the single ``conversation_id``; ``step_outputs``
    holds each step's text in execution order.
    """

    id: str = ""
    workflow_id: str = ""
    user_id: str = ""
    schedule_id: str | None = None
    conversation_id: str | None = None
    run_at: str = ""
    status: RunStatus = RunStatus.QUEUED
    error: str | None = None
    step_outputs: list[str] = field(default_factory=list)
    started_at: str | None = None
    finished_at: str | None = None
    created_at: str = ""


# ---------------------------------------------------------------------------
# Directory: users, agents, prompt sources
# ---------------------------------------------------------------------------


@dataclass
class User:
    id: str = ""
    name: str = ""
    username: str = ""
    email: str = ""
    role: str = "USER"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "email": self.email,
            "role": self.role,
        }


@dataclass
class Agent:
    id: str = ""
    name: str = ""
    author_id: str = ""
    instructions: str = ""
    tools: list[str] = field(default_factory=list)


@dataclass
class PromptSource:
    """A named, reusable prompt template referenced by workflow nodes."""

    id: str = ""
    name: str = ""
    template: str = ""
    author_id: str = ""


# ---------------------------------------------------------------------------
# autorun_conversations / autorun_messages
# ---------------------------------------------------------------------------


@dataclass
class Conversation:
    id: str = ""
    user_id: str = ""
    title: str | None = None
    agent_id: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Message:
    """A transcript entry. ``content`` holds structured parts (text, tool_call)."""

    id: str = ""
    conversation_id: str = ""
    parent_message_id: str | None = None
    sender: str = ""
    is_created_by_user: bool = False
    text: str = ""
    content: list[dict[str, Any]] = field(default_factory=list)
    agent_id: str | None = None
    created_at: str = ""
