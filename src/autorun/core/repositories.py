"""SQLite repositories for schedules, runs, workflows and conversations.

Status writes are conditional updates, so a Run can never move backwards
through ``queued → running → {success, failed}`` no matter how many
deliveries of the same job race each other.

Tags:
    autorun, repository, sqlite, persistence

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from autorun.core.logging import get_logger
from autorun.core.models import (
    Agent,
    Conversation,
    Message,
    PromptSource,
    Run,
    RunStatus,
    Schedule,
    ScheduleKind,
    TargetType,
    User,
    Workflow,
    WorkflowEdge,
    WorkflowNode,
    WorkflowRun,
)

logger = get_logger(__name__)

_UNSET: Any = object()


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _dump_list(value: list | None) -> str | None:
    return json.dumps(value) if value is not None else None


def _load_list(value: str | None) -> list | None:
    return json.loads(value) if value is not None else None


# ---------------------------------------------------------------------------
# Create/Update DTOs
# ---------------------------------------------------------------------------


@dataclass
class ScheduleCreate:
    """DTO for creating a new schedule."""

    user_id: str
    name: str
    prompt: str = ""
    kind: ScheduleKind = ScheduleKind.RECURRING
    cron_expression: str | None = None
    run_at: str | None = None
    timezone: str = "UTC"
    target_type: TargetType = TargetType.AGENT
    agent_id: str | None = None
    workflow_id: str | None = None
    enabled: bool = True
    selected_tools: list[str] | None = None
    conversation_id: str | None = None


@dataclass
class ScheduleUpdate:
    """DTO for updating a schedule. Fields left unset are not touched.

    ``selected_tools`` and ``conversation_id`` can be cleared by passing None.
    """

    name: str | None = None
    prompt: str | None = None
    kind: ScheduleKind | None = None
    cron_expression: str | None = None
    run_at: str | None = None
    timezone: str | None = None
    enabled: bool | None = None
    agent_id: str | None = None
    selected_tools: Any = _UNSET
    conversation_id: Any = _UNSET


@dataclass
class WorkflowCreate:
    """DTO for creating a workflow."""

    user_id: str
    name: str
    nodes: list[WorkflowNode] = field(default_factory=list)
    edges: list[WorkflowEdge] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

_SCHEDULE_COLUMNS = [
    "id",
    "user_id",
    "name",
    "target_type",
    "agent_id",
    "workflow_id",
    "prompt",
    "kind",
    "cron_expression",
    "run_at",
    "timezone",
    "enabled",
    "selected_tools",
    "conversation_id",
    "last_run_at",
    "last_run_status",
    "created_at",
    "updated_at",
]


class ScheduleRepository:
    """Repository for schedule CRUD and due-schedule queries.

    Example:
        >>> repo = ScheduleRepository(conn)
        >>> schedule = repo.create(ScheduleCreate(
        ...     user_id="user_1",
        ...     name="morning-digest",
        ...     agent_id="agent_1",
        ...     prompt="Summarize my inbox",
        ...     cron_expression="0 8 * * *",
        ... ))
        >>> repo.list_enabled_recurring()
        [Schedule(...)]
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def _select(self, where: str = "", params: tuple = (), order: str = "created_at, rowid") -> list[Schedule]:
        sql = f"SELECT {', '.join(_SCHEDULE_COLUMNS)} FROM autorun_schedules"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order}"
        cursor = self.conn.execute(sql, params)
        return [self._row_to_schedule(row) for row in cursor.fetchall()]

    # === CRUD Operations ===

    def create(self, draft: ScheduleCreate, schedule_id: str | None = None) -> Schedule:
        schedule_id = schedule_id or new_id("sch")
        now = utcnow_iso()
        self.conn.execute(
            f"""
            INSERT INTO autorun_schedules ({', '.join(_SCHEDULE_COLUMNS)})
            VALUES ({', '.join('?' * len(_SCHEDULE_COLUMNS))})
            """,
            (
                schedule_id,
                draft.user_id,
                draft.name,
                TargetType(draft.target_type).value,
                draft.agent_id,
                draft.workflow_id,
                draft.prompt,
                ScheduleKind(draft.kind).value,
                draft.cron_expression,
                draft.run_at,
                draft.timezone,
                1 if draft.enabled else 0,
                _dump_list(draft.selected_tools),
                draft.conversation_id,
                None,
                None,
                now,
                now,
            ),
        )
        self.conn.commit()
        return self.get(schedule_id)

    def get(self, schedule_id: str) -> Schedule | None:
        rows = self._select("id = ?", (schedule_id,))
        return rows[0] if rows else None

    def get_for_user(self, schedule_id: str, user_id: str) -> Schedule | None:
        rows = self._select("id = ? AND user_id = ?", (schedule_id, user_id))
        return rows[0] if rows else None

    def update(self, schedule_id: str, updates: ScheduleUpdate) -> Schedule | None:
        """Apply a partial update. Returns the updated schedule, or None if missing."""
        set_parts: list[str] = []
        params: list[Any] = []

        for column in ("name", "prompt", "cron_expression", "run_at", "timezone", "agent_id"):
            value = getattr(updates, column)
            if value is not None:
                set_parts.append(f"{column} = ?")
                params.append(value)
        if updates.kind is not None:
            set_parts.append("kind = ?")
            params.append(ScheduleKind(updates.kind).value)
        if updates.enabled is not None:
            set_parts.append("enabled = ?")
            params.append(1 if updates.enabled else 0)
        if updates.selected_tools is not _UNSET:
            set_parts.append("selected_tools = ?")
            params.append(_dump_list(updates.selected_tools))
        if updates.conversation_id is not _UNSET:
            set_parts.append("conversation_id = ?")
            params.append(updates.conversation_id)

        if not set_parts:
            return self.get(schedule_id)

        set_parts.append("updated_at = ?")
        params.append(utcnow_iso())
        params.append(schedule_id)

        cursor = self.conn.execute(
            f"UPDATE autorun_schedules SET {', '.join(set_parts)} WHERE id = ?",
            params,
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get(schedule_id)

    def delete(self, schedule_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM autorun_schedules WHERE id = ?", (schedule_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def list_for_user(self, user_id: str) -> list[Schedule]:
        return self._select("user_id = ?", (user_id,))

    def count_enabled(self) -> int:
        cursor = self.conn.execute("SELECT COUNT(*) FROM autorun_schedules WHERE enabled = 1")
        return cursor.fetchone()[0]

    # === Tick Queries ===

    def list_enabled_recurring(self) -> list[Schedule]:
        return self._select("enabled = 1 AND kind = ?", (ScheduleKind.RECURRING.value,))

    def list_due_one_off(self, now: datetime) -> list[Schedule]:
        """Enabled one-off schedules whose fire-at time is at or before ``now``."""
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        candidates = self._select(
            "enabled = 1 AND kind = ? AND run_at IS NOT NULL",
            (ScheduleKind.ONE_OFF.value,),
            order="run_at",
        )
        due = []
        for schedule in candidates:
            run_at = datetime.fromisoformat(schedule.run_at)
            if run_at.tzinfo is None:
                run_at = run_at.replace(tzinfo=UTC)
            if run_at <= now:
                due.append(schedule)
        return due

    def disable(self, schedule_id: str) -> None:
        self.conn.execute(
            "UPDATE autorun_schedules SET enabled = 0, updated_at = ? WHERE id = ?",
            (utcnow_iso(), schedule_id),
        )
        self.conn.commit()

    def record_last_run(self, schedule_id: str, status: RunStatus, at: str | None = None) -> None:
        self.conn.execute(
            """
            UPDATE autorun_schedules
            SET last_run_at = ?, last_run_status = ?, updated_at = ?
            WHERE id = ?
            """,
            (at or utcnow_iso(), RunStatus(status).value, utcnow_iso(), schedule_id),
        )
        self.conn.commit()

    def _row_to_schedule(self, row: tuple) -> Schedule:
        data = dict(zip(_SCHEDULE_COLUMNS, row, strict=False))
        data["target_type"] = TargetType(data["target_type"])
        data["kind"] = ScheduleKind(data["kind"])
        data["enabled"] = bool(data["enabled"])
        data["selected_tools"] = _load_list(data["selected_tools"])
        if data["last_run_status"]:
            data["last_run_status"] = RunStatus(data["last_run_status"])
        return Schedule(**data)


# ---------------------------------------------------------------------------
# Runs (shared status machine)
# ---------------------------------------------------------------------------

_NON_TERMINAL = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


class _StatusTransitions:
    """Conditional status updates shared by agent runs and workflow runs."""

    table: str = ""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def mark_running(self, run_id: str) -> bool:
        """``queued|running → running``. Returns False if the run is terminal or missing."""
        cursor = self.conn.execute(
            f"""
            UPDATE {self.table}
            SET status = ?, started_at = COALESCE(started_at, ?)
            WHERE id = ? AND status IN (?, ?)
            """,
            (RunStatus.RUNNING.value, utcnow_iso(), run_id, *_NON_TERMINAL),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def _finish(self, run_id: str, status: RunStatus, extra: dict[str, Any]) -> bool:
        set_parts = ["status = ?", "finished_at = ?"]
        params: list[Any] = [status.value, utcnow_iso()]
        for column, value in extra.items():
            set_parts.append(f"{column} = ?")
            params.append(value)
        params.extend([run_id, *_NON_TERMINAL])
        cursor = self.conn.execute(
            f"UPDATE {self.table} SET {', '.join(set_parts)} WHERE id = ? AND status IN (?, ?)",
            params,
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            logger.debug("run.transition.ignored", table=self.table, run_id=run_id, to=status.value)
            return False
        return True

    def mark_failed(self, run_id: str, error: str) -> bool:
        return self._finish(run_id, RunStatus.FAILED, {"error": error})


_RUN_COLUMNS = [
    "id",
    "schedule_id",
    "user_id",
    "conversation_id",
    "run_at",
    "status",
    "error",
    "started_at",
    "finished_at",
    "created_at",
]


class RunRepository(_StatusTransitions):
    """Agent run history (``autorun_runs``)."""

    table = "autorun_runs"

    def create(
        self,
        schedule_id: str,
        user_id: str,
        *,
        run_id: str | None = None,
        run_at: str | None = None,
        conversation_id: str | None = None,
    ) -> Run:
        """Insert a ``queued`` run. Re-inserting an existing id returns the stored run."""
        run_id = run_id or new_id("run")
        now = utcnow_iso()
        self.conn.execute(
            f"""
            INSERT OR IGNORE INTO autorun_runs ({', '.join(_RUN_COLUMNS)})
            VALUES ({', '.join('?' * len(_RUN_COLUMNS))})
            """,
            (
                run_id,
                schedule_id,
                user_id,
                conversation_id,
                run_at or now,
                RunStatus.QUEUED.value,
                None,
                None,
                None,
                now,
            ),
        )
        self.conn.commit()
        return self.get(run_id)

    def get(self, run_id: str) -> Run | None:
        cursor = self.conn.execute(
            f"SELECT {', '.join(_RUN_COLUMNS)} FROM autorun_runs WHERE id = ?",
            (run_id,),
        )
        row = cursor.fetchone()
        return self._row_to_run(row) if row else None

    def list_for_schedule(self, schedule_id: str, limit: int = 25) -> list[Run]:
        cursor = self.conn.execute(
            f"""
            SELECT {', '.join(_RUN_COLUMNS)} FROM autorun_runs
            WHERE schedule_id = ? ORDER BY run_at DESC LIMIT ?
            """,
            (schedule_id, limit),
        )
        return [self._row_to_run(row) for row in cursor.fetchall()]

    def list_for_user(self, user_id: str, limit: int = 25) -> list[Run]:
        cursor = self.conn.execute(
            f"""
            SELECT {', '.join(_RUN_COLUMNS)} FROM autorun_runs
            WHERE user_id = ? ORDER BY run_at DESC LIMIT ?
            """,
            (user_id, limit),
        )
        return [self._row_to_run(row) for row in cursor.fetchall()]

    def mark_success(self, run_id: str, conversation_id: str | None) -> bool:
        return self._finish(
            run_id, RunStatus.SUCCESS, {"conversation_id": conversation_id, "error": None}
        )

    def _row_to_run(self, row: tuple) -> Run:
        data = dict(zip(_RUN_COLUMNS, row, strict=False))
        data["status"] = RunStatus(data["status"])
        return Run(**data)


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


def _node_from_dict(data: dict[str, Any]) -> WorkflowNode:
    return WorkflowNode(
        id=data["id"],
        agent_id=data.get("agent_id"),
        prompt_id=data.get("prompt_id"),
        selected_tools=data.get("selected_tools"),
    )


def _edge_from_dict(data: dict[str, Any]) -> WorkflowEdge:
    return WorkflowEdge(
        source=data["source"],
        target=data["target"],
        feed_output_to_next=data.get("feed_output_to_next", True) is not False,
    )


class WorkflowRepository:
    """Workflow definitions (``autorun_workflows``). Nodes and edges are JSON columns."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, draft: WorkflowCreate, workflow_id: str | None = None) -> Workflow:
        workflow_id = workflow_id or new_id("wf")
        now = utcnow_iso()
        self.conn.execute(
            """
            INSERT INTO autorun_workflows (id, user_id, name, nodes, edges, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                workflow_id,
                draft.user_id,
                draft.name,
                json.dumps([n.to_dict() for n in draft.nodes]),
                json.dumps([e.to_dict() for e in draft.edges]),
                now,
                now,
            ),
        )
        self.conn.commit()
        return self.get(workflow_id)

    def get(self, workflow_id: str) -> Workflow | None:
        cursor = self.conn.execute(
            """
            SELECT id, user_id, name, nodes, edges, created_at, updated_at
            FROM autorun_workflows WHERE id = ?
            """,
            (workflow_id,),
        )
        row = cursor.fetchone()
        return self._row_to_workflow(row) if row else None

    def list_for_user(self, user_id: str) -> list[Workflow]:
        cursor = self.conn.execute(
            """
            SELECT id, user_id, name, nodes, edges, created_at, updated_at
            FROM autorun_workflows WHERE user_id = ? ORDER BY created_at, rowid
            """,
            (user_id,),
        )
        return [self._row_to_workflow(row) for row in cursor.fetchall()]

    def delete(self, workflow_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM autorun_workflows WHERE id = ?", (workflow_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def _row_to_workflow(self, row: tuple) -> Workflow:
        wf_id, user_id, name, nodes, edges, created_at, updated_at = row
        return Workflow(
            id=wf_id,
            user_id=user_id,
            name=name,
            nodes=[_node_from_dict(n) for n in json.loads(nodes)],
            edges=[_edge_from_dict(e) for e in json.loads(edges)],
            created_at=created_at,
            updated_at=updated_at,
        )


_WORKFLOW_RUN_COLUMNS = [
    "id",
    "workflow_id",
    "user_id",
    "schedule_id",
    "conversation_id",
    "run_at",
    "status",
    "error",
    "step_outputs",
    "started_at",
    "finished_at",
    "created_at",
]


class WorkflowRunRepository(_StatusTransitions):
    """Workflow run history (``autorun_workflow_runs``)."""

    table = "autorun_workflow_runs"

    def create(
        self,
        workflow_id: str,
        user_id: str,
        *,
        run_id: str | None = None,
        schedule_id: str | None = None,
        run_at: str | None = None,
        conversation_id: str | None = None,
    ) -> WorkflowRun:
        run_id = run_id or new_id("wfrun")
        now = utcnow_iso()
        self.conn.execute(
            f"""
            INSERT OR IGNORE INTO autorun_workflow_runs ({', '.join(_WORKFLOW_RUN_COLUMNS)})
            VALUES ({', '.join('?' * len(_WORKFLOW_RUN_COLUMNS))})
            """,
            (
                run_id,
                workflow_id,
                user_id,
                schedule_id,
                conversation_id,
                run_at or now,
                RunStatus.QUEUED.value,
                None,
                "[]",
                None,
                None,
                now,
            ),
        )
        self.conn.commit()
        return self.get(run_id)

    def get(self, run_id: str) -> WorkflowRun | None:
        cursor = self.conn.execute(
            f"SELECT {', '.join(_WORKFLOW_RUN_COLUMNS)} FROM autorun_workflow_runs WHERE id = ?",
            (run_id,),
        )
        row = cursor.fetchone()
        return self._row_to_run(row) if row else None

    def list_for_workflow(self, workflow_id: str, limit: int = 25) -> list[WorkflowRun]:
        cursor = self.conn.execute(
            f"""
            SELECT {', '.join(_WORKFLOW_RUN_COLUMNS)} FROM autorun_workflow_runs
            WHERE workflow_id = ? ORDER BY run_at DESC LIMIT ?
            """,
            (workflow_id, limit),
        )
        return [self._row_to_run(row) for row in cursor.fetchall()]

    def set_conversation(self, run_id: str, conversation_id: str) -> None:
        self.conn.execute(
            "UPDATE autorun_workflow_runs SET conversation_id = ? WHERE id = ?",
            (conversation_id, run_id),
        )
        self.conn.commit()

    def record_step_outputs(self, run_id: str, outputs: list[str]) -> None:
        self.conn.execute(
            "UPDATE autorun_workflow_runs SET step_outputs = ? WHERE id = ?",
            (json.dumps(outputs), run_id),
        )
        self.conn.commit()

    def mark_success(self, run_id: str, conversation_id: str | None, outputs: list[str]) -> bool:
        return self._finish(
            run_id,
            RunStatus.SUCCESS,
            {"conversation_id": conversation_id, "step_outputs": json.dumps(outputs), "error": None},
        )

    def _row_to_run(self, row: tuple) -> WorkflowRun:
        data = dict(zip(_WORKFLOW_RUN_COLUMNS, row, strict=False))
        data["status"] = RunStatus(data["status"])
        data["step_outputs"] = json.loads(data["step_outputs"] or "[]")
        return WorkflowRun(**data)


# ---------------------------------------------------------------------------
# Directory (users, agents, prompt sources)
# ---------------------------------------------------------------------------


class DirectoryRepository:
    """Lookup of the users, agents and prompt sources a run references."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def add_user(self, user: User) -> User:
        self.conn.execute(
            "INSERT OR REPLACE INTO autorun_users (id, name, username, email, role) VALUES (?, ?, ?, ?, ?)",
            (user.id, user.name, user.username, user.email, user.role),
        )
        self.conn.commit()
        return user

    def get_user(self, user_id: str) -> User | None:
        cursor = self.conn.execute(
            "SELECT id, name, username, email, role FROM autorun_users WHERE id = ?",
            (user_id,),
        )
        row = cursor.fetchone()
        return User(*row) if row else None

    def add_agent(self, agent: Agent) -> Agent:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO autorun_agents (id, name, author_id, instructions, tools)
            VALUES (?, ?, ?, ?, ?)
            """,
            (agent.id, agent.name, agent.author_id, agent.instructions, json.dumps(agent.tools)),
        )
        self.conn.commit()
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        cursor = self.conn.execute(
            "SELECT id, name, author_id, instructions, tools FROM autorun_agents WHERE id = ?",
            (agent_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        agent_id, name, author_id, instructions, tools = row
        return Agent(
            id=agent_id,
            name=name,
            author_id=author_id,
            instructions=instructions,
            tools=json.loads(tools),
        )

    def add_prompt(self, prompt: PromptSource) -> PromptSource:
        self.conn.execute(
            "INSERT OR REPLACE INTO autorun_prompts (id, name, template, author_id) VALUES (?, ?, ?, ?)",
            (prompt.id, prompt.name, prompt.template, prompt.author_id),
        )
        self.conn.commit()
        return prompt

    def get_prompt(self, prompt_id: str) -> PromptSource | None:
        cursor = self.conn.execute(
            "SELECT id, name, template, author_id FROM autorun_prompts WHERE id = ?",
            (prompt_id,),
        )
        row = cursor.fetchone()
        return PromptSource(*row) if row else None


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

_MESSAGE_COLUMNS = [
    "id",
    "conversation_id",
    "parent_message_id",
    "sender",
    "is_created_by_user",
    "text",
    "content",
    "agent_id",
    "created_at",
]


class ConversationRepository:
    """Conversations and their message transcripts."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def ensure(self, conversation_id: str, user_id: str, agent_id: str | None = None) -> Conversation:
        now = utcnow_iso()
        self.conn.execute(
            """
            INSERT OR IGNORE INTO autorun_conversations
                (id, user_id, title, agent_id, tags, created_at, updated_at)
            VALUES (?, ?, NULL, ?, '[]', ?, ?)
            """,
            (conversation_id, user_id, agent_id, now, now),
        )
        self.conn.commit()
        return self.get(conversation_id)

    def get(self, conversation_id: str) -> Conversation | None:
        cursor = self.conn.execute(
            """
            SELECT id, user_id, title, agent_id, tags, created_at, updated_at
            FROM autorun_conversations WHERE id = ?
            """,
            (conversation_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        conv_id, user_id, title, agent_id, tags, created_at, updated_at = row
        return Conversation(
            id=conv_id,
            user_id=user_id,
            title=title,
            agent_id=agent_id,
            tags=json.loads(tags),
            created_at=created_at,
            updated_at=updated_at,
        )

    def tag(
        self,
        conversation_id: str,
        *,
        tags: list[str],
        title: str | None = None,
        agent_id: str | None = None,
    ) -> None:
        """Merge ``tags`` into the conversation and optionally retitle it."""
        conversation = self.get(conversation_id)
        if conversation is None:
            return
        merged = list(conversation.tags)
        for tag in tags:
            if tag not in merged:
                merged.append(tag)
        self.conn.execute(
            """
            UPDATE autorun_conversations
            SET tags = ?, title = COALESCE(?, title), agent_id = COALESCE(?, agent_id), updated_at = ?
            WHERE id = ?
            """,
            (json.dumps(merged), title, agent_id, utcnow_iso(), conversation_id),
        )
        self.conn.commit()

    def add_message(self, message: Message) -> Message:
        if not message.created_at:
            message.created_at = utcnow_iso()
        self.conn.execute(
            f"""
            INSERT INTO autorun_messages ({', '.join(_MESSAGE_COLUMNS)})
            VALUES ({', '.join('?' * len(_MESSAGE_COLUMNS))})
            """,
            (
                message.id,
                message.conversation_id,
                message.parent_message_id,
                message.sender,
                1 if message.is_created_by_user else 0,
                message.text,
                json.dumps(message.content),
                message.agent_id,
                message.created_at,
            ),
        )
        self.conn.commit()
        return message

    def get_message(self, message_id: str) -> Message | None:
        cursor = self.conn.execute(
            f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM autorun_messages WHERE id = ?",
            (message_id,),
        )
        row = cursor.fetchone()
        return self._row_to_message(row) if row else None

    def list_messages(self, conversation_id: str) -> list[Message]:
        cursor = self.conn.execute(
            f"""
            SELECT {', '.join(_MESSAGE_COLUMNS)} FROM autorun_messages
            WHERE conversation_id = ? ORDER BY created_at, rowid
            """,
            (conversation_id,),
        )
        return [self._row_to_message(row) for row in cursor.fetchall()]

    def _row_to_message(self, row: tuple) -> Message:
        data = dict(zip(_MESSAGE_COLUMNS, row, strict=False))
        data["is_created_by_user"] = bool(data["is_created_by_user"])
        data["content"] = json.loads(data["content"])
        return Message(**data)


__all__ = [
    "ScheduleCreate",
    "ScheduleUpdate",
    "WorkflowCreate",
    "ScheduleRepository",
    "RunRepository",
    "WorkflowRepository",
    "WorkflowRunRepository",
    "DirectoryRepository",
    "ConversationRepository",
    "utcnow_iso",
    "new_id",
]
