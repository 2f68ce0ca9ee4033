"""Schedule management tools exposed to agents.

Each tool takes a plain argument dict (as produced by a model's tool call)
and returns a JSON string. Failures are returned as ``{"error": "..."}``
rather than raised, so the calling agent can read and react to them.

Two guards apply to any tool that sets a schedule's target agent:

- an agent cannot schedule itself, which would let it re-trigger forever;
- the target must be on the configured allow-list. An empty allow-list
  permits nothing.

Tags:
    autorun, tools, agents, scheduling

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from autorun.core.logging import get_logger
from autorun.core.models import Agent, ScheduleKind
from autorun.core.repositories import ScheduleCreate, ScheduleUpdate

from .result import OperationResult
from .schedules import SchedulingService

logger = get_logger(__name__)

SELF_SCHEDULING_ERROR = "Agents cannot schedule themselves. Create a separate scheduling agent."
NO_TARGETS_ERROR = "No target agents configured. Add at least one agent to the scheduler target list."
NOT_A_TARGET_ERROR = (
    "Agent is not in the scheduler target list. You can only schedule the configured target agents."
)

SCHEDULER_INSTRUCTIONS = """You are a Schedule Manager. You create and manage scheduled runs for the \
target agents listed in your context.

## Your capabilities
- create_schedule: create recurring (cron) or one-off schedules
- update_schedule: change an existing schedule
- delete_schedule: remove a schedule
- run_schedule: run a schedule now
- list_schedules: list all schedules
- list_runs / get_run: view run history

## Rules
- Infer which agent to run from the user's request, matching by name or purpose. Never ask the user \
which agent.
- You can only schedule the agents listed in your context. When asked what you can schedule, list \
those agents only.
- For create_schedule use name (user-friendly), agent_id (from the list), prompt (the message the \
agent receives) and kind. Recurring schedules take cron_expression; one-off schedules take run_at \
(ISO date)."""

TOOL_DEFINITIONS: dict[str, dict[str, Any]] = {
    "list_schedules": {
        "description": (
            "List the user's schedules with id, name, agent_id, prompt, kind, "
            "cron_expression, run_at, timezone, enabled and next_run_at."
        ),
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
    "create_schedule": {
        "description": (
            "Schedule a prompt to run with an agent. Required: name, agent_id, prompt, kind. "
            "Recurring schedules need cron_expression; one-off schedules need run_at (ISO date)."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Schedule name"},
                "agent_id": {"type": "string", "description": "Agent id from the target list"},
                "prompt": {"type": "string", "description": "Prompt template to send"},
                "kind": {"type": "string", "enum": ["recurring", "one-off"]},
                "cron_expression": {"type": "string", "description": "e.g. 0 9 * * * for 9am daily"},
                "run_at": {"type": "string", "description": "ISO date for a one-off run"},
                "timezone": {"type": "string", "default": "UTC"},
                "selected_tools": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["name", "agent_id", "prompt", "kind"],
        },
    },
    "update_schedule": {
        "description": "Update a schedule. Provide schedule_id and any fields to change.",
        "parameters": {
            "type": "object",
            "properties": {
                "schedule_id": {"type": "string"},
                "name": {"type": "string"},
                "agent_id": {"type": "string"},
                "prompt": {"type": "string"},
                "kind": {"type": "string", "enum": ["recurring", "one-off"]},
                "cron_expression": {"type": "string"},
                "run_at": {"type": "string"},
                "enabled": {"type": "boolean"},
                "timezone": {"type": "string"},
                "selected_tools": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["schedule_id"],
        },
    },
    "delete_schedule": {
        "description": "Delete a schedule by id.",
        "parameters": {
            "type": "object",
            "properties": {"schedule_id": {"type": "string"}},
            "required": ["schedule_id"],
        },
    },
    "run_schedule": {
        "description": (
            "Queue a schedule run now. Returns immediately with runId and status 'queued'; "
            "use get_run to check progress."
        ),
        "parameters": {
            "type": "object",
            "properties": {"schedule_id": {"type": "string"}},
            "required": ["schedule_id"],
        },
    },
    "list_runs": {
        "description": "List the user's run history, newest first. Optional limit (default 25, max 100).",
        "parameters": {
            "type": "object",
            "properties": {"limit": {"type": "integer"}},
            "required": [],
        },
    },
    "get_run": {
        "description": "Get one run by id, including its conversation and messages.",
        "parameters": {
            "type": "object",
            "properties": {"run_id": {"type": "string"}},
            "required": ["run_id"],
        },
    },
}


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)


def _render(result: OperationResult) -> str:
    if result.success:
        return _dump(result.data)
    return _dump({"error": result.error.message})


def build_target_context(agents: list[Agent]) -> str | None:
    """List the agents a Schedule Manager may target, or None when there are none."""
    if not agents:
        return None
    lines = "\n".join(f"[{agent.id}] {agent.name or 'Unnamed'}" for agent in agents)
    return (
        "# Schedule Manager constraints\n"
        "- The agents listed below are the ONLY agents you can schedule.\n"
        "- Never ask for an agent name or id. Map the user's intent to an agent_id from this list.\n"
        "\n"
        "# Agents you can schedule (use agent_id in create_schedule/update_schedule)\n"
        f"{lines}"
    )


class SchedulingTools:
    """Schedule management bound to one user and one calling agent.

    Example:
        >>> tools = SchedulingTools(service, user_id="u1", agent_id="scheduler",
        ...                         target_agent_ids=["reporter"])
        >>> await tools.invoke("run_schedule", {"schedule_id": "sch_abc"})
        '{"runId": "run_...", "status": "queued", "conversationId": "..."}'
    """

    def __init__(
        self,
        service: SchedulingService,
        user_id: str,
        agent_id: str | None = None,
        target_agent_ids: list[str] | None = None,
    ) -> None:
        self.service = service
        self.user_id = user_id
        self.agent_id = agent_id
        self.target_agent_ids = list(target_agent_ids or [])
        self.allowed_targets = set(self.target_agent_ids)
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "list_schedules": self.list_schedules,
            "create_schedule": self.create_schedule,
            "update_schedule": self.update_schedule,
            "delete_schedule": self.delete_schedule,
            "run_schedule": self.run_schedule,
            "list_runs": self.list_runs,
            "get_run": self.get_run,
        }

    @staticmethod
    def definitions() -> list[dict[str, Any]]:
        return [{"name": name, **definition} for name, definition in TOOL_DEFINITIONS.items()]

    def instructions(self) -> str:
        """System text for the calling agent: default rules plus its target agents.

        Target ids with no matching agent are left out of the list.
        """
        agents = [self.service.directory.get_agent(agent_id) for agent_id in self.target_agent_ids]
        context = build_target_context([a for a in agents if a is not None])
        return SCHEDULER_INSTRUCTIONS if context is None else f"{SCHEDULER_INSTRUCTIONS}\n\n{context}"

    async def invoke(self, name: str, args: dict[str, Any] | None = None) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            return _dump({"error": f"Unknown tool: {name}"})
        try:
            return await handler(args or {})
        except Exception as e:
            logger.exception("tools.invoke_failed", tool=name)
            return _dump({"error": str(e) or f"Failed to {name.replace('_', ' ')}"})

    def _target_error(self, agent_id: str | None) -> str | None:
        if agent_id and agent_id == self.agent_id:
            return SELF_SCHEDULING_ERROR
        if not self.allowed_targets:
            return NO_TARGETS_ERROR
        if agent_id not in self.allowed_targets:
            return NOT_A_TARGET_ERROR
        return None

    async def list_schedules(self, args: dict[str, Any]) -> str:
        return _render(self.service.list_schedules(self.user_id))

    async def create_schedule(self, args: dict[str, Any]) -> str:
        agent_id = args.get("agent_id")
        error = self._target_error(agent_id)
        if error:
            return _dump({"error": error})

        missing = [f for f in ("name", "agent_id", "prompt", "kind") if not args.get(f)]
        if missing:
            return _dump({"error": f"Missing required fields: {', '.join(missing)}"})
        kind = args["kind"]
        if kind not in (ScheduleKind.RECURRING.value, ScheduleKind.ONE_OFF.value):
            return _dump({"error": f"Unknown schedule kind: {kind}"})
        if kind == ScheduleKind.RECURRING.value and not args.get("cron_expression"):
            return _dump({"error": "cron_expression required for recurring schedules"})
        if kind == ScheduleKind.ONE_OFF.value and not args.get("run_at"):
            return _dump({"error": "run_at required for one-off schedules"})

        draft = ScheduleCreate(
            user_id=self.user_id,
            name=args["name"],
            prompt=args["prompt"],
            kind=ScheduleKind(kind),
            cron_expression=args.get("cron_expression"),
            run_at=args.get("run_at"),
            timezone=args.get("timezone") or "UTC",
            agent_id=agent_id,
            selected_tools=args.get("selected_tools"),
        )
        return _render(self.service.create_schedule(draft))

    async def update_schedule(self, args: dict[str, Any]) -> str:
        new_agent = args.get("agent_id")
        if new_agent:
            error = self._target_error(new_agent)
            if error:
                return _dump({"error": error})
        schedule_id = args.get("schedule_id")
        if not schedule_id:
            return _dump({"error": "schedule_id is required"})

        updates = ScheduleUpdate(
            name=args.get("name"),
            prompt=args.get("prompt"),
            kind=ScheduleKind(args["kind"]) if args.get("kind") else None,
            cron_expression=args.get("cron_expression"),
            run_at=args.get("run_at"),
            timezone=args.get("timezone"),
            enabled=args.get("enabled"),
            agent_id=new_agent,
        )
        if "selected_tools" in args:
            updates.selected_tools = args["selected_tools"]
        return _render(self.service.update_schedule(self.user_id, schedule_id, updates))

    async def delete_schedule(self, args: dict[str, Any]) -> str:
        schedule_id = args.get("schedule_id")
        if not schedule_id:
            return _dump({"error": "schedule_id is required"})
        result = self.service.delete_schedule(self.user_id, schedule_id)
        if not result.success:
            return _render(result)
        return _dump({"success": True})

    async def run_schedule(self, args: dict[str, Any]) -> str:
        schedule_id = args.get("schedule_id")
        if not schedule_id:
            return _dump({"error": "schedule_id is required"})
        return _render(await self.service.run_schedule(self.user_id, schedule_id))

    async def list_runs(self, args: dict[str, Any]) -> str:
        limit = args.get("limit") or 25
        return _render(self.service.list_runs(self.user_id, limit=int(limit)))

    async def get_run(self, args: dict[str, Any]) -> str:
        run_id = args.get("run_id")
        if not run_id:
            return _dump({"error": "run_id is required"})
        return _render(self.service.get_run(self.user_id, run_id))
