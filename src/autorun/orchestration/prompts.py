"""Prompt template resolution.

Placeholders, resolved in this order:

================================  ==========================================
``{{runAt}}``                     fire time, ISO-8601 UTC
``{{date}}`` / ``{{time}}``       fire time as ``YYYY-MM-DD`` / ``HH:MM:SS``
``{{<name>}}``                    caller-supplied custom variables
``{{USER_<FIELD>}}``              ID, NAME, USERNAME, EMAIL, ROLE
``{{BODY_<FIELD>}}``              CONVERSATIONID, PARENTMESSAGEID, MESSAGEID
``${ENV_VAR}``                    process environment ('' when unset)
``{{PREV_OUTPUT}}``               workflow only: latest recorded step output
``{{STEP_N_OUTPUT}}``             workflow only: output of step N (0-based)
================================  ==========================================

Unknown ``{{...}}`` placeholders are left untouched.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from autorun.core.models import User

_USER_FIELDS = ("id", "name", "username", "email", "role")
_BODY_FIELDS = {
    "CONVERSATIONID": "conversation_id",
    "PARENTMESSAGEID": "parent_message_id",
    "MESSAGEID": "message_id",
}
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_STEP_PATTERN = re.compile(r"\{\{STEP_(\d+)_OUTPUT\}\}")


@dataclass
class PromptContext:
    user: User | None = None
    run_at: datetime | None = None
    conversation_id: str | None = None
    parent_message_id: str | None = None
    message_id: str | None = None
    custom_vars: dict[str, str] = field(default_factory=dict)
    env: Mapping[str, str] | None = None


def resolve_prompt(template: str, context: PromptContext) -> str:
    value = template if isinstance(template, str) else str(template)

    variables = dict(context.custom_vars)
    if context.run_at is not None:
        variables["runAt"] = context.run_at.isoformat()
        variables["date"] = context.run_at.strftime("%Y-%m-%d")
        variables["time"] = context.run_at.strftime("%H:%M:%S")
    for name, replacement in variables.items():
        if name and replacement is not None:
            value = value.replace(f"{{{{{name}}}}}", str(replacement))

    if context.user is not None:
        for attr in _USER_FIELDS:
            placeholder = f"{{{{USER_{attr.upper()}}}}}"
            if placeholder in value:
                field_value = getattr(context.user, attr, None)
                value = value.replace(placeholder, "" if field_value is None else str(field_value))

    for suffix, attr in _BODY_FIELDS.items():
        placeholder = f"{{{{BODY_{suffix}}}}}"
        if placeholder in value:
            field_value = getattr(context, attr)
            value = value.replace(placeholder, field_value or "")

    env = os.environ if context.env is None else context.env
    return _ENV_PATTERN.sub(lambda m: env.get(m.group(1), ""), value)


def resolve_workflow_prompt(template: str, context: PromptContext, step_outputs: list[str]) -> str:
    """``resolve_prompt`` plus ``{{PREV_OUTPUT}}`` and ``{{STEP_N_OUTPUT}}``."""
    value = resolve_prompt(template, context)
    previous = step_outputs[-1] if step_outputs else ""
    value = value.replace("{{PREV_OUTPUT}}", previous)

    def _step(match: re.Match) -> str:
        index = int(match.group(1))
        return step_outputs[index] if index < len(step_outputs) else ""

    return _STEP_PATTERN.sub(_step, value)
