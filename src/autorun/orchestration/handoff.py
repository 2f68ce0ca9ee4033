"""Synthetic hand-off messages between workflow steps.

The message is a single assistant turn holding one ``tool_call`` part that
already carries its output, so a transcript viewer renders it as a
completed ``transfer_to_<agent>`` call without any tool having run.
"""

from __future__ import annotations

from uuid import uuid4

from autorun.core.models import Message

TRANSFER_PREFIX = "transfer_to_"
HANDOFF_SENDER = "Assistant"
TOOL_CALL_COMPLETE = 2


def handoff_instructions(previous_output: str, next_prompt: str, *, feed_output: bool) -> str:
    """Text the next step receives: prior output, blank line, its own prompt."""
    if feed_output:
        return f"{previous_output}\n\n{next_prompt}"
    return next_prompt


def build_handoff_message(
    *,
    conversation_id: str,
    parent_message_id: str | None,
    from_agent_id: str,
    to_agent_id: str,
    instructions: str,
    message_id: str | None = None,
) -> Message:
    instructions = instructions if isinstance(instructions, str) else str(instructions)
    return Message(
        id=message_id or str(uuid4()),
        conversation_id=conversation_id,
        parent_message_id=parent_message_id,
        sender=HANDOFF_SENDER,
        is_created_by_user=False,
        text="",
        content=[
            {
                "type": "tool_call",
                "tool_call": {
                    "id": f"handoff_{uuid4().hex[:21]}",
                    "name": f"{TRANSFER_PREFIX}{to_agent_id}",
                    "args": {"instructions": instructions},
                    "output": instructions,
                    "progress": TOOL_CALL_COMPLETE,
                },
            }
        ],
        agent_id=from_agent_id,
    )
