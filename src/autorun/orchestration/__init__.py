"""Workflow orchestration: step ordering, prompt templates, hand-offs and the engine.

The engine lives in ``autorun.orchestration.engine`` and is not
re-exported here, because the agent executor imports the prompt
resolver from this package.
"""

from autorun.orchestration.handoff import build_handoff_message, handoff_instructions
from autorun.orchestration.prompts import PromptContext, resolve_prompt, resolve_workflow_prompt
from autorun.orchestration.topology import find_unordered_nodes, topological_sort

__all__ = [
    "PromptContext",
    "build_handoff_message",
    "find_unordered_nodes",
    "handoff_instructions",
    "resolve_prompt",
    "resolve_workflow_prompt",
    "topological_sort",
]
