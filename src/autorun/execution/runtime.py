"""Agent runtime contract.

The LLM/agent execution runtime is an external collaborator. The core
hands it an AgentRunRequest (the same inputs an interactive chat turn
gets, with no response sink) and receives a typed outcome:

    Completed(turn)   the turn ran; ``turn.completion`` resolves once every
                      database write for the turn is persisted
    Cancelled()       the runtime observed the cancellation token
    Failed(reason)    any other failure

Cancellation is reported as a variant, never inferred from an error
message. Runtimes persist the user and assistant messages of the turn
into ``request.conversation_id`` themselves.
"""

from __future__ import annotations

import importlib
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from autorun.core.errors import (
    CANCELLED_MESSAGE,
    ConfigError,
    ExecutionError,
    NoCompletionSignalError,
    RunCancelledError,
)
from autorun.core.logging import get_logger
from autorun.core.models import Agent, User

from .abort import CancellationToken

logger = get_logger(__name__)


@dataclass
class AgentRunRequest:
    """Inputs for one agent turn.

    ``selected_tools`` of None means every tool the agent has; ``[]``
    means no tools.
    """

    run_id: str
    user: User
    agent: Agent
    text: str
    conversation_id: str
    token: CancellationToken
    parent_message_id: str | None = None
    selected_tools: list[str] | None = None
    workflow_triggered: bool = False


@dataclass
class AgentTurn:
    """Result of a completed turn.

    ``resources`` is whatever the runtime needs back in ``dispose`` (model
    clients, tool sessions).
    """

    text: str
    conversation_id: str
    message_id: str | None = None
    completion: Awaitable[Any] | None = None
    resources: Any = None


@dataclass(frozen=True)
class Completed:
    turn: AgentTurn


@dataclass(frozen=True)
class Cancelled:
    reason: str = CANCELLED_MESSAGE


@dataclass(frozen=True)
class Failed:
    reason: str
    retryable: bool = True


AgentRunOutcome = Completed | Cancelled | Failed


@runtime_checkable
class AgentRuntime(Protocol):
    async def run(self, request: AgentRunRequest) -> AgentRunOutcome: ...

    async def dispose(self, turn: AgentTurn) -> None: ...


class UnconfiguredRuntime:
    """Stand-in for processes that only manage schedules (the CLI without ``--runtime``).

    Any run routed to it fails without retry.
    """

    async def run(self, request: AgentRunRequest) -> AgentRunOutcome:
        return Failed("No agent runtime configured", retryable=False)

    async def dispose(self, turn: AgentTurn) -> None:
        return None


def load_runtime(path: str, **kwargs: Any) -> AgentRuntime:
    """Import ``"package.module:factory"`` and call it to build a runtime."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Runtime path must look like 'module:factory', got {path!r}")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load agent runtime {path!r}: {e}", cause=e) from e
    runtime = factory(**kwargs)
    if not isinstance(runtime, AgentRuntime):
        raise ConfigError(f"{path!r} did not return an AgentRuntime")
    return runtime


async def run_to_completion(runtime: AgentRuntime, request: AgentRunRequest) -> AgentTurn:
    """Run one turn and wait until it is persisted.

    Raises RunCancelledError for ``Cancelled``, ExecutionError for
    ``Failed`` and NoCompletionSignalError when a completed turn carries
    no completion awaitable. A completed turn is disposed whatever happens
    while awaiting it.
    """
    request.token.raise_if_cancelled()
    outcome = await runtime.run(request)
    match outcome:
        case Cancelled(reason=reason):
            raise RunCancelledError(reason)
        case Failed(reason=reason, retryable=retryable):
            raise ExecutionError(reason, retryable=retryable)
        case Completed(turn=turn):
            pass
        case _:
            raise ExecutionError(f"Unexpected runtime outcome: {outcome!r}", retryable=False)
    try:
        if turn.completion is None:
            raise NoCompletionSignalError()
        await turn.completion
    finally:
        try:
            await runtime.dispose(turn)
        except Exception:
            logger.exception("runtime.dispose_failed", run_id=request.run_id)
    return turn
