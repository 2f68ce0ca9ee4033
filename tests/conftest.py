"""
Shared fixtures: an in-memory database seeded with two users, two agents
and two prompt sources, the repositories on top of it, and the schedule
and workflow services wired to in-memory queues.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from autorun.core.logging import configure_logging
from autorun.core.models import Agent, PromptSource, User
from autorun.core.repositories import (
    ConversationRepository,
    DirectoryRepository,
    RunRepository,
    ScheduleRepository,
    WorkflowRepository,
    WorkflowRunRepository,
)
from autorun.core.schema import connect
from autorun.execution.abort import AbortRegistry
from autorun.execution.dispatch import RunDispatcher
from autorun.execution.queue import InMemoryJobStore, JobQueue
from autorun.ops.schedules import SchedulingService
from autorun.ops.workflows import WorkflowService
from tests._support import EDITOR, OTHER_USER_ID, USER_ID, WRITER
from tests._support.fakes import FakeRuntime


@pytest.fixture
def conn():
    connection = connect()
    yield connection
    connection.close()


@pytest.fixture
def directory(conn):
    repo = DirectoryRepository(conn)
    repo.add_user(User(id=USER_ID, name="Ada Lovelace", username="ada", email="ada@example.com"))
    repo.add_user(User(id=OTHER_USER_ID, name="Grace Hopper", username="grace", email="grace@example.com"))
    repo.add_agent(Agent(id=WRITER, name="Writer", author_id=USER_ID))
    repo.add_agent(Agent(id=EDITOR, name="Editor", author_id=USER_ID))
    repo.add_prompt(PromptSource(id="prompt_draft", name="Draft", template="Draft a note for {{USER_NAME}}"))
    repo.add_prompt(PromptSource(id="prompt_edit", name="Edit", template="Edit the draft"))
    return repo


@pytest.fixture
def schedules(conn):
    return ScheduleRepository(conn)


@pytest.fixture
def runs(conn):
    return RunRepository(conn)


@pytest.fixture
def workflows(conn):
    return WorkflowRepository(conn)


@pytest.fixture
def workflow_runs(conn):
    return WorkflowRunRepository(conn)


@pytest.fixture
def conversations(conn):
    return ConversationRepository(conn)


@pytest.fixture
def registry():
    return AbortRegistry()


@pytest.fixture
def runtime(conversations):
    return FakeRuntime(conversations)


@pytest.fixture
def agent_queue():
    return JobQueue("scheduled-agent-runs", InMemoryJobStore())


@pytest.fixture
def workflow_queue():
    return JobQueue("workflow-scheduled-runs", InMemoryJobStore())


@pytest.fixture
def agent_dispatcher(agent_queue):
    return RunDispatcher("scheduled-agent-runs", agent_queue, AsyncMock())


@pytest.fixture
def workflow_dispatcher(workflow_queue):
    return RunDispatcher("workflow-scheduled-runs", workflow_queue, AsyncMock())


@pytest.fixture
def scheduling(
    schedules, runs, directory, conversations, workflows, workflow_runs,
    agent_dispatcher, workflow_dispatcher, registry,
):
    return SchedulingService(
        schedules,
        runs,
        directory,
        conversations,
        workflows,
        workflow_runs,
        agent_dispatcher,
        workflow_dispatcher,
        registry,
    )


@pytest.fixture
def workflow_service(workflows, workflow_runs, directory, conversations, workflow_dispatcher, registry):
    return WorkflowService(workflows, workflow_runs, directory, conversations, workflow_dispatcher, registry)


@pytest.fixture(scope="session", autouse=True)
def _structured_logging():
    """Route structlog through stdlib logging so ``caplog`` sees every event."""
    configure_logging("DEBUG", json_format=True, service="autorun-tests")
