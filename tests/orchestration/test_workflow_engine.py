"""Tests for the Workflow Engine."""

from __future__ import annotations

import asyncio

import pytest

from autorun.core.errors import ExecutionError, MissingEntityError
from autorun.core.models import RunStatus, TargetType, WorkflowEdge, WorkflowNode
from autorun.core.repositories import ScheduleCreate, WorkflowCreate
from autorun.execution.runtime import Failed
from autorun.orchestration.engine import NO_OUTPUT, WorkflowEngine, WorkflowJob
from tests._support import EDITOR, USER_ID, WRITER
from tests._support.fakes import FakeRuntime


def _two_steps(feed=True):
    nodes = [
        WorkflowNode("edit", agent_id=EDITOR, prompt_id="prompt_edit"),
        WorkflowNode("draft", agent_id=WRITER, prompt_id="prompt_draft", selected_tools=["search"]),
    ]
    return nodes, [WorkflowEdge("draft", "edit", feed_output_to_next=feed)]


@pytest.fixture
def make_engine(workflows, workflow_runs, directory, conversations, registry, schedules):
    def factory(runtime, timeout_seconds=None):
        return WorkflowEngine(
            workflows,
            workflow_runs,
            directory,
            conversations,
            runtime,
            registry,
            schedules=schedules,
            timeout_seconds=timeout_seconds,
        )

    return factory


@pytest.fixture
def start_run(workflows, workflow_runs, directory):
    def factory(nodes, edges, name="Newsletter"):
        workflow = workflows.create(WorkflowCreate(user_id=USER_ID, name=name, nodes=nodes, edges=edges))
        run = workflow_runs.create(workflow.id, USER_ID)
        return WorkflowJob(run.id, workflow.id, USER_ID)

    return factory


class TestStepExecution:
    @pytest.mark.asyncio
    async def test_runs_steps_in_dependency_order(self, make_engine, start_run, conversations):
        runtime = FakeRuntime(conversations, outputs=["the draft", "the edit"])
        job = start_run(*_two_steps())

        result = await make_engine(runtime).execute(job)

        assert result.success
        assert result.step_outputs == ["the draft", "the edit"]
        assert [r.agent.id for r in runtime.requests] == [WRITER, EDITOR]
        assert runtime.texts[0] == "Draft a note for Ada Lovelace"
        assert runtime.texts[1] == "the draft\n\nEdit the draft"
        assert all(r.workflow_triggered for r in runtime.requests)
        assert runtime.requests[0].selected_tools == ["search"]
        assert {r.conversation_id for r in runtime.requests} == {result.conversation_id}

    @pytest.mark.asyncio
    async def test_handoff_message_links_the_steps(self, make_engine, start_run, conversations):
        runtime = FakeRuntime(conversations, outputs=["the draft", "the edit"])
        job = start_run(*_two_steps())

        result = await make_engine(runtime).execute(job)

        messages = conversations.list_messages(result.conversation_id)
        handoffs = [m for m in messages if m.content and m.content[0]["type"] == "tool_call"]
        assert len(handoffs) == 1
        handoff = handoffs[0]
        call = handoff.content[0]["tool_call"]
        assert call["name"] == f"transfer_to_{EDITOR}"
        assert call["args"]["instructions"] == "the draft\n\nEdit the draft"
        assert handoff.agent_id == WRITER
        assert handoff.sender == "Assistant"
        assert runtime.requests[1].parent_message_id == handoff.id
        writer_reply = conversations.get_message(handoff.parent_message_id)
        assert writer_reply.text == "the draft"

    @pytest.mark.asyncio
    async def test_output_not_fed_forward(self, make_engine, start_run, conversations):
        runtime = FakeRuntime(conversations, outputs=["the draft", "the edit"])
        job = start_run(*_two_steps(feed=False))

        await make_engine(runtime).execute(job)

        assert runtime.texts[1] == "Edit the draft"

    @pytest.mark.asyncio
    async def test_empty_output_is_recorded_as_placeholder(self, make_engine, start_run, conversations):
        runtime = FakeRuntime(conversations, outputs=["", "done"])
        job = start_run(*_two_steps())

        result = await make_engine(runtime).execute(job)

        assert result.step_outputs == [NO_OUTPUT, "done"]
        assert runtime.texts[1] == f"{NO_OUTPUT}\n\nEdit the draft"

    @pytest.mark.asyncio
    async def test_success_tags_and_titles_conversation(
        self, make_engine, start_run, conversations, workflow_runs
    ):
        job = start_run(*_two_steps())
        result = await make_engine(FakeRuntime(conversations)).execute(job)

        conversation = conversations.get(result.conversation_id)
        assert f"workflow-run:{job.run_id}" in conversation.tags
        assert conversation.title.startswith("Newsletter - ")
        assert conversation.title.endswith(" UTC")
        stored = workflow_runs.get(job.run_id)
        assert stored.status is RunStatus.SUCCESS
        assert stored.step_outputs == ["output 1", "output 2"]
        assert stored.conversation_id == result.conversation_id

    @pytest.mark.asyncio
    async def test_uses_the_runs_conversation(self, make_engine, workflows, workflow_runs, conversations):
        nodes, edges = _two_steps()
        workflow = workflows.create(WorkflowCreate(user_id=USER_ID, name="wf", nodes=nodes, edges=edges))
        run = workflow_runs.create(workflow.id, USER_ID, conversation_id="conv_fixed")

        result = await make_engine(FakeRuntime(conversations)).execute(
            WorkflowJob(run.id, workflow.id, USER_ID)
        )

        assert result.conversation_id == "conv_fixed"
        assert conversations.get("conv_fixed").agent_id == EDITOR


class TestGraphProblems:
    @pytest.mark.asyncio
    async def test_cycle_is_truncated(self, make_engine, start_run, conversations):
        nodes = [
            WorkflowNode("draft", agent_id=WRITER, prompt_id="prompt_draft"),
            WorkflowNode("edit", agent_id=EDITOR, prompt_id="prompt_edit"),
            WorkflowNode("loop", agent_id=EDITOR, prompt_id="prompt_edit"),
        ]
        edges = [WorkflowEdge("edit", "loop"), WorkflowEdge("loop", "edit")]
        runtime = FakeRuntime(conversations)

        result = await make_engine(runtime).execute(start_run(nodes, edges))

        assert result.success
        assert [r.agent.id for r in runtime.requests] == [WRITER]

    @pytest.mark.asyncio
    async def test_fully_cyclic_workflow_fails(self, make_engine, start_run, conversations):
        nodes = [
            WorkflowNode("a", agent_id=WRITER, prompt_id="prompt_draft"),
            WorkflowNode("b", agent_id=EDITOR, prompt_id="prompt_edit"),
        ]
        edges = [WorkflowEdge("a", "b"), WorkflowEdge("b", "a")]
        runtime = FakeRuntime(conversations)

        result = await make_engine(runtime).execute(start_run(nodes, edges), final_attempt=False)

        assert result.status is RunStatus.FAILED
        assert result.error == "Workflow has no runnable steps"
        assert runtime.requests == []

    @pytest.mark.asyncio
    async def test_incomplete_step_fails_without_retry(self, make_engine, start_run, conversations):
        nodes = [WorkflowNode("a", agent_id=WRITER)]
        result = await make_engine(FakeRuntime(conversations)).execute(start_run(nodes, []), final_attempt=False)
        assert result.error == "All workflow steps must have a prompt and agent selected"

    @pytest.mark.asyncio
    async def test_missing_agent(self, make_engine, start_run, conversations):
        nodes = [WorkflowNode("a", agent_id="agent_gone", prompt_id="prompt_draft")]
        result = await make_engine(FakeRuntime(conversations)).execute(start_run(nodes, []))
        assert result.error == "Agent not found: agent_gone"

    @pytest.mark.asyncio
    async def test_missing_run_record(self, make_engine, conversations):
        with pytest.raises(MissingEntityError):
            await make_engine(FakeRuntime(conversations)).execute(WorkflowJob("wfrun_gone", "wf", USER_ID))


class TestFailures:
    @pytest.mark.asyncio
    async def test_retryable_failure_reraises(self, make_engine, start_run, conversations, workflow_runs):
        runtime = FakeRuntime(conversations, outcomes=[None, Failed("overloaded")])
        job = start_run(*_two_steps())

        with pytest.raises(ExecutionError):
            await make_engine(runtime).execute(job, final_attempt=False)

        stored = workflow_runs.get(job.run_id)
        assert stored.status is RunStatus.RUNNING
        assert stored.step_outputs == ["output 1"]

    @pytest.mark.asyncio
    async def test_final_failure_is_recorded(self, make_engine, start_run, conversations, workflow_runs):
        runtime = FakeRuntime(conversations, outcomes=[Failed("overloaded")])
        job = start_run(*_two_steps())

        result = await make_engine(runtime).execute(job)

        assert result.error == "overloaded"
        assert workflow_runs.get(job.run_id).status is RunStatus.FAILED
        assert len(runtime.requests) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, make_engine, start_run, conversations):
        runtime = FakeRuntime(conversations, block=True)
        result = await make_engine(runtime, timeout_seconds=0.05).execute(start_run(*_two_steps()))
        assert result.error == "Workflow timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_terminal_run_is_skipped(self, make_engine, start_run, conversations, workflow_runs):
        job = start_run(*_two_steps())
        workflow_runs.mark_failed(job.run_id, "Cancelled by user")
        runtime = FakeRuntime(conversations)

        result = await make_engine(runtime).execute(job)

        assert result.skipped is True
        assert runtime.requests == []


class TestAbandon:
    def test_marks_open_run_failed_and_records_schedule(
        self, make_engine, workflows, workflow_runs, schedules, runtime
    ):
        nodes, edges = _two_steps()
        workflow = workflows.create(WorkflowCreate(user_id=USER_ID, name="Digest", nodes=nodes, edges=edges))
        schedule = schedules.create(
            ScheduleCreate(
                user_id=USER_ID,
                name="Weekly digest",
                cron_expression="0 8 * * 1",
                target_type=TargetType.WORKFLOW,
                workflow_id=workflow.id,
            )
        )
        run = workflow_runs.create(workflow.id, USER_ID, schedule_id=schedule.id)
        job = WorkflowJob(run.id, workflow.id, USER_ID)

        assert make_engine(runtime).abandon(job, "Job timed out") is True

        stored = workflow_runs.get(run.id)
        assert stored.status is RunStatus.FAILED
        assert stored.error == "Job timed out"
        assert schedules.get(schedule.id).last_run_status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_leaves_finished_run_alone(self, make_engine, start_run, conversations, workflow_runs):
        job = start_run(*_two_steps())
        engine = make_engine(FakeRuntime(conversations))
        await engine.execute(job)

        assert engine.abandon(job, "Job stalled") is False
        assert workflow_runs.get(job.run_id).status is RunStatus.SUCCESS


class TestCancellation:
    @pytest.mark.asyncio
    async def test_abort_stops_remaining_steps(self, make_engine, start_run, workflow_runs, registry):
        runtime = FakeRuntime(block=True)
        job = start_run(*_two_steps())
        task = asyncio.create_task(make_engine(runtime).execute(job, final_attempt=False))
        await asyncio.wait_for(runtime.started.wait(), timeout=1)

        assert registry.abort(f"workflow_{job.run_id}") is True
        result = await asyncio.wait_for(task, timeout=1)

        assert result.error == "Cancelled by user"
        assert len(runtime.requests) == 1
        assert workflow_runs.get(job.run_id).error == "Cancelled by user"
        assert len(registry) == 0
