"""Tests for the SQLite repositories."""

from __future__ import annotations

from datetime import UTC, datetime

from autorun.core.models import (
    Message,
    RunStatus,
    ScheduleKind,
    TargetType,
    WorkflowEdge,
    WorkflowNode,
)
from autorun.core.repositories import ScheduleCreate, ScheduleUpdate, WorkflowCreate
from tests._support import USER_ID, WRITER


def _recurring(**overrides) -> ScheduleCreate:
    values = dict(
        user_id=USER_ID,
        name="Morning digest",
        prompt="Summarise {{date}}",
        cron_expression="0 9 * * *",
        agent_id=WRITER,
    )
    values.update(overrides)
    return ScheduleCreate(**values)


class TestScheduleRepository:
    def test_create_and_get(self, schedules):
        created = schedules.create(_recurring(selected_tools=["search"]))
        assert created.id.startswith("sch_")
        fetched = schedules.get(created.id)
        assert fetched.name == "Morning digest"
        assert fetched.kind is ScheduleKind.RECURRING
        assert fetched.target_type is TargetType.AGENT
        assert fetched.selected_tools == ["search"]
        assert fetched.enabled is True

    def test_selected_tools_none_and_empty_differ(self, schedules):
        all_tools = schedules.create(_recurring(selected_tools=None))
        no_tools = schedules.create(_recurring(selected_tools=[]))
        assert schedules.get(all_tools.id).selected_tools is None
        assert schedules.get(no_tools.id).selected_tools == []

    def test_get_for_user_scopes_by_owner(self, schedules):
        created = schedules.create(_recurring())
        assert schedules.get_for_user(created.id, USER_ID) is not None
        assert schedules.get_for_user(created.id, "someone_else") is None

    def test_partial_update(self, schedules):
        created = schedules.create(_recurring(conversation_id="conv_1"))
        updated = schedules.update(created.id, ScheduleUpdate(name="Evening digest", enabled=False))
        assert updated.name == "Evening digest"
        assert updated.enabled is False
        assert updated.prompt == "Summarise {{date}}"
        assert updated.conversation_id == "conv_1"

    def test_update_can_clear_conversation(self, schedules):
        created = schedules.create(_recurring(conversation_id="conv_1"))
        updated = schedules.update(created.id, ScheduleUpdate(conversation_id=None))
        assert updated.conversation_id is None

    def test_delete(self, schedules):
        created = schedules.create(_recurring())
        assert schedules.delete(created.id) is True
        assert schedules.delete(created.id) is False
        assert schedules.get(created.id) is None

    def test_tick_queries(self, schedules):
        recurring = schedules.create(_recurring())
        disabled = schedules.create(_recurring(enabled=False))
        past = schedules.create(
            _recurring(kind=ScheduleKind.ONE_OFF, cron_expression=None, run_at="2026-01-01T08:00:00+00:00")
        )
        schedules.create(
            _recurring(kind=ScheduleKind.ONE_OFF, cron_expression=None, run_at="2026-12-01T08:00:00+00:00")
        )
        now = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

        assert [s.id for s in schedules.list_enabled_recurring()] == [recurring.id]
        assert [s.id for s in schedules.list_due_one_off(now)] == [past.id]
        assert [s.id for s in schedules.list_due_one_off(now.replace(tzinfo=None))] == [past.id]
        assert disabled.id not in [s.id for s in schedules.list_enabled_recurring()]
        assert schedules.count_enabled() == 3

    def test_disable_and_record_last_run(self, schedules):
        created = schedules.create(_recurring())
        schedules.disable(created.id)
        schedules.record_last_run(created.id, RunStatus.SUCCESS, "2026-01-05T09:00:00+00:00")
        fetched = schedules.get(created.id)
        assert fetched.enabled is False
        assert fetched.last_run_status is RunStatus.SUCCESS
        assert fetched.last_run_at == "2026-01-05T09:00:00+00:00"


class TestRunStatusMachine:
    """Status only moves forward: queued -> running -> {success, failed}."""

    def test_happy_path(self, runs):
        run = runs.create("sch_1", USER_ID)
        assert run.status is RunStatus.QUEUED
        assert runs.mark_running(run.id) is True
        assert runs.mark_success(run.id, "conv_1") is True
        stored = runs.get(run.id)
        assert stored.status is RunStatus.SUCCESS
        assert stored.conversation_id == "conv_1"
        assert stored.started_at is not None
        assert stored.finished_at is not None

    def test_running_can_resume(self, runs):
        run = runs.create("sch_1", USER_ID)
        runs.mark_running(run.id)
        assert runs.mark_running(run.id) is True

    def test_terminal_is_final(self, runs):
        run = runs.create("sch_1", USER_ID)
        runs.mark_failed(run.id, "Cancelled by user")
        assert runs.mark_running(run.id) is False
        assert runs.mark_success(run.id, "conv_1") is False
        assert runs.mark_failed(run.id, "other") is False
        stored = runs.get(run.id)
        assert stored.status is RunStatus.FAILED
        assert stored.error == "Cancelled by user"

    def test_missing_run(self, runs):
        assert runs.mark_running("run_missing") is False

    def test_create_is_idempotent(self, runs):
        first = runs.create("sch_1", USER_ID, run_id="run_fixed")
        runs.mark_running("run_fixed")
        again = runs.create("sch_1", USER_ID, run_id="run_fixed")
        assert again.id == first.id
        assert again.status is RunStatus.RUNNING

    def test_newest_first(self, runs):
        runs.create("sch_1", USER_ID, run_id="run_old", run_at="2026-01-01T00:00:00+00:00")
        runs.create("sch_1", USER_ID, run_id="run_new", run_at="2026-01-02T00:00:00+00:00")
        runs.create("sch_2", "other", run_id="run_foreign", run_at="2026-01-03T00:00:00+00:00")
        assert [r.id for r in runs.list_for_user(USER_ID)] == ["run_new", "run_old"]
        assert [r.id for r in runs.list_for_schedule("sch_1", limit=1)] == ["run_new"]


class TestWorkflowRepositories:
    def test_round_trip_graph(self, workflows):
        created = workflows.create(
            WorkflowCreate(
                user_id=USER_ID,
                name="Draft and edit",
                nodes=[
                    WorkflowNode(id="a", agent_id="agent_writer", prompt_id="prompt_draft"),
                    WorkflowNode(id="b", agent_id="agent_editor", prompt_id="prompt_edit", selected_tools=[]),
                ],
                edges=[WorkflowEdge("a", "b", feed_output_to_next=False)],
            )
        )
        fetched = workflows.get(created.id)
        assert [n.id for n in fetched.nodes] == ["a", "b"]
        assert fetched.node("b").selected_tools == []
        assert fetched.edge("a", "b").feed_output_to_next is False
        assert fetched.edge("b", "a") is None

    def test_workflow_run_outputs(self, workflow_runs):
        run = workflow_runs.create("wf_1", USER_ID, schedule_id="sch_1")
        assert run.step_outputs == []
        assert run.schedule_id == "sch_1"
        workflow_runs.mark_running(run.id)
        workflow_runs.record_step_outputs(run.id, ["first"])
        assert workflow_runs.get(run.id).step_outputs == ["first"]
        workflow_runs.mark_success(run.id, "conv_1", ["first", "second"])
        stored = workflow_runs.get(run.id)
        assert stored.status is RunStatus.SUCCESS
        assert stored.step_outputs == ["first", "second"]
        assert workflow_runs.mark_failed(run.id, "late") is False


class TestConversationRepository:
    def test_ensure_is_idempotent(self, conversations):
        conversations.ensure("conv_1", USER_ID, WRITER)
        conversations.ensure("conv_1", "other")
        assert conversations.get("conv_1").user_id == USER_ID

    def test_tag_merges(self, conversations):
        conversations.ensure("conv_1", USER_ID)
        conversations.tag("conv_1", tags=["run:1"], title="Digest")
        conversations.tag("conv_1", tags=["run:1", "run:2"])
        conversation = conversations.get("conv_1")
        assert conversation.tags == ["run:1", "run:2"]
        assert conversation.title == "Digest"

    def test_messages_in_order(self, conversations):
        for index in range(3):
            conversations.add_message(
                Message(id=f"m{index}", conversation_id="conv_1", text=str(index), content=[{"type": "text"}])
            )
        messages = conversations.list_messages("conv_1")
        assert [m.id for m in messages] == ["m0", "m1", "m2"]
        assert conversations.get_message("m1").content == [{"type": "text"}]


class TestDirectory:
    def test_lookups(self, directory):
        assert directory.get_user(USER_ID).username == "ada"
        assert directory.get_agent(WRITER).name == "Writer"
        assert directory.get_prompt("prompt_draft").template.startswith("Draft")
        assert directory.get_agent("missing") is None
