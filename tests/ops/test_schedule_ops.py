"""Tests for schedule CRUD, submission and run inspection."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from autorun.core.models import Message, RunStatus, ScheduleKind, TargetType, WorkflowNode
from autorun.core.repositories import ScheduleCreate, ScheduleUpdate, WorkflowCreate
from autorun.execution.dispatch import RunDispatcher
from autorun.ops.result import NOT_FOUND, VALIDATION_FAILED
from autorun.ops.schedules import SchedulingService
from tests._support import EDITOR, OTHER_USER_ID, USER_ID, WRITER


def _recurring(**overrides):
    values = dict(
        user_id=USER_ID,
        name="Daily digest",
        prompt="Summarize the news for {{USER_NAME}}",
        cron_expression="0 9 * * *",
        agent_id=WRITER,
    )
    values.update(overrides)
    return ScheduleCreate(**values)


@pytest.fixture
def created(scheduling):
    return scheduling.create_schedule(_recurring()).data


class TestCreateSchedule:
    def test_recurring(self, scheduling):
        result = scheduling.create_schedule(_recurring(run_at="2030-01-01T00:00:00Z"))

        assert result.success
        data = result.data
        assert data["id"].startswith("sch")
        assert data["kind"] == "recurring"
        assert data["run_at"] is None
        assert data["enabled"] is True
        assert data["next_run_at"] is not None

    def test_one_off_normalizes_run_at(self, scheduling):
        result = scheduling.create_schedule(
            _recurring(kind=ScheduleKind.ONE_OFF, cron_expression="0 9 * * *", run_at="2030-01-01T09:00:00Z")
        )

        assert result.success
        assert result.data["cron_expression"] is None
        assert result.data["run_at"] == "2030-01-01T09:00:00+00:00"
        assert result.data["next_run_at"] == "2030-01-01T09:00:00+00:00"

    def test_workflow_target(self, scheduling, workflows):
        workflow = workflows.create(
            WorkflowCreate(
                user_id=USER_ID,
                name="wf",
                nodes=[WorkflowNode("a", agent_id=WRITER, prompt_id="prompt_draft")],
            )
        )
        result = scheduling.create_schedule(
            _recurring(target_type=TargetType.WORKFLOW, agent_id=None, prompt="", workflow_id=workflow.id)
        )
        assert result.success
        assert result.data["target_type"] == "workflow"

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"name": "  "}, "name is required"),
            ({"cron_expression": None}, "cron_expression is required for recurring schedules"),
            ({"cron_expression": "every day"}, "Invalid cron expression: every day"),
            ({"kind": ScheduleKind.ONE_OFF}, "run_at is required for one-off schedules"),
            ({"kind": ScheduleKind.ONE_OFF, "run_at": "soon"}, "Invalid run_at timestamp: soon"),
            ({"timezone": "Mars/Olympus"}, "Unknown timezone: Mars/Olympus"),
            ({"agent_id": None}, "agent_id is required for agent schedules"),
            ({"prompt": ""}, "prompt is required for agent schedules"),
            (
                {"target_type": TargetType.WORKFLOW, "agent_id": None},
                "workflow_id is required for workflow schedules",
            ),
        ],
    )
    def test_validation(self, scheduling, overrides, message):
        result = scheduling.create_schedule(_recurring(**overrides))
        assert not result.success
        assert result.error.code == VALIDATION_FAILED
        assert result.error.message == message

    def test_unknown_kind(self, scheduling):
        result = scheduling.create_schedule(_recurring(kind="weekly"))
        assert result.error.code == VALIDATION_FAILED

    def test_unknown_agent(self, scheduling):
        result = scheduling.create_schedule(_recurring(agent_id="agent_gone"))
        assert result.error.code == NOT_FOUND
        assert result.error.message == "Agent not found: agent_gone"

    def test_unknown_workflow(self, scheduling):
        result = scheduling.create_schedule(
            _recurring(target_type=TargetType.WORKFLOW, agent_id=None, workflow_id="wf_gone")
        )
        assert result.error.message == "Workflow not found: wf_gone"


class TestReadUpdateDelete:
    def test_list_newest_first_and_scoped(self, scheduling):
        first = scheduling.create_schedule(_recurring(name="first")).data
        second = scheduling.create_schedule(_recurring(name="second")).data
        scheduling.create_schedule(_recurring(user_id=OTHER_USER_ID, name="theirs"))

        listed = scheduling.list_schedules(USER_ID).data

        assert [s["id"] for s in listed] == [second["id"], first["id"]]

    def test_get_is_owner_scoped(self, scheduling, created):
        assert scheduling.get_schedule(USER_ID, created["id"]).data["name"] == "Daily digest"
        result = scheduling.get_schedule(OTHER_USER_ID, created["id"])
        assert result.error.code == NOT_FOUND
        assert result.error.message == "Schedule not found"

    def test_update_fields(self, scheduling, created):
        result = scheduling.update_schedule(
            USER_ID,
            created["id"],
            ScheduleUpdate(name="Evening digest", cron_expression="0 18 * * *", agent_id=EDITOR, enabled=False),
        )

        assert result.success
        assert result.data["name"] == "Evening digest"
        assert result.data["cron_expression"] == "0 18 * * *"
        assert result.data["agent_id"] == EDITOR
        assert result.data["enabled"] is False
        assert result.data["next_run_at"] is None

    def test_switch_to_one_off(self, scheduling, created):
        result = scheduling.update_schedule(
            USER_ID,
            created["id"],
            ScheduleUpdate(kind=ScheduleKind.ONE_OFF, run_at="2030-06-01T12:00:00+00:00"),
        )
        assert result.data["kind"] == "one-off"
        assert result.data["run_at"] == "2030-06-01T12:00:00+00:00"

    def test_switch_to_one_off_requires_run_at(self, scheduling, created):
        result = scheduling.update_schedule(USER_ID, created["id"], ScheduleUpdate(kind=ScheduleKind.ONE_OFF))
        assert result.error.message == "run_at is required for one-off schedules"

    def test_update_rejects_bad_values(self, scheduling, created):
        bad_cron = scheduling.update_schedule(USER_ID, created["id"], ScheduleUpdate(cron_expression="nope"))
        assert bad_cron.error.message == "Invalid cron expression: nope"
        bad_kind = scheduling.update_schedule(USER_ID, created["id"], ScheduleUpdate(kind="weekly"))
        assert bad_kind.error.message == "Invalid kind: weekly"
        bad_agent = scheduling.update_schedule(USER_ID, created["id"], ScheduleUpdate(agent_id="agent_gone"))
        assert bad_agent.error.code == NOT_FOUND

    def test_update_other_users_schedule(self, scheduling, created):
        result = scheduling.update_schedule(OTHER_USER_ID, created["id"], ScheduleUpdate(name="x"))
        assert result.error.code == NOT_FOUND

    def test_delete(self, scheduling, created):
        assert scheduling.delete_schedule(OTHER_USER_ID, created["id"]).error.code == NOT_FOUND
        assert scheduling.delete_schedule(USER_ID, created["id"]).data == {"deleted": True}
        assert scheduling.get_schedule(USER_ID, created["id"]).error.code == NOT_FOUND


class TestRunSchedule:
    @pytest.mark.asyncio
    async def test_queues_agent_run(self, scheduling, created, runs, agent_queue):
        result = await scheduling.run_schedule(USER_ID, created["id"])

        assert result.success
        data = result.data
        assert data["status"] == "queued"
        run = runs.get(data["runId"])
        assert run.status is RunStatus.QUEUED
        assert run.conversation_id == data["conversationId"]
        job = await agent_queue.get_job(data["runId"])
        assert job.data["agentId"] == WRITER
        assert job.data["conversationId"] == data["conversationId"]
        assert job.data["prompt"] == "Summarize the news for {{USER_NAME}}"

    @pytest.mark.asyncio
    async def test_reuses_schedule_conversation(self, scheduling, schedules):
        schedule = schedules.create(_recurring(conversation_id="conv_pinned"))
        result = await scheduling.run_schedule(USER_ID, schedule.id)
        assert result.data["conversationId"] == "conv_pinned"

    @pytest.mark.asyncio
    async def test_each_run_gets_its_own_conversation(self, scheduling, created):
        first = await scheduling.run_schedule(USER_ID, created["id"])
        second = await scheduling.run_schedule(USER_ID, created["id"])
        assert first.data["runId"] != second.data["runId"]
        assert first.data["conversationId"] != second.data["conversationId"]

    @pytest.mark.asyncio
    async def test_queues_workflow_run(self, scheduling, schedules, workflows, workflow_runs, workflow_queue):
        workflow = workflows.create(
            WorkflowCreate(
                user_id=USER_ID,
                name="wf",
                nodes=[WorkflowNode("a", agent_id=WRITER, prompt_id="prompt_draft")],
            )
        )
        schedule = schedules.create(
            _recurring(target_type=TargetType.WORKFLOW, agent_id=None, workflow_id=workflow.id)
        )

        result = await scheduling.run_schedule(USER_ID, schedule.id)

        run = workflow_runs.get(result.data["runId"])
        assert run.schedule_id == schedule.id
        assert run.conversation_id == result.data["conversationId"]
        job = await workflow_queue.get_job(run.id)
        assert job.data == {"runId": run.id, "workflowId": workflow.id, "userId": USER_ID}

    @pytest.mark.asyncio
    async def test_missing_workflow_fails_submission(self, scheduling, schedules):
        schedule = schedules.create(
            _recurring(target_type=TargetType.WORKFLOW, agent_id=None, workflow_id="wf_gone")
        )
        result = await scheduling.run_schedule(USER_ID, schedule.id)
        assert result.error.code == VALIDATION_FAILED
        assert result.error.message == "Workflow not found: wf_gone"

    @pytest.mark.asyncio
    async def test_unknown_schedule(self, scheduling):
        result = await scheduling.run_schedule(USER_ID, "sch_gone")
        assert result.error.message == "Schedule not found"

    @pytest.mark.asyncio
    async def test_degraded_dispatch_runs_in_process(
        self, schedules, runs, directory, conversations, workflows, workflow_runs, workflow_dispatcher, registry
    ):
        direct = AsyncMock()
        dispatcher = RunDispatcher("scheduled-agent-runs", None, direct)
        service = SchedulingService(
            schedules, runs, directory, conversations, workflows, workflow_runs,
            dispatcher, workflow_dispatcher, registry,
        )
        schedule = schedules.create(_recurring())

        result = await service.run_schedule(USER_ID, schedule.id)
        await dispatcher.drain()

        assert result.data["status"] == "queued"
        payload = direct.await_args.args[0]
        assert payload["runId"] == result.data["runId"]


class TestRuns:
    @pytest.mark.asyncio
    async def test_list_runs_with_schedule_summary(self, scheduling, created):
        for _ in range(3):
            await scheduling.run_schedule(USER_ID, created["id"])

        listed = scheduling.list_runs(USER_ID).data
        assert len(listed) == 3
        assert listed[0]["schedule"] == {"id": created["id"], "name": "Daily digest", "agent_id": WRITER}

        assert len(scheduling.list_runs(USER_ID, limit=0).data) == 1
        assert len(scheduling.list_runs(USER_ID, schedule_id=created["id"], limit=2).data) == 2
        assert scheduling.list_runs(OTHER_USER_ID).data == []

    def test_list_runs_for_foreign_schedule(self, scheduling, created):
        result = scheduling.list_runs(OTHER_USER_ID, schedule_id=created["id"])
        assert result.error.code == NOT_FOUND

    @pytest.mark.asyncio
    async def test_get_run_with_transcript(self, scheduling, created, conversations):
        queued = (await scheduling.run_schedule(USER_ID, created["id"])).data
        run = scheduling.get_run(USER_ID, queued["runId"]).data
        assert run["conversation"] is None
        assert run["messages"] == []

        conversations.ensure(queued["conversationId"], USER_ID, WRITER)
        conversations.add_message(
            Message(id="m1", conversation_id=queued["conversationId"], sender="User", text="hello")
        )
        run = scheduling.get_run(USER_ID, queued["runId"]).data
        assert run["conversation"]["id"] == queued["conversationId"]
        assert [m["text"] for m in run["messages"]] == ["hello"]

    @pytest.mark.asyncio
    async def test_get_run_is_owner_scoped(self, scheduling, created):
        queued = (await scheduling.run_schedule(USER_ID, created["id"])).data
        result = scheduling.get_run(OTHER_USER_ID, queued["runId"])
        assert result.error.message == "Run not found"
