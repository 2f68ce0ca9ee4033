"""Tests for workflow definition and run operations."""

from __future__ import annotations

import pytest

from autorun.core.models import RunStatus
from autorun.execution.abort import CancellationToken
from autorun.ops.result import NOT_FOUND, VALIDATION_FAILED
from tests._support import EDITOR, OTHER_USER_ID, USER_ID, WRITER

NODES = [
    {"id": "draft", "agent_id": WRITER, "prompt_id": "prompt_draft"},
    {"id": "edit", "agent_id": EDITOR, "prompt_id": "prompt_edit", "selected_tools": []},
]
EDGES = [{"source": "draft", "target": "edit"}]


@pytest.fixture
def workflow(workflow_service):
    return workflow_service.create_workflow(USER_ID, "Newsletter", NODES, EDGES).data


class TestCreateWorkflow:
    def test_from_plain_dicts(self, workflow_service):
        result = workflow_service.create_workflow(USER_ID, " Newsletter ", NODES, EDGES)

        assert result.success
        assert result.warnings == []
        data = result.data
        assert data["name"] == "Newsletter"
        assert [n["id"] for n in data["nodes"]] == ["draft", "edit"]
        assert data["nodes"][1]["selected_tools"] == []
        assert data["edges"] == [{"source": "draft", "target": "edit", "feed_output_to_next": True}]

    def test_cycle_is_a_warning(self, workflow_service):
        edges = [{"source": "draft", "target": "edit"}, {"source": "edit", "target": "draft"}]
        result = workflow_service.create_workflow(USER_ID, "Loop", NODES, edges)

        assert result.success
        assert result.warnings == [
            "Step draft is part of a cycle and will not run",
            "Step edit is part of a cycle and will not run",
        ]

    @pytest.mark.parametrize(
        "nodes, edges, message",
        [
            ([], [], "Workflow has no steps"),
            ([NODES[0], NODES[0]], [], "Duplicate step id: draft"),
            ([{"id": "a", "agent_id": WRITER}], [], "All workflow steps must have a prompt and agent selected"),
            (NODES, [{"source": "draft", "target": "ghost"}], "Edge draft -> ghost references an unknown step"),
        ],
    )
    def test_invalid_definitions(self, workflow_service, nodes, edges, message):
        result = workflow_service.create_workflow(USER_ID, "wf", nodes, edges)
        assert result.error.code == VALIDATION_FAILED
        assert result.error.message == message

    def test_missing_references(self, workflow_service):
        missing_agent = workflow_service.create_workflow(
            USER_ID, "wf", [{"id": "a", "agent_id": "agent_gone", "prompt_id": "prompt_draft"}]
        )
        assert missing_agent.error.code == NOT_FOUND
        assert missing_agent.error.message == "Agent not found: agent_gone"

        missing_prompt = workflow_service.create_workflow(
            USER_ID, "wf", [{"id": "a", "agent_id": WRITER, "prompt_id": "prompt_gone"}]
        )
        assert missing_prompt.error.message == "Prompt source not found: prompt_gone"

    def test_malformed(self, workflow_service):
        result = workflow_service.create_workflow(USER_ID, "wf", [{"agent_id": WRITER}])
        assert result.error.code == VALIDATION_FAILED
        assert result.error.message.startswith("Malformed workflow definition")

    def test_name_required(self, workflow_service):
        assert workflow_service.create_workflow(USER_ID, "", NODES).error.message == "name is required"


class TestReadDelete:
    def test_list_and_get_are_owner_scoped(self, workflow_service, workflow):
        assert [w["id"] for w in workflow_service.list_workflows(USER_ID).data] == [workflow["id"]]
        assert workflow_service.list_workflows(OTHER_USER_ID).data == []
        assert workflow_service.get_workflow(USER_ID, workflow["id"]).data["name"] == "Newsletter"
        assert workflow_service.get_workflow(OTHER_USER_ID, workflow["id"]).error.message == "Workflow not found"

    def test_delete(self, workflow_service, workflow):
        assert workflow_service.delete_workflow(OTHER_USER_ID, workflow["id"]).error.code == NOT_FOUND
        assert workflow_service.delete_workflow(USER_ID, workflow["id"]).data == {"deleted": True}
        assert workflow_service.get_workflow(USER_ID, workflow["id"]).error.code == NOT_FOUND


class TestRuns:
    @pytest.mark.asyncio
    async def test_run_workflow_queues(self, workflow_service, workflow, workflow_runs, workflow_queue):
        result = await workflow_service.run_workflow(USER_ID, workflow["id"])

        data = result.data
        assert data["status"] == "queued"
        run = workflow_runs.get(data["runId"])
        assert run.status is RunStatus.QUEUED
        assert run.schedule_id is None
        assert run.conversation_id == data["conversationId"]
        job = await workflow_queue.get_job(run.id)
        assert job.data["workflowId"] == workflow["id"]

    @pytest.mark.asyncio
    async def test_run_foreign_workflow(self, workflow_service, workflow):
        result = await workflow_service.run_workflow(OTHER_USER_ID, workflow["id"])
        assert result.error.code == NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_and_get_runs(self, workflow_service, workflow):
        queued = (await workflow_service.run_workflow(USER_ID, workflow["id"])).data
        await workflow_service.run_workflow(USER_ID, workflow["id"])

        assert len(workflow_service.list_runs(USER_ID, workflow["id"]).data) == 2
        assert len(workflow_service.list_runs(USER_ID, workflow["id"], limit=1).data) == 1
        assert workflow_service.list_runs(OTHER_USER_ID, workflow["id"]).error.code == NOT_FOUND

        run = workflow_service.get_run(USER_ID, queued["runId"]).data
        assert run["status"] == "queued"
        assert run["messages"] == []
        assert workflow_service.get_run(OTHER_USER_ID, queued["runId"]).error.message == "Run not found"

    @pytest.mark.asyncio
    async def test_remove_pending(self, workflow_service, workflow, workflow_runs, workflow_queue):
        run_id = (await workflow_service.run_workflow(USER_ID, workflow["id"])).data["runId"]

        result = await workflow_service.remove_pending_run(USER_ID, run_id)

        assert result.data == {"removed": True}
        assert await workflow_queue.get_job(run_id) is None
        assert workflow_runs.get(run_id).status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_aborts_by_workflow_key(self, workflow_service, workflow, registry):
        run_id = (await workflow_service.run_workflow(USER_ID, workflow["id"])).data["runId"]
        token = CancellationToken()
        registry.register(f"workflow_{run_id}", token)

        result = await workflow_service.cancel_run(USER_ID, run_id)

        assert result.data["aborted"] is True
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_cancel_terminal(self, workflow_service, workflow, workflow_runs):
        run_id = (await workflow_service.run_workflow(USER_ID, workflow["id"])).data["runId"]
        workflow_runs.mark_failed(run_id, "boom")

        result = await workflow_service.cancel_run(USER_ID, run_id)

        assert result.error.message == "Run already failed"
