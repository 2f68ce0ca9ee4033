"""Tests for the Agent Run Executor."""

from __future__ import annotations

import asyncio

import pytest

from autorun.core.errors import ExecutionError
from autorun.core.models import RunStatus
from autorun.core.repositories import ScheduleCreate
from autorun.execution.executor import AgentRunExecutor, AgentRunJob, classify_failure, run_title
from autorun.execution.runtime import Failed
from tests._support import USER_ID, WRITER
from tests._support.fakes import FakeRuntime


@pytest.fixture
def schedule(schedules, directory):
    return schedules.create(
        ScheduleCreate(
            user_id=USER_ID,
            name="Morning digest",
            prompt="Good morning {{USER_NAME}}, it is {{date}}",
            cron_expression="0 9 * * *",
            agent_id=WRITER,
            selected_tools=["search"],
        )
    )


@pytest.fixture
def make_executor(runs, schedules, directory, conversations, registry):
    def factory(runtime, timeout_seconds=None):
        return AgentRunExecutor(
            runs, schedules, directory, conversations, runtime, registry, timeout_seconds=timeout_seconds
        )

    return factory


@pytest.fixture
def job(runs, schedule):
    run = runs.create(schedule.id, USER_ID, conversation_id="conv_1")
    return AgentRunJob(
        run_id=run.id,
        schedule_id=schedule.id,
        user_id=USER_ID,
        agent_id=WRITER,
        prompt=schedule.prompt,
        conversation_id="conv_1",
        selected_tools=["search"],
    )


class TestPayload:
    def test_round_trip_keys(self, job):
        payload = job.to_payload()
        assert payload["runId"] == job.run_id
        assert payload["selectedTools"] == ["search"]
        assert AgentRunJob.from_payload(payload) == job

    def test_optional_fields_omitted(self):
        payload = AgentRunJob("r", "s", "u", "a", "p").to_payload()
        assert "conversationId" not in payload
        assert "selectedTools" not in payload


class TestClassifyFailure:
    def test_cases(self):
        from autorun.core.errors import RunCancelledError, ValidationError

        assert classify_failure(RunCancelledError(), False) == ("Cancelled by user", False)
        assert classify_failure(ValidationError("bad"), False) == ("bad", False)
        assert classify_failure(ExecutionError("flaky"), False) == ("flaky", True)
        assert classify_failure(ExecutionError("flaky"), True) == ("flaky", False)
        assert classify_failure(RuntimeError(), False) == ("RuntimeError", True)


class TestSuccess:
    @pytest.mark.asyncio
    async def test_runs_and_records(self, make_executor, runtime, job, runs, schedules, conversations, registry):
        result = await make_executor(runtime).execute(job)

        assert result.success
        assert result.conversation_id == "conv_1"
        request = runtime.requests[0]
        assert request.text.startswith("Good morning Ada Lovelace, it is ")
        assert request.selected_tools == ["search"]
        assert request.workflow_triggered is False
        assert runs.get(job.run_id).status is RunStatus.SUCCESS
        schedule = schedules.get(job.schedule_id)
        assert schedule.last_run_status is RunStatus.SUCCESS
        conversation = conversations.get("conv_1")
        assert f"run:{job.run_id}" in conversation.tags
        assert conversation.title.startswith("Morning digest - ")
        assert conversation.title.endswith("UTC (Writer)")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_terminal_run_is_skipped(self, make_executor, runtime, job, runs):
        runs.mark_failed(job.run_id, "Cancelled by user")
        result = await make_executor(runtime).execute(job)
        assert result.skipped is True
        assert result.error == "Cancelled by user"
        assert runtime.requests == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_agent_fails_without_retry(self, make_executor, runtime, job, runs):
        job.agent_id = "agent_gone"
        result = await make_executor(runtime).execute(job, final_attempt=False)
        assert result.status is RunStatus.FAILED
        assert result.error == "Agent not found: agent_gone"
        assert runs.get(job.run_id).error == "Agent not found: agent_gone"

    @pytest.mark.asyncio
    async def test_retryable_failure_reraises_and_stays_running(self, make_executor, job, runs):
        runtime = FakeRuntime(outcomes=[Failed("model overloaded")])
        with pytest.raises(ExecutionError):
            await make_executor(runtime).execute(job, final_attempt=False)
        assert runs.get(job.run_id).status is RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_final_attempt_records_failure(self, make_executor, job, runs, schedules):
        runtime = FakeRuntime(outcomes=[Failed("model overloaded")])
        result = await make_executor(runtime).execute(job, final_attempt=True)
        assert result.error == "model overloaded"
        assert runs.get(job.run_id).status is RunStatus.FAILED
        assert schedules.get(job.schedule_id).last_run_status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_resumes_same_run(self, make_executor, job, runs):
        runtime = FakeRuntime(outcomes=[Failed("flaky"), None])
        executor = make_executor(runtime)
        with pytest.raises(ExecutionError):
            await executor.execute(job, final_attempt=False)
        result = await executor.execute(job, final_attempt=True)
        assert result.success
        assert runs.get(job.run_id).status is RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_missing_completion_signal(self, make_executor, job, runs):
        runtime = FakeRuntime(missing_completion=True)
        result = await make_executor(runtime).execute(job)
        assert result.error == "No completion signal"

    @pytest.mark.asyncio
    async def test_timeout_is_recorded(self, make_executor, job, runs):
        runtime = FakeRuntime(block=True)
        result = await make_executor(runtime, timeout_seconds=0.05).execute(job)
        assert result.status is RunStatus.FAILED
        assert result.error == "Run timed out after 0.05s"
        assert runs.get(job.run_id).status is RunStatus.FAILED


class TestAbandon:
    def test_marks_open_run_failed(self, make_executor, runtime, job, runs, schedules):
        assert make_executor(runtime).abandon(job, "Job timed out") is True

        run = runs.get(job.run_id)
        assert run.status is RunStatus.FAILED
        assert run.error == "Job timed out"
        assert schedules.get(job.schedule_id).last_run_status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_leaves_finished_run_alone(self, make_executor, runtime, job, runs):
        executor = make_executor(runtime)
        await executor.execute(job)

        assert executor.abandon(job, "Job stalled") is False
        assert runs.get(job.run_id).status is RunStatus.SUCCESS


class TestCancellation:
    @pytest.mark.asyncio
    async def test_abort_mid_flight(self, make_executor, job, runs, registry):
        runtime = FakeRuntime(block=True)
        task = asyncio.create_task(make_executor(runtime).execute(job, final_attempt=False))
        await asyncio.wait_for(runtime.started.wait(), timeout=1)

        assert registry.abort(job.run_id) is True
        result = await asyncio.wait_for(task, timeout=1)

        assert result.error == "Cancelled by user"
        assert runs.get(job.run_id).status is RunStatus.FAILED
        assert runs.get(job.run_id).error == "Cancelled by user"
        assert registry.is_registered(job.run_id) is False


def test_run_title():
    from datetime import UTC, datetime

    at = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
    assert run_title("Digest", at) == "Digest - 2026-01-05 09:00 UTC"
    assert run_title("", at, "Writer") == "Scheduled run - 2026-01-05 09:00 UTC (Writer)"
