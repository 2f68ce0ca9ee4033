"""Tests for the ``autorun`` CLI."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from autorun import __version__
from autorun.cli.app import app
from autorun.core.models import Agent, User
from autorun.core.repositories import DirectoryRepository, RunRepository, ScheduleCreate, ScheduleRepository
from autorun.core.schema import connect
from tests._support import USER_ID, WRITER

runner = CliRunner()


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTORUN_REDIS_URL", raising=False)
    monkeypatch.delenv("AUTORUN_REQUIRE_REDIS", raising=False)
    monkeypatch.delenv("AUTORUN_RUNTIME", raising=False)
    monkeypatch.setattr("autorun.cli.utils.configure_logging", lambda *args, **kwargs: None)
    path = tmp_path / "autorun.db"
    conn = connect(str(path))
    directory = DirectoryRepository(conn)
    directory.add_user(User(id=USER_ID, name="Ada Lovelace", username="ada"))
    directory.add_agent(Agent(id=WRITER, name="Writer", author_id=USER_ID))
    conn.close()
    return str(path)


def invoke(db, *args):
    return runner.invoke(app, [*args, "--database", db, "--user", USER_ID])


def _create(db, *extra):
    return invoke(db, "schedule", "create", "Digest", "--agent", WRITER, "--prompt", "hi", *extra, "--json")


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestScheduleCommands:
    def test_create_and_list(self, db):
        created = _create(db, "--cron", "0 9 * * *")
        assert created.exit_code == 0, created.output
        schedule = json.loads(created.stdout)
        assert schedule["agent_id"] == WRITER
        assert schedule["kind"] == "recurring"

        listed = invoke(db, "schedule", "list", "--json")
        assert listed.exit_code == 0
        assert [s["id"] for s in json.loads(listed.stdout)] == [schedule["id"]]

    def test_create_one_off(self, db):
        result = _create(db, "--at", "2030-01-01T09:00:00+00:00")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["kind"] == "one-off"

    def test_create_needs_exactly_one_trigger(self, db):
        neither = _create(db)
        assert neither.exit_code == 2
        assert "exactly one of --cron or --at" in neither.output

        both = _create(db, "--cron", "0 9 * * *", "--at", "2030-01-01T09:00:00")
        assert both.exit_code == 2

    def test_create_needs_exactly_one_target(self, db):
        result = invoke(db, "schedule", "create", "Digest", "--cron", "0 9 * * *")
        assert result.exit_code == 2
        assert "exactly one of --agent or --workflow" in result.output

    def test_validation_error_exits_one(self, db):
        result = _create(db, "--cron", "not a cron")
        assert result.exit_code == 1
        assert "VALIDATION_FAILED" in result.output

    def test_delete(self, db):
        schedule_id = json.loads(_create(db, "--cron", "0 9 * * *").stdout)["id"]

        deleted = invoke(db, "schedule", "delete", schedule_id, "--json")
        assert deleted.exit_code == 0
        assert json.loads(deleted.stdout) == {"deleted": True}

        missing = invoke(db, "schedule", "delete", schedule_id)
        assert missing.exit_code == 1
        assert "Schedule not found" in missing.output

    def test_empty_list_renders(self, db):
        result = invoke(db, "schedule", "list")
        assert result.exit_code == 0
        assert "No items." in result.output


class TestRunCommands:
    def test_run_without_runtime_fails_the_run(self, db):
        schedule_id = json.loads(_create(db, "--cron", "0 9 * * *").stdout)["id"]

        queued = invoke(db, "schedule", "run", schedule_id, "--json")
        assert queued.exit_code == 0, queued.output
        run_id = json.loads(queued.stdout)["runId"]

        listed = invoke(db, "runs", "list", "--json")
        [run] = json.loads(listed.stdout)
        assert run["id"] == run_id
        assert run["status"] == "failed"
        assert run["error"] == "No agent runtime configured"

    def test_cancel_queued_run(self, db):
        conn = connect(db)
        schedule = ScheduleRepository(conn).create(
            ScheduleCreate(user_id=USER_ID, name="Digest", prompt="hi", cron_expression="0 9 * * *", agent_id=WRITER)
        )
        run = RunRepository(conn).create(schedule.id, USER_ID)
        conn.close()

        result = invoke(db, "runs", "cancel", run.id, "--json")

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"cancelled": True, "aborted": False, "removed": False}
        conn = connect(db)
        assert RunRepository(conn).get(run.id).error == "Cancelled by user"
        conn.close()

    def test_cancel_unknown_run(self, db):
        result = invoke(db, "runs", "cancel", "run_gone")
        assert result.exit_code == 1
        assert "Run not found" in result.output
