"""
Root Typer application for the ``autorun`` CLI.

Commands::

    autorun serve                      scheduler + queue workers (optionally the API)
    autorun schedule list|create|delete|run
    autorun runs list|cancel

Every command accepts ``--database`` and reads the rest of its settings
from ``AUTORUN_*`` environment variables.
"""

from __future__ import annotations

import asyncio
import signal

import typer

from autorun import __version__
from autorun.bootstrap import AutomationCore
from autorun.cli.utils import console, err_console, make_core, output_result
from autorun.core.models import ScheduleKind, TargetType
from autorun.core.repositories import ScheduleCreate

app = typer.Typer(
    name="autorun",
    help="autorun - scheduled agent runs and workflows.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
schedule_app = typer.Typer(no_args_is_help=True)
runs_app = typer.Typer(no_args_is_help=True)
app.add_typer(schedule_app, name="schedule", help="Schedule management.")
app.add_typer(runs_app, name="runs", help="Run history and cancellation.")

DatabaseOpt = typer.Option(None, "--database", "-d", help="SQLite database path")
UserOpt = typer.Option(..., "--user", "-u", envvar="AUTORUN_USER_ID", help="Owning user id")
JsonOpt = typer.Option(False, "--json", help="Print JSON instead of a table")
RuntimeOpt = typer.Option(
    None, "--runtime", envvar="AUTORUN_RUNTIME", help="Agent runtime factory, 'module:factory'"
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"autorun {__version__}")
        raise typer.Exit()


@app.callback()
def root(
    version: bool | None = typer.Option(
        None, "--version", "-V", help="Show version and exit.", callback=_version_callback, is_eager=True
    ),
) -> None:
    """autorun CLI: manage schedules and runs, or serve the scheduler."""


async def _close(core: AutomationCore) -> None:
    if core.redis is not None:
        await core.redis.aclose()
    core.conn.close()


# ── serve ────────────────────────────────────────────────────────────────


async def _serve_forever(core: AutomationCore) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await core.start()
    console.print(
        f"[bold green]autorun running[/bold green] "
        f"({'degraded, in-process' if core.degraded else 'redis queues'}); Ctrl+C to stop"
    )
    try:
        await stop.wait()
    finally:
        await core.stop()
        await _close(core)


@app.command("serve")
def serve(
    runtime: str | None = RuntimeOpt,
    api: bool = typer.Option(False, "--api/--no-api", help="Also serve the HTTP API"),
    host: str = typer.Option("127.0.0.1", "--host", help="API bind address"),
    port: int = typer.Option(8080, "--port", "-p", help="API bind port"),
    database: str | None = DatabaseOpt,
) -> None:
    """Run the scheduler tick and queue workers until interrupted."""
    core = make_core(database, runtime)
    if not api:
        asyncio.run(_serve_forever(core))
        return

    try:
        import uvicorn
    except ImportError as e:
        err_console.print("[red]uvicorn is required for --api.  Install with:  pip install autorun-core[serve][/red]")
        raise typer.Exit(code=1) from e

    from autorun.api.app import create_app

    console.print(f"[bold green]Starting autorun API[/bold green] on {host}:{port}")
    uvicorn.run(create_app(core, manage_lifecycle=True), host=host, port=port)


# ── schedule ─────────────────────────────────────────────────────────────


@schedule_app.command("list")
def list_schedules(
    user: str = UserOpt,
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """List the user's schedules with their next fire time."""
    core = make_core(database)
    try:
        result = core.scheduling.list_schedules(user)
    finally:
        core.conn.close()
    output_result(result, as_json=json_out, title="Schedules")


@schedule_app.command("create")
def create_schedule(
    name: str = typer.Argument(..., help="Schedule name"),
    user: str = UserOpt,
    agent: str | None = typer.Option(None, "--agent", help="Target agent id"),
    workflow: str | None = typer.Option(None, "--workflow", help="Target workflow id"),
    prompt: str = typer.Option("", "--prompt", help="Prompt template (agent schedules)"),
    cron: str | None = typer.Option(None, "--cron", help="Cron expression for a recurring schedule"),
    at: str | None = typer.Option(None, "--at", help="ISO fire time for a one-off schedule"),
    timezone: str = typer.Option("UTC", "--timezone", help="IANA timezone for the cron"),
    tools: list[str] | None = typer.Option(None, "--tool", help="Limit the run to these tools"),
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Create a recurring (--cron) or one-off (--at) schedule."""
    if bool(cron) == bool(at):
        err_console.print("[red]Pass exactly one of --cron or --at[/red]")
        raise typer.Exit(code=2)
    if bool(agent) == bool(workflow):
        err_console.print("[red]Pass exactly one of --agent or --workflow[/red]")
        raise typer.Exit(code=2)

    draft = ScheduleCreate(
        user_id=user,
        name=name,
        prompt=prompt,
        kind=ScheduleKind.RECURRING if cron else ScheduleKind.ONE_OFF,
        cron_expression=cron,
        run_at=at,
        timezone=timezone,
        target_type=TargetType.WORKFLOW if workflow else TargetType.AGENT,
        agent_id=agent,
        workflow_id=workflow,
        selected_tools=tools or None,
    )
    core = make_core(database)
    try:
        result = core.scheduling.create_schedule(draft)
    finally:
        core.conn.close()
    output_result(result, as_json=json_out, title="Schedule Created")


@schedule_app.command("delete")
def delete_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    user: str = UserOpt,
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Delete a schedule."""
    core = make_core(database)
    try:
        result = core.scheduling.delete_schedule(user, schedule_id)
    finally:
        core.conn.close()
    output_result(result, as_json=json_out, title="Schedule Deleted")


async def _run_now(core: AutomationCore, user: str, schedule_id: str):
    try:
        result = await core.scheduling.run_schedule(user, schedule_id)
        # Without a durable queue the run lives in this process; finish it before exiting.
        await core.agent_dispatcher.drain()
        await core.workflow_dispatcher.drain()
        return result
    finally:
        await _close(core)


@schedule_app.command("run")
def run_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    user: str = UserOpt,
    runtime: str | None = RuntimeOpt,
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Queue a schedule run now."""
    core = make_core(database, runtime)
    result = asyncio.run(_run_now(core, user, schedule_id))
    output_result(result, as_json=json_out, title="Run Queued")


# ── runs ─────────────────────────────────────────────────────────────────


@runs_app.command("list")
def list_runs(
    user: str = UserOpt,
    schedule: str | None = typer.Option(None, "--schedule", "-s", help="Only runs of this schedule"),
    limit: int = typer.Option(25, "--limit", "-n", help="Max runs (1-100)"),
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """List agent runs, newest first."""
    core = make_core(database)
    try:
        result = core.scheduling.list_runs(user, schedule_id=schedule, limit=limit)
    finally:
        core.conn.close()
    if result.success and not json_out:
        result.data = [
            {k: run.get(k) for k in ("id", "schedule_id", "status", "run_at", "error")} for run in result.data
        ]
    output_result(result, as_json=json_out, title="Runs")


async def _cancel(core: AutomationCore, user: str, run_id: str):
    try:
        if core.workflow_runs.get(run_id) is not None:
            return await core.workflow_service.cancel_run(user, run_id)
        return await core.scheduling.cancel_run(user, run_id)
    finally:
        await _close(core)


@runs_app.command("cancel")
def cancel_run(
    run_id: str = typer.Argument(..., help="Run ID (agent or workflow run)"),
    user: str = UserOpt,
    database: str | None = DatabaseOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Remove a pending run, or mark it cancelled."""
    core = make_core(database)
    result = asyncio.run(_cancel(core, user, run_id))
    output_result(result, as_json=json_out, title="Run Cancelled")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
