"""
CLI helpers: core construction and output rendering.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from autorun.bootstrap import AutomationCore, create_core
from autorun.core.logging import configure_logging
from autorun.core.settings import AutorunSettings
from autorun.execution.runtime import AgentRuntime, UnconfiguredRuntime, load_runtime
from autorun.ops.result import OperationResult

console = Console()
err_console = Console(stderr=True)


def make_core(database: str | None = None, runtime: str | None = None) -> AutomationCore:
    """Build a core from the environment, with CLI overrides."""
    overrides: dict[str, Any] = {}
    if database:
        overrides["database_path"] = Path(database)
    settings = AutorunSettings(**overrides)
    configure_logging(settings.log_level, settings.log_json, settings.service_name, stream=sys.stderr)
    agent_runtime: AgentRuntime = load_runtime(runtime) if runtime else UnconfiguredRuntime()
    return create_core(settings, agent_runtime)


# ── Output helpers ───────────────────────────────────────────────────────


def output_result(result: OperationResult, *, as_json: bool = False, title: str = "") -> None:
    """Render an ``OperationResult``; exits with code 1 on failure."""
    if not result.success:
        err = result.error
        err_console.print(f"[bold red]Error[/bold red] ({err.code}): {err.message}")
        raise typer.Exit(code=1)

    for warning in result.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")

    data = result.data
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(data, title=title)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    text = str(value)
    return text if len(text) <= 60 else text[:57] + "..."


def _print_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    columns = list(rows[0].keys())
    table = Table(title=title or None, show_lines=False)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(_cell(row.get(c)) for c in columns))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    table = Table(title=title or None, show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    for key, value in data.items():
        table.add_row(str(key), _cell(value))
    console.print(table)
