"""
CLI: ``shiftwork job`` — trigger and operate job instances.
"""

from __future__ import annotations

import json
from typing import Any

import typer

from shiftwork.cli.utils import console, load_settings, open_store, output, reporting_errors

app = typer.Typer(no_args_is_help=True)

TOKEN_COLUMNS = ["id", "path", "status", "attempts", "message"]


def parse_assignments(pairs: list[str]) -> dict[str, Any]:
    """``KEY=VALUE`` pairs to a context dict; values that parse as JSON are decoded."""
    context: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}")
        try:
            context[key] = json.loads(raw)
        except json.JSONDecodeError:
            context[key] = raw
    return context


def _lifecycle(database_url: str | None):
    from shiftwork.engine.processor import build_lifecycle

    settings = load_settings(database_url)
    return open_store(settings), build_lifecycle(settings)


@app.command("trigger")
def trigger(
    definition_id: int = typer.Argument(..., help="Job definition id"),
    var: list[str] = typer.Option([], "--var", "-v", help="Context variable KEY=VALUE"),
    version: int | None = typer.Option(None, "--version", help="Script version (default: current)"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Create a job instance; a running processor picks it up.

    Example::

        shiftwork job trigger 3 --var DATE=2026-10-19 --var LIMIT=100
    """
    from shiftwork.api.schemas import instance_out
    from shiftwork.core.orm.session import session_scope

    context = parse_assignments(var)
    factory, lifecycle = _lifecycle(database_url)
    with reporting_errors(), session_scope(factory) as session:
        instance = lifecycle.trigger(session, definition_id, version=version, context=context)
        result = instance_out(instance)
    output(result, as_json=json_out, title=f"Job instance {result.id}")


def _operate(operation: str, instance_id: int, database_url: str | None, json_out: bool) -> None:
    from shiftwork.api.schemas import instance_out
    from shiftwork.core.orm.session import session_scope

    factory, lifecycle = _lifecycle(database_url)
    with reporting_errors(), session_scope(factory) as session:
        instance = getattr(lifecycle, operation)(session, lifecycle.get(session, instance_id))
        result = instance_out(instance)
    output(result, as_json=json_out, title=f"Job instance {result.id}")


@app.command("cancel")
def cancel(
    instance_id: int = typer.Argument(...),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Cancel an instance; running commands receive SIGTERM."""
    _operate("cancel", instance_id, database_url, json_out)


@app.command("retry")
def retry(
    instance_id: int = typer.Argument(...),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Re-run the failed steps of an errored instance."""
    _operate("retry", instance_id, database_url, json_out)


@app.command("skip")
def skip(
    instance_id: int = typer.Argument(...),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Mark the failed steps of an errored instance as skipped and continue."""
    _operate("skip", instance_id, database_url, json_out)


@app.command("show")
def show(
    instance_id: int = typer.Argument(...),
    logs: bool = typer.Option(False, "--logs", "-l", help="Also print the instance log"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show an instance and its token tree."""
    from shiftwork.api.schemas import LogOut, instance_out
    from shiftwork.core.orm.session import session_scope
    from shiftwork.engine.journal import instance_logs

    factory, lifecycle = _lifecycle(database_url)
    with reporting_errors(), session_scope(factory) as session:
        result = instance_out(lifecycle.get(session, instance_id))
        entries = [LogOut.model_validate(row) for row in instance_logs(session, instance_id)]

    if json_out:
        output(result, as_json=True)
        return
    output(result, title=f"Job instance {result.id}")
    output(result.tokens, title="Tokens", columns=TOKEN_COLUMNS)
    if logs:
        for entry in entries:
            stamp = f"{entry.created_at:%Y-%m-%d %H:%M:%S}"
            console.print(f"[dim]{stamp}[/dim] {entry.level:<7} {entry.message}")
