"""
CLI: ``shiftwork definition`` — create and edit job definitions.
"""

from __future__ import annotations

from pathlib import Path

import typer

from shiftwork.cli.utils import console, load_settings, open_store, output, reporting_errors

app = typer.Typer(no_args_is_help=True)

DEFINITION_COLUMNS = ["id", "name", "version", "suspended", "prevent_multi", "api_allowed"]


@app.command("create")
def create(
    name: str = typer.Option(..., "--name", "-n"),
    script_file: Path = typer.Option(..., "--file", "-f", exists=True, dir_okay=False, help="YAML script"),
    description: str = typer.Option("", "--description"),
    prevent_multi: int = typer.Option(1, "--prevent-multi", min=0, help="Concurrent instances, 0 = unlimited"),
    api_allowed: bool = typer.Option(False, "--api-allowed", help="Allow REST triggers"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Create a definition from a YAML script file."""
    from shiftwork.api.schemas import DefinitionOut
    from shiftwork.core.orm.session import session_scope
    from shiftwork.definitions import DefinitionService

    with reporting_errors(), session_scope(open_store(load_settings(database_url))) as session:
        definition = DefinitionService().create(
            session,
            name=name,
            script=script_file.read_text(encoding="utf-8"),
            description=description,
            prevent_multi=prevent_multi,
            api_allowed=api_allowed,
        )
        result = DefinitionOut.model_validate(definition)
    output(result, as_json=json_out, title=f"Job definition {result.id}")


@app.command("edit-script")
def edit_script(
    definition_id: int = typer.Argument(...),
    script_file: Path = typer.Option(..., "--file", "-f", exists=True, dir_okay=False),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Replace the script; the version is bumped when it changed."""
    from shiftwork.core.orm.session import session_scope
    from shiftwork.definitions import DefinitionService

    with reporting_errors(), session_scope(open_store(load_settings(database_url))) as session:
        definition = DefinitionService().update(
            session, definition_id, {"script": script_file.read_text(encoding="utf-8")}
        )
        version = definition.version
    console.print(f"[green]Job definition {definition_id} at version {version}[/green]")


@app.command("suspend")
def suspend(
    definition_id: int = typer.Argument(...),
    resume: bool = typer.Option(False, "--resume", help="Lift the suspension instead"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Hold back new commands of a definition (already-claimed ones keep running)."""
    from shiftwork.core.orm.session import session_scope
    from shiftwork.definitions import DefinitionService

    with reporting_errors(), session_scope(open_store(load_settings(database_url))) as session:
        DefinitionService().update(session, definition_id, {"suspended": not resume})
    console.print(f"[green]Job definition {definition_id} {'resumed' if resume else 'suspended'}[/green]")


@app.command("list")
def list_definitions(
    name: str | None = typer.Option(None, "--name", "-n", help="Substring filter"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List job definitions."""
    from shiftwork.api.schemas import DefinitionOut
    from shiftwork.core.orm.session import session_scope
    from shiftwork.definitions import DefinitionService

    with session_scope(open_store(load_settings(database_url))) as session:
        rows = [
            DefinitionOut.model_validate(d) for d in DefinitionService().list(session, name=name)
        ]
    output(rows, as_json=json_out, title="Job definitions", columns=DEFINITION_COLUMNS)
