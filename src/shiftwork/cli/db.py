"""
CLI: ``shiftwork db`` — database management commands.
"""

from __future__ import annotations

import typer

from shiftwork.cli.utils import console, load_settings, open_store

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database_url: str | None = typer.Option(None, "--database-url", "-d", help="SQLAlchemy URL"),
) -> None:
    """Create the scheduler tables (idempotent)."""
    from shiftwork.core.orm.session import init_db

    settings = load_settings(database_url)
    factory = open_store(settings)
    init_db(factory.kw["bind"])
    console.print(f"[green]Tables ready[/green] in {settings.database_url}")
