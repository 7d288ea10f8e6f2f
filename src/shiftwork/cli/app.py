"""
Root Typer application for the shiftwork CLI.

::

    shiftwork db init
    shiftwork definition create --name nightly --file nightly.yml
    shiftwork processor start
    shiftwork worker start --worker-id 1 --queue @default
    shiftwork job trigger 1 --var DATE=2026-10-19
    shiftwork serve
"""

from __future__ import annotations

import typer
from typer import Typer

from shiftwork import __version__

app = Typer(
    name="shiftwork",
    help="shiftwork: multi-worker batch-job scheduler.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version / logging callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"shiftwork {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override SHIFTWORK_LOG_LEVEL"),
    log_json: bool | None = typer.Option(None, "--log-json/--log-console"),
) -> None:
    """shiftwork CLI: definitions, instances, workers and the processor."""
    from shiftwork.core.logging import configure_logging
    from shiftwork.core.settings import get_settings

    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=log_json if log_json is not None else settings.log_json,
        service=f"shiftwork-{ctx.invoked_subcommand}" if ctx.invoked_subcommand else "shiftwork",
        echo_sql=settings.echo_sql,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from shiftwork.cli.db import app as db_app  # noqa: E402
from shiftwork.cli.definition import app as definition_app  # noqa: E402
from shiftwork.cli.job import app as job_app  # noqa: E402
from shiftwork.cli.processor import app as processor_app  # noqa: E402
from shiftwork.cli.serve import serve  # noqa: E402
from shiftwork.cli.worker import app as worker_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
app.add_typer(definition_app, name="definition", help="Job definitions.")
app.add_typer(job_app, name="job", help="Job instances.")
app.add_typer(worker_app, name="worker", help="Worker agents.")
app.add_typer(processor_app, name="processor", help="Instance processor.")
app.command("serve", help="Start the API server.")(serve)
