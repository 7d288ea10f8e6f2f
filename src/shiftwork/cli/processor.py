"""
CLI: ``shiftwork processor`` — run the control loop.
"""

from __future__ import annotations

import typer

from shiftwork.cli.utils import console, load_settings, open_store

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between ticks"),
    batch_size: int = typer.Option(100, "--batch-size", help="Max instances per tick"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Advance job instances until interrupted (blocking).

    Example::

        shiftwork processor start --poll-interval 1
    """
    from shiftwork.engine.processor import Processor

    settings = load_settings(database_url)
    processor = Processor(
        open_store(settings),
        settings=settings,
        poll_interval=poll_interval,
        batch_size=batch_size,
    )
    console.print("[bold green]Starting processor[/bold green]")
    processor.start()
