"""
CLI: ``shiftwork serve`` — start the API server.
"""

from __future__ import annotations

import typer

from shiftwork.cli.utils import console, load_settings


def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Start the shiftwork REST API server."""
    import uvicorn

    settings = load_settings()
    host = host or settings.host
    port = port or settings.port
    console.print(f"[bold green]Starting shiftwork API[/bold green] on {host}:{port}")
    uvicorn.run(
        "shiftwork.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
