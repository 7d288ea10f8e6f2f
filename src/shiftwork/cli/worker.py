"""
CLI: ``shiftwork worker`` — run and manage worker agents.
"""

from __future__ import annotations

import typer

from shiftwork.cli.utils import console, load_settings, open_store, output, reporting_errors

app = typer.Typer(no_args_is_help=True)

WORKER_COLUMNS = ["id", "hostname", "worker_id", "queue", "working", "execution_id", "suspended"]


@app.command("start")
def start(
    worker_id: int = typer.Option(0, "--worker-id", "-i", help="Number of this agent on the host"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to claim from"),
    hostname: str | None = typer.Option(None, "--hostname", help="Override the host identity"),
    suspendable: bool = typer.Option(False, "--suspendable", help="Allow operators to suspend"),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Idle wait, seconds"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Start one worker agent (blocking).

    Example::

        shiftwork worker start --worker-id 1 --queue @default
        shiftwork worker start -i 2 -q heavy --suspendable
    """
    from shiftwork.worker.agent import WorkerAgent

    settings = load_settings(database_url)
    agent = WorkerAgent(
        open_store(settings),
        worker_id=worker_id,
        queue=queue,
        hostname=hostname,
        settings=settings,
        suspendable=suspendable,
        poll_interval=poll_interval,
    )
    console.print(
        f"[bold green]Starting worker[/bold green] {agent.name} (queue={agent.queue})"
    )
    with reporting_errors():
        agent.start()


@app.command("list")
def list_workers(
    hostname: str | None = typer.Option(None, "--hostname"),
    queue: str | None = typer.Option(None, "--queue", "-q"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List registered workers."""
    from shiftwork.api.schemas import WorkerOut
    from shiftwork.core.orm.session import session_scope
    from shiftwork.worker.registry import WorkerRegistry

    with session_scope(open_store(load_settings(database_url))) as session:
        workers = WorkerRegistry().list(session, hostname=hostname, queue=queue)
        rows = [WorkerOut.model_validate(worker) for worker in workers]
    output(rows, as_json=json_out, title="Workers", columns=WORKER_COLUMNS)


def _set_suspended(worker_pk: int, suspended: bool, database_url: str | None) -> None:
    from shiftwork.core.orm.session import session_scope
    from shiftwork.worker.registry import WorkerRegistry

    registry = WorkerRegistry()
    with reporting_errors(), session_scope(open_store(load_settings(database_url))) as session:
        worker = registry.get(session, worker_pk)
        if suspended:
            registry.suspend(session, worker)
        else:
            registry.resume(session, worker)
        name = f"{worker.hostname}:{worker.worker_id}"
    console.print(f"[green]{name} {'suspended' if suspended else 'resumed'}[/green]")


@app.command("suspend")
def suspend(
    worker_pk: int = typer.Argument(..., help="Worker row id (see `worker list`)"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Stop a suspendable worker from claiming new executions."""
    _set_suspended(worker_pk, True, database_url)


@app.command("resume")
def resume(
    worker_pk: int = typer.Argument(..., help="Worker row id (see `worker list`)"),
    database_url: str | None = typer.Option(None, "--database-url", "-d"),
) -> None:
    """Let a suspended worker claim again."""
    _set_suspended(worker_pk, False, database_url)
