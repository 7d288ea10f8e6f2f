"""
CLI utility helpers — store access, error reporting and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import sessionmaker

from shiftwork.core.errors import ShiftworkError
from shiftwork.core.orm.session import (
    ShiftworkSession,
    create_shiftwork_engine,
    shiftwork_session_factory,
)
from shiftwork.core.settings import ShiftworkSettings, get_settings

console = Console()
err_console = Console(stderr=True)


# ── Store helpers ────────────────────────────────────────────────────────


def load_settings(database_url: str | None = None) -> ShiftworkSettings:
    """Cached settings, with ``--database-url`` taking precedence."""
    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    return settings


def open_store(settings: ShiftworkSettings) -> sessionmaker[ShiftworkSession]:
    engine = create_shiftwork_engine(settings.database_url, echo=settings.echo_sql)
    return shiftwork_session_factory(engine)


@contextmanager
def reporting_errors() -> Iterator[None]:
    """Turn a :class:`ShiftworkError` into a red message and exit code 1."""
    try:
        yield
    except ShiftworkError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        raise typer.Exit(code=1) from exc


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "", columns: list[str] | None = None):
    """Render a model or a list of models as JSON, a table or key-value pairs."""
    if as_json:
        payload = [_to_dict(d) for d in data] if isinstance(data, list) else _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return
    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table([_to_dict(d) for d in data], title=title, columns=columns)
    else:
        _print_dict(_to_dict(data), title=title)


def _print_table(rows: list[dict[str, Any]], *, title: str, columns: list[str] | None) -> None:
    columns = columns or list(rows[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in columns:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if row.get(col) is None else str(row.get(col)) for col in columns))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        if isinstance(v, list):
            continue
        console.print(f"  [cyan]{k}[/cyan]: {v}")
