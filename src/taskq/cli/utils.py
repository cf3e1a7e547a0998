"""
CLI utility helpers — engine construction and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from taskq.core.settings import TaskqSettings, get_settings
from taskq.engine import TaskqEngine, build_engine
from taskq.execution.models import TaskRecord

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    "QUEUED": "yellow",
    "INPROGRESS": "cyan",
    "COMPLETED": "green",
    "FAILED": "red",
}


# ── Engine helper ────────────────────────────────────────────────────────


def load_settings(database: str | None = None, workers: int | None = None) -> TaskqSettings:
    """``get_settings()`` with command-line overrides applied."""
    settings = get_settings()
    updates: dict[str, Any] = {}
    if database:
        updates["database_url"] = database
    if workers:
        updates["worker_count"] = workers
    return settings.model_copy(update=updates) if updates else settings


@contextmanager
def open_engine(database: str | None = None, workers: int | None = None) -> Iterator[TaskqEngine]:
    """Build an engine for one command and shut it down afterwards."""
    engine = build_engine(load_settings(database, workers))
    try:
        yield engine
    finally:
        engine.shutdown(grace_seconds=0)


def fail(message: str, code: int = 1) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def _styled_status(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def output_record(record: TaskRecord, *, as_json: bool = False, title: str = "") -> None:
    data = record.to_dict()
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for key, value in data.items():
        shown = _styled_status(value) if key == "status" else value
        console.print(f"  [cyan]{key}[/cyan]: {shown}")


def output_records(records: list[TaskRecord], *, as_json: bool = False, title: str = "") -> None:
    if as_json:
        console.print_json(json.dumps([r.to_dict() for r in records], default=str))
        return
    if not records:
        console.print("[dim]No tasks.[/dim]")
        return

    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for column in ("id", "type", "status", "attempts", "max_retries", "owner", "created_at"):
        table.add_column(column, overflow="fold")
    for record in records:
        table.add_row(
            record.id,
            record.type,
            _styled_status(record.status.value),
            str(record.attempts),
            str(record.max_retries),
            record.owner or "",
            record.created_at.isoformat(timespec="seconds"),
        )
    console.print(table)
