"""
CLI: ``taskq tasks`` — submit and inspect tasks.

Commands here only touch the durable store. Submitted tasks stay QUEUED
until a ``taskq worker start`` process picks them up.
"""

from __future__ import annotations

import typer

from taskq.cli.utils import console, fail, open_engine, output_record, output_records
from taskq.execution.models import TaskStatus

app = typer.Typer(no_args_is_help=True)


@app.command()
def submit(
    task_type: str = typer.Argument(..., help="Task type tag, e.g. EMAIL or FAIL"),
    payload: str = typer.Argument("", help="Opaque payload handed to the handler"),
    max_retries: int | None = typer.Option(None, "--max-retries", "-r", min=0),  # noqa: UP007
    owner: str | None = typer.Option(None, "--owner", "-o"),  # noqa: UP007
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Persist a new QUEUED task."""
    with open_engine(database) as engine:
        record = engine.submit(payload, task_type, owner=owner, max_retries=max_retries)
    output_record(record, as_json=json_out, title="Submitted")


@app.command("show")
def show_task(
    task_id: str = typer.Argument(..., help="Task ID"),
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one task."""
    with open_engine(database) as engine:
        record = engine.service.get_task(task_id)
    if record is None:
        fail(f"task {task_id} not found")
    output_record(record, as_json=json_out, title=f"Task: {task_id}")


@app.command("list")
def list_tasks(
    status: TaskStatus | None = typer.Option(None, "--status", "-s", case_sensitive=False),  # noqa: UP007
    task_type: str | None = typer.Option(None, "--type", "-t"),  # noqa: UP007
    owner: str | None = typer.Option(None, "--owner", "-o"),  # noqa: UP007
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List tasks in submission order."""
    with open_engine(database) as engine:
        records = engine.service.list_tasks(status=status, task_type=task_type, owner=owner)
    output_records(records, as_json=json_out, title="Tasks")


@app.command()
def requeue(
    task_id: str = typer.Argument(..., help="Task ID"),
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
) -> None:
    """Move a FAILED task back to QUEUED with its attempts reset."""
    with open_engine(database) as engine:
        accepted = engine.manual_requeue(task_id)
    if not accepted:
        fail(f"task {task_id} is missing or not FAILED")
    console.print(f"[green]Requeued[/green] {task_id}")


@app.command()
def delete(
    task_id: str = typer.Argument(..., help="Task ID"),
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
) -> None:
    """Delete a task from the store and cache."""
    with open_engine(database) as engine:
        deleted = engine.service.delete_task(task_id)
    if not deleted:
        fail(f"task {task_id} not found")
    console.print(f"[green]Deleted[/green] {task_id}")


@app.command()
def counts(
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
) -> None:
    """Show how many tasks sit in each status."""
    with open_engine(database) as engine:
        by_status = engine.repository.count_by_status()
    for status, count in by_status.items():
        console.print(f"  [cyan]{status}[/cyan]: {count}")
