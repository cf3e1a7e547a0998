"""
CLI: ``taskq worker`` — run the processing engine.
"""

from __future__ import annotations

import time

import typer
from rich.markup import escape

from taskq.cli.utils import console, open_engine

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    workers: int | None = typer.Option(None, "--workers", "-w", min=1, help="Worker threads"),  # noqa: UP007
    drain: bool = typer.Option(False, "--drain", help="Exit once no work is queued, running or scheduled"),
    timeout: float | None = typer.Option(None, "--timeout", help="Give up draining after N seconds"),  # noqa: UP007
    poll: float | None = typer.Option(  # noqa: UP007
        None, "--poll", min=0.01, help="Seconds between store scans for QUEUED tasks (default from settings)"
    ),
    database: str | None = typer.Option(None, "--database", "-d"),  # noqa: UP007
) -> None:
    """Start workers, re-submit persisted QUEUED tasks, and process until stopped.

    Without ``--drain`` the store is re-scanned every ``--poll`` seconds, so
    tasks submitted or requeued from other processes are picked up.

    Example::

        taskq worker start --workers 8
        taskq worker start --drain --timeout 60
    """
    with open_engine(database, workers) as engine:
        recovered = engine.start()
        console.print(
            f"[bold green]Starting taskq worker[/bold green] "
            f"(threads={engine.dispatcher.worker_count}, recovered={recovered})"
        )
        try:
            if drain:
                if not engine.wait_idle(timeout):
                    console.print("[yellow]Drain timed out with work outstanding[/yellow]")
            else:
                interval = poll or engine.settings.poll_interval_seconds
                while True:
                    time.sleep(interval)
                    engine.recover_queued()
        except KeyboardInterrupt:
            console.print("\n[yellow]Worker stopped by user[/yellow]")

        snapshot = engine.metrics.snapshot()
        console.print(
            "  "
            + "  ".join(f"[cyan]{name}[/cyan]={int(value)}" for name, value in snapshot.items())
        )
        for line in engine.get_recent_events(limit=20):
            console.print(f"  [dim]{escape(line)}[/dim]")


@app.command("handlers")
def handlers() -> None:
    """List the built-in handler registry."""
    from taskq.core.settings import get_settings
    from taskq.execution.handlers import build_default_registry

    registry = build_default_registry(get_settings().handler)
    for entry in registry.list_handlers():
        console.print(f"  [bold]{entry['tag']}[/bold]  {entry['handler']}  [dim]{entry['description'] or ''}[/dim]")
    console.print(f"  [bold](default)[/bold]  {type(registry.default).__name__}")
