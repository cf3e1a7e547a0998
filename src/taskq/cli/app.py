"""
Root Typer application for the taskq CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from taskq.core.logging import configure_logging
from taskq.core.settings import get_settings

app = Typer(
    name="taskq",
    help="taskq — durable, retryable background task processing.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from taskq import __version__

        typer.echo(f"taskq {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override TASKQ_LOG_LEVEL."),  # noqa: UP007
) -> None:
    """taskq CLI — submit tasks, inspect them, and run workers."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.json_logs)


# ── Sub-command registration ─────────────────────────────────────────────

from taskq.cli.tasks import app as tasks_app  # noqa: E402
from taskq.cli.worker import app as worker_app  # noqa: E402

app.add_typer(tasks_app, name="tasks", help="Submit and inspect tasks.")
app.add_typer(worker_app, name="worker", help="Run the processing engine.")
