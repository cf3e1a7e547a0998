"""
CLI layer for taskq.

Provides a Typer application whose commands delegate to
:class:`~taskq.engine.TaskqEngine`. This package handles only terminal
transport: argument parsing, coloured output, and table formatting.

Entry point::

    taskq --help
"""

from taskq.cli.app import app

__all__ = ["app"]
