"""Handler Registry — task-type tag → handler lookup with a mandatory default.

Manifesto:
The orchestrator needs to resolve ``"EMAIL"`` to something it can call,
and it must never fail with "handler not found": unknown tags run the
default handler. New task types add a registry entry; dispatch code never
grows a conditional chain.

ARCHITECTURE
────────────
::

    HandlerRegistry(default_handler)
      ├── .register(tag, handler)   ─ store handler (replaces existing)
      ├── .resolve(tag)             ─ lookup, falls back to default
      ├── .has(tag)                 ─ explicit registration check
      ├── .unregister(tag)
      ├── .set_default(handler)
      └── .list_handlers()          ─ registered tags with metadata

    register_handler(tag, registry)  ─ decorator for plain functions

BEST PRACTICES
──────────────
- Handlers only execute work. They signal failure by raising
  ``TaskProcessingError`` and never touch the store, the lock, or retries.
- Build a fresh registry per test (see ``build_default_registry``).

Related modules:
    handlers.py   — built-in handlers and ``build_default_registry``
    processing.py — resolves a handler per claimed task
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from .models import Task, TaskType, type_tag


@runtime_checkable
class TaskHandler(Protocol):
    """A unit of work for one task type."""

    def handle(self, task: Task) -> None:
        """Execute *task*; raise ``TaskProcessingError`` on failure."""
        ...


class FunctionHandler:
    """Adapts a plain ``fn(task)`` to the ``TaskHandler`` protocol."""

    def __init__(self, func: Callable[[Task], Any]):
        self.func = func
        self.__doc__ = func.__doc__

    def handle(self, task: Task) -> None:
        self.func(task)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


def _first_line(doc: str | None) -> str | None:
    lines = (doc or "").strip().splitlines()
    return lines[0] if lines else None


def as_handler(handler: TaskHandler | Callable[[Task], Any]) -> TaskHandler:
    if isinstance(handler, TaskHandler):
        return handler
    if callable(handler):
        return FunctionHandler(handler)
    raise TypeError(f"Not a task handler: {handler!r}")


class HandlerRegistry:
    """Injectable, thread-safe handler registry.

    Example:
        >>> registry = HandlerRegistry(DefaultHandler(settings, sleeper))
        >>> registry.register(TaskType.EMAIL, EmailHandler(settings, sleeper))
        >>> registry.resolve("EMAIL").handle(task)
        >>> registry.resolve("UNKNOWN")  # default handler
    """

    def __init__(self, default_handler: TaskHandler | Callable[[Task], Any]):
        if default_handler is None:
            raise ValueError("HandlerRegistry requires a default handler")
        self._default = as_handler(default_handler)
        self._handlers: dict[str, TaskHandler] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def register(
        self,
        tag: TaskType | str,
        handler: TaskHandler | Callable[[Task], Any],
        description: str | None = None,
    ) -> None:
        """Register *handler* for *tag*, replacing any previous one."""
        key = type_tag(tag)
        wrapped = as_handler(handler)
        with self._lock:
            self._handlers[key] = wrapped
            self._metadata[key] = {
                "tag": key,
                "handler": type(wrapped).__name__,
                "description": description or _first_line(wrapped.__doc__),
            }

    def resolve(self, tag: TaskType | str) -> TaskHandler:
        """Return the handler for *tag*, or the default handler."""
        with self._lock:
            return self._handlers.get(type_tag(tag), self._default)

    def has(self, tag: TaskType | str) -> bool:
        with self._lock:
            return type_tag(tag) in self._handlers

    def unregister(self, tag: TaskType | str) -> bool:
        """Remove the handler for *tag*. Returns False if none was registered."""
        key = type_tag(tag)
        with self._lock:
            if key not in self._handlers:
                return False
            del self._handlers[key]
            self._metadata.pop(key, None)
            return True

    @property
    def default(self) -> TaskHandler:
        with self._lock:
            return self._default

    def set_default(self, handler: TaskHandler | Callable[[Task], Any]) -> None:
        if handler is None:
            raise ValueError("default handler cannot be None")
        wrapped = as_handler(handler)
        with self._lock:
            self._default = wrapped

    def list_handlers(self) -> list[dict[str, Any]]:
        """Registered handlers sorted by tag, for the CLI and docs."""
        with self._lock:
            return [dict(self._metadata[key]) for key in sorted(self._metadata)]

    def __contains__(self, tag: object) -> bool:
        return isinstance(tag, (str, TaskType)) and self.has(tag)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


# === DECORATOR API ===


def register_handler(
    tag: TaskType | str,
    registry: HandlerRegistry,
    description: str | None = None,
):
    """Decorator to register a function as the handler for *tag*.

    Example:
        >>> @register_handler("THUMBNAIL", registry)
        ... def make_thumbnail(task):
        ...     render(task.payload)
    """

    def decorator(func: Callable[[Task], Any]) -> Callable[[Task], Any]:
        registry.register(tag, func, description=description)
        return func

    return decorator


__all__ = [
    "FunctionHandler",
    "HandlerRegistry",
    "TaskHandler",
    "as_handler",
    "register_handler",
]
