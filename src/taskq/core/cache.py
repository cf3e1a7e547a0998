"""
Advisory read-through cache for task records.

Manifesto:
    The durable store decides every status. The cache only shortens
    ``get_task`` reads, so a stale, missing or unreachable cache must never
    change an outcome. ``TaskCache`` wraps a key/value backend and logs and
    swallows backend errors instead of raising them into a processing cycle.

Architecture:
    ::

        CacheBackend (Protocol)          key/value, JSON-safe values, TTL
        ├── InMemoryCache  — single-process, bounded LRU, thread-safe
        └── RedisCache     — distributed, JSON strings with SETEX

        TaskCache(backend, ttl_seconds=600, prefix="task:")
            put(record) / get(id) -> TaskRecord | None / delete(id)

        NullTaskCache — same API, stores nothing (cache_backend=none)

Guardrails:
    ❌ DON'T: read status from the cache to decide a transition
    ✅ DO: treat ``get`` returning None as "ask the store"

Tags:
    cache, caching, redis, in-memory, ttl, taskq
"""

from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Protocol

from taskq.core.logging import get_logger

if TYPE_CHECKING:
    from redis import Redis

    from taskq.execution.models import TaskRecord

log = get_logger(__name__)


class CacheBackend(Protocol):
    """Key/value store with optional per-key TTL."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def clear(self) -> None: ...


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached. Worker threads share one
    instance, so every operation holds an internal lock.
    """

    def __init__(self, *, max_size: int = 10_000, default_ttl_seconds: int | None = 600):
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and time.monotonic() > expires_at:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (time.monotonic() + ttl) if ttl else None
        with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                self._store.popitem(last=False)
            self._store[key] = (value, expires_at)
            self._store.move_to_end(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._store)


# ------------------------------------------------------------------ #
# Redis Cache
# ------------------------------------------------------------------ #


class RedisCache:
    """Redis-backed distributed cache.

    Values are stored as JSON strings. Pass an existing client to share the
    connection pool with ``RedisDistributedLock``.

    Example:
        cache = RedisCache(redis.Redis.from_url(url), default_ttl_seconds=600)
        cache.set("task:Task-1", {"status": "QUEUED"})
    """

    def __init__(self, client: Redis, *, default_ttl_seconds: int | None = 600):
        self._client = client
        self._default_ttl = default_ttl_seconds

    @classmethod
    def from_url(cls, url: str, *, default_ttl_seconds: int | None = 600) -> RedisCache:
        import redis

        return cls(redis.Redis.from_url(url), default_ttl_seconds=default_ttl_seconds)

    def get(self, key: str) -> Any | None:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = json.dumps(value)
        if ttl:
            self._client.setex(key, ttl, serialized)
        else:
            self._client.set(key, serialized)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def clear(self) -> None:
        """Flush the current Redis database. Testing only."""
        self._client.flushdb()


# ------------------------------------------------------------------ #
# Task cache adapters
# ------------------------------------------------------------------ #


class TaskCache:
    """Stores ``TaskRecord`` snapshots under ``task:{id}``.

    Every backend failure is logged at WARNING and treated as a miss.
    """

    def __init__(self, backend: CacheBackend, *, ttl_seconds: int = 600, prefix: str = "task:"):
        self._backend = backend
        self._ttl = ttl_seconds
        self._prefix = prefix

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def key(self, task_id: str) -> str:
        return f"{self._prefix}{task_id}"

    def put(self, record: TaskRecord) -> None:
        try:
            self._backend.set(self.key(record.id), record.to_dict(), ttl_seconds=self._ttl)
        except Exception as exc:
            log.warning("cache_put_failed", task_id=record.id, error=str(exc))

    def get(self, task_id: str) -> TaskRecord | None:
        from taskq.execution.models import TaskRecord

        try:
            data = self._backend.get(self.key(task_id))
        except Exception as exc:
            log.warning("cache_get_failed", task_id=task_id, error=str(exc))
            return None
        if data is None:
            return None
        try:
            return TaskRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("cache_entry_invalid", task_id=task_id, error=str(exc))
            return None

    def delete(self, task_id: str) -> None:
        try:
            self._backend.delete(self.key(task_id))
        except Exception as exc:
            log.warning("cache_delete_failed", task_id=task_id, error=str(exc))


class NullTaskCache:
    """Cache that never holds anything."""

    def put(self, record: TaskRecord) -> None:
        return None

    def get(self, task_id: str) -> TaskRecord | None:
        return None

    def delete(self, task_id: str) -> None:
        return None


__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "NullTaskCache",
    "RedisCache",
    "TaskCache",
]
