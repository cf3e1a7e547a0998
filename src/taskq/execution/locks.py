"""Distributed Lock — token-fenced mutual exclusion with TTL.

WHY
───
The claim step already stops two workers from moving the same task out of
QUEUED. The lock is a second, time-bounded guard around handler execution:
it bounds how long a claimed task may actively run before another holder
is allowed in, and it survives across process instances.

ARCHITECTURE
────────────
::

    DistributedLock (Protocol)
      ├── .try_lock(key, ttl_ms)   ─ token or None, set-if-absent with expiry
      ├── .unlock(key, token)      ─ compare-and-delete, True if released
      ├── .is_locked(key)
      └── .holder(key)             ─ current token or None

    lock_or_raise(lock, key, ttl_ms)  ─ token, or LockUnavailableError

    RedisDistributedLock(client)      SET NX PX + Lua compare-and-delete
    DatabaseDistributedLock(engine)   taskq_locks row, INSERT-or-conflict
    InMemoryDistributedLock()         dict + threading.Lock, single process

    Lock key convention: "task:lock:{task_id}"

BEST PRACTICES
──────────────
- Always unlock in a ``finally`` with the token ``try_lock`` returned.
- Size the TTL to the longest expected handler run. Expiry does not stop
  the handler; it only lets another holder acquire the key.

Related modules:
    processing.py  — acquires after claim, releases in ``finally``

Example::

    lock = RedisDistributedLock(redis.Redis.from_url(url))
    token = lock.try_lock("task:lock:Task-1", ttl_ms=2000)
    if token is not None:
        try:
            run_handler()
        finally:
            lock.unlock("task:lock:Task-1", token)
"""

from __future__ import annotations

import threading
import time
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import redis
from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from taskq.core.database import LockTable
from taskq.core.errors import CoordinationError, LockUnavailableError
from taskq.core.logging import get_logger

if TYPE_CHECKING:
    from redis import Redis

log = get_logger(__name__)

# Deletes the key only while it still holds the caller's token.
UNLOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def new_token() -> str:
    return str(uuid.uuid4())


@runtime_checkable
class DistributedLock(Protocol):
    """Token-fenced lock contract shared by every backend."""

    def try_lock(self, key: str, ttl_ms: int) -> str | None:
        """Set *key* to a fresh token if absent, expiring after *ttl_ms*."""
        ...

    def unlock(self, key: str, token: str) -> bool:
        """Delete *key* only if it still holds *token*."""
        ...

    def is_locked(self, key: str) -> bool: ...

    def holder(self, key: str) -> str | None: ...


def _validate_ttl(ttl_ms: int) -> None:
    if ttl_ms <= 0:
        raise ValueError("ttl_ms must be positive")


def lock_or_raise(lock: DistributedLock, key: str, ttl_ms: int) -> str:
    """Acquire *key* or raise :class:`LockUnavailableError` if another holder has it."""
    token = lock.try_lock(key, ttl_ms)
    if token is None:
        raise LockUnavailableError(key, context={"ttl_ms": ttl_ms})
    return token


# ------------------------------------------------------------------ #
# Redis
# ------------------------------------------------------------------ #


class RedisDistributedLock:
    """Lock backed by Redis ``SET NX PX`` and a Lua release script."""

    def __init__(self, client: Redis):
        self._client = client
        self._unlock_script = client.register_script(UNLOCK_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> RedisDistributedLock:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def try_lock(self, key: str, ttl_ms: int) -> str | None:
        _validate_ttl(ttl_ms)
        token = new_token()
        try:
            acquired = self._client.set(key, token, nx=True, px=ttl_ms)
        except redis.RedisError as exc:
            raise CoordinationError("lock acquire failed", cause=exc, context={"lock_key": key}) from exc
        return token if acquired else None

    def unlock(self, key: str, token: str) -> bool:
        try:
            released = self._unlock_script(keys=[key], args=[token])
        except redis.RedisError as exc:
            raise CoordinationError("lock release failed", cause=exc, context={"lock_key": key}) from exc
        return bool(released)

    def holder(self, key: str) -> str | None:
        value = self._client.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    def is_locked(self, key: str) -> bool:
        return bool(self._client.exists(key))


# ------------------------------------------------------------------ #
# Database
# ------------------------------------------------------------------ #


class DatabaseDistributedLock:
    """Lock rows in ``taskq_locks`` with automatic expiry.

    Acquisition reaps an expired row for the key and inserts a new one in the
    same transaction; a primary-key conflict means another holder is active.
    If a process crashes, its row expires after the TTL.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    def try_lock(self, key: str, ttl_ms: int) -> str | None:
        _validate_ttl(ttl_ms)
        token = new_token()
        now = datetime.now(UTC)
        expires_at = now + timedelta(milliseconds=ttl_ms)
        try:
            with self._engine.begin() as conn:
                conn.execute(delete(LockTable).where(LockTable.lock_key == key, LockTable.expires_at < now))
                conn.execute(
                    insert(LockTable).values(lock_key=key, token=token, acquired_at=now, expires_at=expires_at)
                )
        except IntegrityError:
            return None
        except SQLAlchemyError as exc:
            raise CoordinationError("lock acquire failed", cause=exc, context={"lock_key": key}) from exc
        return token

    def unlock(self, key: str, token: str) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(delete(LockTable).where(LockTable.lock_key == key, LockTable.token == token))
        except SQLAlchemyError as exc:
            raise CoordinationError("lock release failed", cause=exc, context={"lock_key": key}) from exc
        return result.rowcount > 0

    def holder(self, key: str) -> str | None:
        stmt = select(LockTable.token).where(LockTable.lock_key == key, LockTable.expires_at >= datetime.now(UTC))
        with self._engine.connect() as conn:
            return conn.execute(stmt).scalar_one_or_none()

    def is_locked(self, key: str) -> bool:
        return self.holder(key) is not None

    def cleanup_expired(self) -> int:
        """Delete every expired lock row and return how many were removed."""
        with self._engine.begin() as conn:
            result = conn.execute(delete(LockTable).where(LockTable.expires_at < datetime.now(UTC)))
        return result.rowcount


# ------------------------------------------------------------------ #
# In-memory
# ------------------------------------------------------------------ #


class InMemoryDistributedLock:
    """Process-local lock for single-instance deployments and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}
        self._guard = threading.Lock()

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._entries.get(key)
        if entry is not None and time.monotonic() >= entry[1]:
            del self._entries[key]
            return None
        return entry

    def try_lock(self, key: str, ttl_ms: int) -> str | None:
        _validate_ttl(ttl_ms)
        with self._guard:
            if self._live(key) is not None:
                return None
            token = new_token()
            self._entries[key] = (token, time.monotonic() + ttl_ms / 1000.0)
            return token

    def unlock(self, key: str, token: str) -> bool:
        with self._guard:
            entry = self._live(key)
            if entry is None or entry[0] != token:
                return False
            del self._entries[key]
            return True

    def holder(self, key: str) -> str | None:
        with self._guard:
            entry = self._live(key)
            return entry[0] if entry else None

    def is_locked(self, key: str) -> bool:
        return self.holder(key) is not None


__all__ = [
    "DatabaseDistributedLock",
    "DistributedLock",
    "InMemoryDistributedLock",
    "RedisDistributedLock",
    "UNLOCK_SCRIPT",
    "lock_or_raise",
    "new_token",
]
