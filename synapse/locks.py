"""Keyed mutual exclusion for per-file and per-suggestion critical sections."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import LockError

from .config import Settings
from .errors import StorageFailure

logger = logging.getLogger(__name__)


def file_key(project_id: str, path: str) -> str:
    return f"file:{project_id}:{path}"


def suggestion_key(suggestion_id: str) -> str:
    return f"suggestion:{suggestion_id}"


class LockManager(Protocol):
    def hold(self, *keys: str) -> AbstractAsyncContextManager[None]:
        """Hold every key for the duration of the block. Keys are taken in sorted order."""
        ...


class InProcessLockManager:
    """asyncio locks keyed by name, dropped once no holder or waiter remains."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    @property
    def active_keys(self) -> set[str]:
        return set(self._locks)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        acquired: list[str] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)


class RedisLockManager:
    """Redis-backed locks so several worker processes serialize on the same keys."""

    def __init__(
        self,
        redis: Redis,
        *,
        timeout: int = 30,
        blocking_timeout: float | None = None,
        prefix: str = "synapse:lock:",
    ) -> None:
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout if blocking_timeout is not None else timeout
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        held = []
        try:
            for key in sorted(set(keys)):
                lock = self._redis.lock(
                    f"{self._prefix}{key}",
                    timeout=self._timeout,
                    blocking_timeout=self._blocking_timeout,
                )
                if not await lock.acquire():
                    raise StorageFailure("Timed out waiting for lock", {"key": key})
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                try:
                    await lock.release()
                except LockError:
                    # Expired under us; the next holder already owns it.
                    logger.warning(f"Lock {lock.name} expired before release")


def create_redis_client(url: str) -> Redis:
    pool = ConnectionPool.from_url(url, max_connections=20, decode_responses=True)
    return Redis(connection_pool=pool)


def build_lock_manager(settings: Settings) -> LockManager:
    if settings.redis_locks_enabled:
        return RedisLockManager(
            create_redis_client(settings.redis_url), timeout=settings.lock_timeout_seconds
        )
    return InProcessLockManager()
