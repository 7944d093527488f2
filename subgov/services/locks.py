from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any, AsyncIterator, Hashable
from uuid import uuid4

from subgov.core.config import get_settings
from subgov.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

_local_task_locks: dict[str, asyncio.Lock] = {}
_local_task_owners: dict[str, str] = {}


@dataclass(slots=True)
class TaskLock:
    name: str
    token: str
    redis: Any | None
    local: bool


def _task_lock_key(name: str) -> str:
    return f"{get_settings().task_lock_prefix}:{name}:lock"


async def acquire_task_lock(name: str, *, ttl_s: int | None = None) -> TaskLock | None:
    # Single-flight guard per task name; None means another run currently owns it.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_resilience_redis()
    ttl = max(5, int(ttl_s if ttl_s is not None else settings.task_lock_ttl_s))
    if redis is not None:
        acquired = await redis.set(_task_lock_key(name), token, nx=True, ex=ttl)
        if not acquired:
            return None
        return TaskLock(name=name, token=token, redis=redis, local=False)

    # Fall back to an in-process lock for single-worker and test environments.
    lock = _local_task_locks.setdefault(name, asyncio.Lock())
    if lock.locked():
        return None
    await lock.acquire()
    _local_task_owners[name] = token
    return TaskLock(name=name, token=token, redis=None, local=True)


async def release_task_lock(lock: TaskLock) -> None:
    # Release only if this run still owns the token to avoid clobbering a newer holder.
    if lock.local:
        local = _local_task_locks.get(lock.name)
        if local is not None and local.locked() and _local_task_owners.get(lock.name) == lock.token:
            _local_task_owners.pop(lock.name, None)
            local.release()
        return
    if lock.redis is None:
        return
    current = await lock.redis.get(_task_lock_key(lock.name))
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(_task_lock_key(lock.name))


class KeyedLock:
    """Per-key asyncio locks; serializes work for one key while other keys run in parallel."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle locks so long-running workers do not accumulate one per user.
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
