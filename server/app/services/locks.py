from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from weakref import WeakValueDictionary

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from app.core.errors import ProviderUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)


def letter_key(letter_id: str) -> str:
    return f"letter:{letter_id}"


def signatory_key(letter_id: str, signatory_index: int) -> str:
    return f"letter:{letter_id}:signatory:{signatory_index}"


def signing_key(request_id: str) -> str:
    return f"signing:{request_id}"


class KeyedLockRegistry:
    """
    Exclusive locks addressed by string keys.

    Inside one process an ``asyncio.Lock`` per key serializes callers. When a
    Redis client is supplied the holder also takes a Redis lock on the same
    key, which serializes workers running in other processes.
    """

    def __init__(self, redis_client: Redis | None = None, *, timeout_seconds: int = 30, namespace: str = "hr-letters"):
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()
        self._redis = redis_client
        self._timeout = timeout_seconds
        self._namespace = namespace

    @property
    def distributed(self) -> bool:
        return self._redis is not None

    def _local_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        local = self._local_lock(key)
        async with local:
            if self._redis is None:
                yield
                return
            remote = self._redis.lock(
                f"{self._namespace}:{key}", timeout=self._timeout, blocking_timeout=self._timeout
            )
            try:
                acquired = await remote.acquire()
            except RedisError as exc:
                logger.error("lock.redis.error", key=key, error=str(exc))
                raise ProviderUnavailable(f"could not acquire lock for {key}", provider="redis") from exc
            if not acquired:
                logger.warning("lock.redis.timeout", key=key)
                raise ProviderUnavailable(f"timed out waiting for lock {key}", provider="redis", error_code="LOCK_TIMEOUT")
            try:
                yield
            finally:
                try:
                    await remote.release()
                except LockError as exc:
                    logger.warning("lock.redis.release_failed", key=key, error=str(exc))
