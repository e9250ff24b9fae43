"""Cross-process mutual exclusion on Redis.

Thin wrapper over redis-py's ``Lock``: acquire is ``SET key token NX PX``,
release is a token-checked delete run as one script on the server. A lock
that is already held is not an error: callers get ``False`` and skip their
work.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import LockError, LockNotOwnedError

logger = logging.getLogger(__name__)


class RedisLock:
    def __init__(self, redis_client: redis.Redis, key: str, ttl_seconds: int):
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.token = uuid.uuid4().hex
        self._lock = redis_client.lock(key, timeout=ttl_seconds, blocking=False)

    async def acquire(self) -> bool:
        return bool(await self._lock.acquire(token=self.token))

    async def release(self) -> bool:
        try:
            await self._lock.release()
        except LockNotOwnedError:
            logger.warning("Lock %s no longer held by this owner", self.key)
            return False
        except LockError:
            logger.warning("Lock %s was never acquired by this owner", self.key)
            return False
        return True


def lock_key(namespace: str, name: str) -> str:
    return f"{namespace}{name}"


@asynccontextmanager
async def hold_lock(redis_client: redis.Redis, key: str, ttl_seconds: int) -> AsyncIterator[bool]:
    """Yield whether the lock was acquired; release it on exit if so."""
    lock = RedisLock(redis_client, key, ttl_seconds)
    acquired = await lock.acquire()
    if not acquired:
        logger.info("Lock %s is held elsewhere, skipping", key)
    try:
        yield acquired
    finally:
        if acquired:
            await lock.release()
