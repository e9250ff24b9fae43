"""
Tests for the Redis mutual-exclusion lock used by scheduled jobs.
"""

from __future__ import annotations

import asyncio

import pytest

from adpilot.services.locks import RedisLock, hold_lock, lock_key


@pytest.mark.asyncio
async def test_only_one_owner_at_a_time(redis_client):
    first = RedisLock(redis_client, "adpilot:sync:1", 60)
    second = RedisLock(redis_client, "adpilot:sync:1", 60)

    assert await first.acquire() is True
    assert await second.acquire() is False
    assert 0 < await redis_client.ttl("adpilot:sync:1") <= 60


@pytest.mark.asyncio
async def test_release_only_by_owner(redis_client):
    owner = RedisLock(redis_client, "adpilot:sync:1", 60)
    other = RedisLock(redis_client, "adpilot:sync:1", 60)
    await owner.acquire()

    assert await other.release() is False
    assert await redis_client.get("adpilot:sync:1") == owner.token
    assert await owner.release() is True
    assert await redis_client.exists("adpilot:sync:1") == 0


@pytest.mark.asyncio
async def test_release_after_expiry_does_not_remove_new_owner(redis_client):
    stale = RedisLock(redis_client, "adpilot:sync:1", 60)
    await stale.acquire()
    await redis_client.delete("adpilot:sync:1")  # TTL ran out
    fresh = RedisLock(redis_client, "adpilot:sync:1", 60)
    await fresh.acquire()

    assert await stale.release() is False
    assert await redis_client.get("adpilot:sync:1") == fresh.token


@pytest.mark.asyncio
async def test_overlapping_holders_run_once(redis_client):
    """Two concurrent runs for the same key: exactly one does the work."""
    key = lock_key("adpilot:", "optimization:conn-1")
    ran: list[int] = []

    async def job(n: int) -> None:
        async with hold_lock(redis_client, key, 60) as acquired:
            if not acquired:
                return
            ran.append(n)
            await asyncio.sleep(0.05)

    await asyncio.gather(job(1), job(2))

    assert len(ran) == 1
    assert await redis_client.exists(key) == 0


@pytest.mark.asyncio
async def test_hold_lock_releases_on_error(redis_client):
    with pytest.raises(RuntimeError):
        async with hold_lock(redis_client, "adpilot:performance:1", 60) as acquired:
            assert acquired is True
            raise RuntimeError("sync failed")

    assert await redis_client.exists("adpilot:performance:1") == 0
