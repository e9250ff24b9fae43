"""Redis handle shared by the rate limiter, launch queue and cycle locks.

Each process opens exactly one client at start-up and passes it to the
components that need it.
"""

import redis.asyncio as redis

from adpilot.config import get_settings


def create_redis(url: str | None = None) -> redis.Redis:
    return redis.from_url(url or get_settings().redis_url, decode_responses=True)
