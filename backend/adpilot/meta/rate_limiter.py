import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from adpilot.meta.errors import RateLimitedError

logger = logging.getLogger(__name__)

WARN_RATIO = 0.9


class RateLimiter:
    """Redis fixed-window call budget per principal.

    ``INCR`` and ``EXPIRE NX`` go out in one MULTI/EXEC, so a counter never
    exists without a TTL. The window starts on the first call and later calls
    never extend it.
    """

    def __init__(self, redis_client: redis.Redis, max_calls: int = 180, window_seconds: int = 3600):
        self._redis = redis_client
        self.max_calls = max_calls
        self.window_seconds = window_seconds

    @staticmethod
    def key(principal: str) -> str:
        return f"ratelimit:{principal}"

    async def check(self, principal: str) -> int:
        """Count one call for *principal*; raise RateLimitedError once over budget.

        Returns the updated count (0 when Redis is unavailable and the check
        was skipped).
        """
        key = self.key(principal)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, self.window_seconds, nx=True)
            count, _ = await pipe.execute()
        except RedisError as e:
            logger.error("[rate-limit] Counter unavailable for %s, allowing call: %s", principal, e)
            return 0

        if count > self.max_calls:
            raise RateLimitedError(
                f"Local Graph API budget exhausted for {principal} ({count}/{self.max_calls})",
                local=True,
            )
        if count > self.max_calls * WARN_RATIO:
            logger.warning(
                "[rate-limit] %s at %d/%d calls in the current window",
                principal, count, self.max_calls,
            )
        return count

    async def remaining(self, principal: str) -> int:
        value = await self._redis.get(self.key(principal))
        return max(self.max_calls - int(value or 0), 0)

    async def reset(self, principal: str) -> None:
        await self._redis.delete(self.key(principal))
