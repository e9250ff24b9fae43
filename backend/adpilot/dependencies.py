import redis.asyncio as redis
from fastapi import Depends, Request

from adpilot.config import get_settings
from adpilot.services.launch_queue import LaunchQueue, LaunchWaitPolicy


def get_redis(request: Request) -> redis.Redis:
    """The process-wide Redis client opened in the app lifespan."""
    return request.app.state.redis


def get_launch_queue(redis_client: redis.Redis = Depends(get_redis)) -> LaunchQueue:
    return LaunchQueue(redis_client, ttl_seconds=get_settings().launch_job_ttl_seconds)


def get_wait_policy() -> LaunchWaitPolicy:
    settings = get_settings()
    return LaunchWaitPolicy(
        timeout_seconds=settings.launch_poll_timeout_seconds,
        poll_interval_seconds=settings.launch_poll_interval_seconds,
    )
