"""Redis-backed launch job queue and the request-side polling bridge.

Job records live at ``job:launch:{id}`` (JSON, TTL-bound); pending ids sit in
the ``queue:launch:pending`` list. ``LPUSH`` + ``RPOP`` gives FIFO order and
hands each id to exactly one caller.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import redis.asyncio as redis
from redis.exceptions import WatchError

from adpilot.schemas.launch import JobStatus, LaunchJob

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "job:launch:"
PENDING_KEY = "queue:launch:pending"
DEFAULT_JOB_TTL = 86400

_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

Processor = Callable[[LaunchJob], Awaitable[dict]]


class InvalidJobTransition(Exception):
    pass


class JobNotFound(Exception):
    pass


def _job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


class LaunchQueue:
    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = DEFAULT_JOB_TTL):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def enqueue(self, payload: dict) -> str:
        job_id = uuid.uuid4().hex
        now = time.time()
        job = LaunchJob(id=job_id, status=JobStatus.PENDING, payload=payload, created_at=now, updated_at=now)
        await self._redis.set(_job_key(job_id), job.model_dump_json(), ex=self.ttl_seconds)
        await self._redis.lpush(PENDING_KEY, job_id)
        logger.info("[launch-queue] Enqueued job %s", job_id)
        return job_id

    async def dequeue(self) -> str | None:
        return await self._redis.rpop(PENDING_KEY)

    async def get_job(self, job_id: str) -> LaunchJob | None:
        raw = await self._redis.get(_job_key(job_id))
        if raw is None:
            return None
        return LaunchJob.model_validate_json(raw)

    async def pending_count(self) -> int:
        return await self._redis.llen(PENDING_KEY)

    async def transition(
        self,
        job_id: str,
        status: JobStatus,
        result: dict | None = None,
        error: str | None = None,
        error_code: str | None = None,
    ) -> LaunchJob:
        """Move a job along pending -> processing -> completed | failed."""
        key = _job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    await pipe.unwatch()
                    raise JobNotFound(job_id)
                job = LaunchJob.model_validate_json(raw)
                if status not in _ALLOWED_TRANSITIONS[job.status]:
                    await pipe.unwatch()
                    raise InvalidJobTransition(f"{job_id}: {job.status.value} -> {status.value}")

                job.status = status
                job.updated_at = time.time()
                if result is not None:
                    job.result = result
                if error is not None:
                    job.error = error
                    job.error_code = error_code
                pipe.multi()
                pipe.set(key, job.model_dump_json(), ex=self.ttl_seconds)
                await pipe.execute()
            except WatchError as e:
                raise InvalidJobTransition(f"{job_id}: modified concurrently") from e
        return job

    async def process_next(self, processor: Processor) -> bool:
        """Run one pending job through *processor*. Returns False when the queue is empty."""
        job_id = await self.dequeue()
        if job_id is None:
            return False

        job = await self.get_job(job_id)
        if job is None:
            logger.warning("[launch-queue] Job %s expired before processing", job_id)
            return True

        job = await self.transition(job_id, JobStatus.PROCESSING)
        try:
            result = await processor(job)
        except Exception as e:
            logger.exception("[launch-queue] Job %s failed", job_id)
            kind = getattr(e, "kind", None)
            await self.transition(
                job_id,
                JobStatus.FAILED,
                error=str(e) or type(e).__name__,
                error_code=kind.value if kind is not None else type(e).__name__,
            )
        else:
            await self.transition(job_id, JobStatus.COMPLETED, result=result or {})
            logger.info("[launch-queue] Job %s completed", job_id)
        return True


# ---------------------------------------------------------------------------
# Polling façade
# ---------------------------------------------------------------------------

@dataclass
class LaunchWaitPolicy:
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0


@dataclass
class LaunchOutcome:
    job_id: str
    status: JobStatus
    result: dict = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


async def submit_and_wait(
    queue: LaunchQueue,
    payload: dict,
    policy: LaunchWaitPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> LaunchOutcome:
    """Enqueue and poll until the job finishes or the timeout passes.

    On timeout the outcome is still ``processing``; the job keeps running and
    can be polled by id.
    """
    policy = policy or LaunchWaitPolicy()
    job_id = await queue.enqueue(payload)
    deadline = time.monotonic() + policy.timeout_seconds

    while True:
        job = await queue.get_job(job_id)
        if job is not None and job.status == JobStatus.COMPLETED:
            return LaunchOutcome(job_id=job_id, status=job.status, result=job.result or {})
        if job is not None and job.status == JobStatus.FAILED:
            return LaunchOutcome(job_id=job_id, status=job.status, error=job.error, error_code=job.error_code)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.info("[launch-queue] Job %s still running after %.0fs", job_id, policy.timeout_seconds)
            return LaunchOutcome(job_id=job_id, status=JobStatus.PROCESSING)
        await sleep(min(policy.poll_interval_seconds, remaining))
