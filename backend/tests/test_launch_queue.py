"""
Tests for the Redis launch queue, its job state machine and the polling bridge.
"""

from __future__ import annotations

import asyncio

import pytest

from adpilot.meta.errors import InvalidParameterError
from adpilot.schemas.launch import JobStatus, LaunchJob
from adpilot.services.launch_queue import (
    JOB_KEY_PREFIX,
    InvalidJobTransition,
    JobNotFound,
    LaunchQueue,
    LaunchWaitPolicy,
    submit_and_wait,
)
from adpilot.services.launch_worker import LaunchWorker


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job_with_ttl(redis_client):
    queue = LaunchQueue(redis_client, ttl_seconds=600)
    job_id = await queue.enqueue({"name": "Spring"})

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.payload == {"name": "Spring"}
    assert 0 < await redis_client.ttl(f"{JOB_KEY_PREFIX}{job_id}") <= 600
    assert await queue.pending_count() == 1


@pytest.mark.asyncio
async def test_dequeue_is_fifo(redis_client):
    queue = LaunchQueue(redis_client)
    first = await queue.enqueue({"n": 1})
    second = await queue.enqueue({"n": 2})

    assert await queue.dequeue() == first
    assert await queue.dequeue() == second
    assert await queue.dequeue() is None


@pytest.mark.asyncio
async def test_each_job_is_handed_out_once(redis_client):
    """Concurrent consumers never receive the same job id."""
    queue = LaunchQueue(redis_client)
    job_ids = {await queue.enqueue({"n": n}) for n in range(3)}

    taken = await asyncio.gather(*(queue.dequeue() for _ in range(10)))

    handed_out = [j for j in taken if j is not None]
    assert len(handed_out) == 3
    assert set(handed_out) == job_ids


@pytest.mark.asyncio
async def test_get_unknown_job_returns_none(redis_client):
    assert await LaunchQueue(redis_client).get_job("missing") is None


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_valid_transitions(redis_client):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue({})

    job = await queue.transition(job_id, JobStatus.PROCESSING)
    assert job.status == JobStatus.PROCESSING
    job = await queue.transition(job_id, JobStatus.COMPLETED, result={"campaign_id": "c1"})

    stored = await queue.get_job(job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"campaign_id": "c1"}
    assert stored.updated_at >= stored.created_at


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        [JobStatus.COMPLETED],
        [JobStatus.PROCESSING, JobStatus.PENDING],
        [JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.PROCESSING],
        [JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED],
    ],
)
async def test_invalid_transitions_are_rejected(redis_client, path):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue({})
    *allowed, rejected = path
    for status in allowed:
        await queue.transition(job_id, status)

    with pytest.raises(InvalidJobTransition):
        await queue.transition(job_id, rejected)


@pytest.mark.asyncio
async def test_transition_of_missing_job(redis_client):
    with pytest.raises(JobNotFound):
        await LaunchQueue(redis_client).transition("missing", JobStatus.PROCESSING)


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_process_next_records_result(redis_client):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue({"name": "Spring"})
    seen: list[LaunchJob] = []

    async def processor(job: LaunchJob) -> dict:
        seen.append(job)
        return {"campaign_id": "c1"}

    assert await queue.process_next(processor) is True
    assert seen[0].status == JobStatus.PROCESSING
    assert (await queue.get_job(job_id)).result == {"campaign_id": "c1"}
    assert await queue.process_next(processor) is False


@pytest.mark.asyncio
async def test_process_next_records_classified_failure(redis_client):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue({})

    async def processor(job: LaunchJob) -> dict:
        raise InvalidParameterError("Invalid targeting spec", code=100)

    await queue.process_next(processor)

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Invalid targeting spec"
    assert job.error_code == "INVALID_PARAMETER"


@pytest.mark.asyncio
async def test_process_next_skips_expired_job(redis_client):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue({})
    await redis_client.delete(f"{JOB_KEY_PREFIX}{job_id}")

    async def processor(job: LaunchJob) -> dict:
        raise AssertionError("expired jobs are not processed")

    assert await queue.process_next(processor) is True


# ---------------------------------------------------------------------------
# Polling bridge
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_and_wait_times_out_as_processing(redis_client):
    """No worker running: the caller gets the job id back and can poll later."""
    queue = LaunchQueue(redis_client)

    outcome = await submit_and_wait(queue, {"name": "Spring"}, LaunchWaitPolicy(timeout_seconds=0), _no_sleep)

    assert outcome.status == JobStatus.PROCESSING
    assert outcome.finished is False
    job = await queue.get_job(outcome.job_id)
    assert job.status == JobStatus.PENDING

    async def processor(job: LaunchJob) -> dict:
        return {"campaign_id": "c1"}

    await queue.process_next(processor)
    assert (await queue.get_job(outcome.job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_submit_and_wait_returns_worker_result(redis_client):
    queue = LaunchQueue(redis_client)

    async def processor(job: LaunchJob) -> dict:
        return {"campaign_id": "c1", "ad_set_id": "s1", "ad_id": "a1"}

    worker = LaunchWorker(queue, processor, idle_sleep=0.01)
    task = asyncio.create_task(worker.run())
    try:
        outcome = await submit_and_wait(
            queue, {"name": "Spring"}, LaunchWaitPolicy(timeout_seconds=5, poll_interval_seconds=0.01),
        )
    finally:
        worker.stop()
        await task

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.result["ad_id"] == "a1"


@pytest.mark.asyncio
async def test_submit_and_wait_returns_failure(redis_client):
    queue = LaunchQueue(redis_client)

    async def processor(job: LaunchJob) -> dict:
        raise RuntimeError("creative upload failed")

    worker = LaunchWorker(queue, processor, idle_sleep=0.01)
    task = asyncio.create_task(worker.run())
    try:
        outcome = await submit_and_wait(
            queue, {}, LaunchWaitPolicy(timeout_seconds=5, poll_interval_seconds=0.01),
        )
    finally:
        worker.stop()
        await task

    assert outcome.status == JobStatus.FAILED
    assert outcome.error == "creative upload failed"
    assert outcome.error_code == "RuntimeError"
