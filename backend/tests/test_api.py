"""
Tests for the HTTP endpoints: /health, /api/v1/launch, /api/v1/sync and
/api/v1/optimization.
"""

from __future__ import annotations

import asyncio
import uuid
from types import SimpleNamespace

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from adpilot.dependencies import get_wait_policy
from adpilot.meta.errors import InvalidParameterError
from adpilot.models.meta_ads import MetaConnection, OptimizationLog
from adpilot.schemas.launch import LaunchJob
from adpilot.services.launch_queue import LaunchQueue, LaunchWaitPolicy
from adpilot.services.launch_worker import LaunchWorker


def _launch_body(connection: MetaConnection, **overrides) -> dict:
    body = {
        "tenant_id": str(connection.tenant_id),
        "ad_account_id": "act_123",
        "page_id": "page_1",
        "name": "Spring Sale",
        "headline": "Save 20% this week",
        "primary_text": "Fresh gear for the new season.",
        "link_url": "https://shop.example.com/spring",
        "image_url": "https://cdn.example.com/spring.jpg",
        "daily_budget": "25.00",
        "targeting": {"age_min": 21, "locations": ["US"]},
    }
    body.update(overrides)
    return body


@pytest.fixture()
def short_wait():
    from adpilot.main import app

    app.dependency_overrides[get_wait_policy] = lambda: LaunchWaitPolicy(
        timeout_seconds=2, poll_interval_seconds=0.01,
    )
    yield
    app.dependency_overrides.pop(get_wait_policy, None)


@pytest.fixture()
def no_wait():
    from adpilot.main import app

    app.dependency_overrides[get_wait_policy] = lambda: LaunchWaitPolicy(
        timeout_seconds=0.05, poll_interval_seconds=0.01,
    )
    yield
    app.dependency_overrides.pop(get_wait_policy, None)


async def _with_worker(redis_client, processor, coro):
    worker = LaunchWorker(LaunchQueue(redis_client), processor, idle_sleep=0.01)
    task = asyncio.create_task(worker.run())
    try:
        return await coro
    finally:
        worker.stop()
        await task


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# ---------------------------------------------------------------------------
# POST /api/v1/launch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_launch_requires_media(client: AsyncClient, connection: MetaConnection):
    body = _launch_body(connection, image_url=None)

    response = await client.post("/api/v1/launch", json=body)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_launch_rejects_malformed_account(client: AsyncClient, connection: MetaConnection):
    response = await client.post("/api/v1/launch", json=_launch_body(connection, ad_account_id="123"))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_launch_completes_inline(
    client: AsyncClient, connection: MetaConnection, redis_client, short_wait,
):
    """A worker that finishes inside the wait window: ids come back directly."""
    async def processor(job: LaunchJob) -> dict:
        assert job.payload["daily_budget"] == "25.00"
        return {"campaign_id": "c1", "ad_set_id": "s1", "ad_id": "a1", "creative_id": "cr1"}

    response = await _with_worker(
        redis_client, processor, client.post("/api/v1/launch", json=_launch_body(connection)),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["campaign_id"] == "c1"
    assert data["ad_id"] == "a1"


@pytest.mark.asyncio
async def test_launch_failure_returns_400(
    client: AsyncClient, connection: MetaConnection, redis_client, short_wait,
):
    async def processor(job: LaunchJob) -> dict:
        raise InvalidParameterError("Invalid targeting spec", code=100)

    response = await _with_worker(
        redis_client, processor, client.post("/api/v1/launch", json=_launch_body(connection)),
    )

    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["error"] == "Invalid targeting spec"
    assert data["code"] == "INVALID_PARAMETER"


@pytest.mark.asyncio
async def test_slow_launch_is_accepted_and_pollable(
    client: AsyncClient, connection: MetaConnection, redis_client, no_wait,
):
    """No worker answers in time: 202 with a job id that can be polled later."""
    response = await client.post("/api/v1/launch", json=_launch_body(connection))

    assert response.status_code == 202
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "processing"

    job_response = await client.get(f"/api/v1/launch/jobs/{data['job_id']}")
    assert job_response.status_code == 200
    assert job_response.json()["status"] == "pending"

    async def processor(job: LaunchJob) -> dict:
        return {"campaign_id": "c1"}

    await LaunchQueue(redis_client).process_next(processor)

    job_response = await client.get(f"/api/v1/launch/jobs/{data['job_id']}")
    assert job_response.json()["status"] == "completed"
    assert job_response.json()["result"] == {"campaign_id": "c1"}


@pytest.mark.asyncio
async def test_unknown_job_is_404(client: AsyncClient):
    response = await client.get("/api/v1/launch/jobs/does-not-exist")

    assert response.status_code == 404


# ---------------------------------------------------------------------------
# POST /api/v1/sync/{connection_id}
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_trigger_sync_queues_task(client: AsyncClient, connection: MetaConnection, monkeypatch):
    from adpilot.tasks import meta_tasks

    queued: list[str] = []

    def _delay(connection_id: str):
        queued.append(connection_id)
        return SimpleNamespace(id="task-1")

    monkeypatch.setattr(meta_tasks, "sync_connection", SimpleNamespace(delay=_delay))

    response = await client.post(f"/api/v1/sync/{connection.id}")

    assert response.status_code == 202
    assert response.json() == {"queued": True, "task_id": "task-1"}
    assert queued == [str(connection.id)]


@pytest.mark.asyncio
async def test_trigger_sync_unknown_connection(client: AsyncClient):
    response = await client.post(f"/api/v1/sync/{uuid.uuid4()}")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_trigger_sync_expired_connection(
    client: AsyncClient, connection: MetaConnection, db_session: AsyncSession,
):
    connection.status = "EXPIRED"
    await db_session.flush()

    response = await client.post(f"/api/v1/sync/{connection.id}/performance")

    assert response.status_code == 409


# ---------------------------------------------------------------------------
# GET /api/v1/optimization/logs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_optimization_logs(client: AsyncClient, connection: MetaConnection, db_session: AsyncSession):
    for action in ("CYCLE_START", "RECOMMEND_PAUSE", "CYCLE_COMPLETE"):
        db_session.add(OptimizationLog(
            tenant_id=connection.tenant_id,
            account_id="act_123",
            action=action,
            entity_type="ACCOUNT",
            entity_id="act_123",
            message=action.lower(),
        ))
    await db_session.flush()

    response = await client.get("/api/v1/optimization/logs", params={"account_id": "act_123"})
    assert response.status_code == 200
    assert {entry["action"] for entry in response.json()} == {"CYCLE_START", "RECOMMEND_PAUSE", "CYCLE_COMPLETE"}

    response = await client.get(
        "/api/v1/optimization/logs", params={"account_id": "act_123", "action": "RECOMMEND_PAUSE"},
    )
    data = response.json()
    assert len(data) == 1
    assert data[0]["severity"] == "INFO"
    assert data[0]["success"] is True
