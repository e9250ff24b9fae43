"""
Tests for launch processing: creative upload, campaign -> ad set -> ad creation
and the queue processor.
"""

from __future__ import annotations

import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adpilot.meta.client import GraphClient
from adpilot.meta.errors import InvalidParameterError, PreconditionFailedError
from adpilot.meta.tokens import TokenService
from adpilot.meta.transport import GraphResponse, SandboxTransport
from adpilot.models.meta_ads import Ad, AdSet, Campaign, MetaConnection, OptimizationLog
from adpilot.schemas.launch import JobStatus, LaunchRequest, TargetingInput
from adpilot.services.launch_queue import LaunchQueue
from adpilot.services.launch_worker import LaunchProcessor, process_launch


async def _no_sleep(_seconds: float) -> None:
    return None


class _SharedSession:
    """Session factory that hands out the test session without closing it."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def __call__(self):
        return self

    async def __aenter__(self) -> AsyncSession:
        return self.session

    async def __aexit__(self, *exc_info) -> bool:
        return False


class _RejectingSandbox(SandboxTransport):
    def __init__(self, rejected_edge: str):
        super().__init__()
        self.rejected_edge = rejected_edge

    async def request(self, method, url, **kwargs):
        if method == "POST" and url.endswith(self.rejected_edge):
            return GraphResponse(400, {"error": {"code": 100, "message": "Invalid targeting spec"}})
        return await super().request(method, url, **kwargs)


def _request(connection: MetaConnection, **overrides) -> LaunchRequest:
    fields = {
        "tenant_id": connection.tenant_id,
        "ad_account_id": "act_123",
        "page_id": "page_1",
        "name": "Spring Sale",
        "headline": "Save 20% this week",
        "primary_text": "Fresh gear for the new season.",
        "link_url": "https://shop.example.com/spring",
        "image_url": "https://cdn.example.com/spring.jpg",
        "daily_budget": Decimal("25.00"),
        "targeting": TargetingInput(age_min=21, locations=["US", "CA"], interest_ids=["6003"]),
    }
    fields.update(overrides)
    return LaunchRequest(**fields)


# ---------------------------------------------------------------------------
# process_launch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_launch_creates_full_hierarchy(
    db_session: AsyncSession,
    connection: MetaConnection,
    sandbox: SandboxTransport,
    graph_client: GraphClient,
    token_service: TokenService,
):
    ids = await process_launch(db_session, graph_client, _request(connection), token_service)

    assert set(ids) == {"campaign_id", "ad_set_id", "ad_id", "creative_id"}
    assert all(value.startswith("sandbox_") for value in ids.values())

    ad_set_call = sandbox.calls_to("POST", "act_123/adsets")[0]
    assert ad_set_call.data["campaign_id"] == ids["campaign_id"]
    assert ad_set_call.data["daily_budget"] == 2500
    assert ad_set_call.data["billing_event"] == "LINK_CLICKS"
    targeting = json.loads(ad_set_call.data["targeting"])
    assert targeting["geo_locations"] == {"countries": ["US", "CA"]}
    assert targeting["flexible_spec"] == [{"interests": [{"id": "6003"}]}]

    ad_call = sandbox.calls_to("POST", "act_123/ads")[0]
    assert ad_call.data["adset_id"] == ids["ad_set_id"]
    assert json.loads(ad_call.data["creative"]) == {"creative_id": ids["creative_id"]}

    ad = await db_session.scalar(select(Ad).where(Ad.ad_id == ids["ad_id"]))
    assert ad.campaign_id == ids["campaign_id"]
    assert ad.creative["creative_id"] == ids["creative_id"]
    ad_set = await db_session.scalar(select(AdSet).where(AdSet.ad_set_id == ids["ad_set_id"]))
    assert ad_set.budget == Decimal("25.00")

    log = await db_session.scalar(select(OptimizationLog).where(OptimizationLog.action == "LAUNCH_SUCCESS"))
    assert log.entity_id == ids["campaign_id"]
    assert log.details["ad_id"] == ids["ad_id"]


@pytest.mark.asyncio
async def test_launch_never_stores_temporary_ids(
    db_session: AsyncSession, connection: MetaConnection, graph_client: GraphClient, token_service: TokenService,
):
    await process_launch(db_session, graph_client, _request(connection), token_service)

    for model, column in ((Campaign, Campaign.campaign_id), (AdSet, AdSet.ad_set_id), (Ad, Ad.ad_id)):
        temporary = await db_session.scalar(
            select(func.count()).select_from(model).where(column.like("tmp_%"))
        )
        assert temporary == 0


@pytest.mark.asyncio
async def test_launch_with_video_uses_video_upload(
    db_session: AsyncSession,
    connection: MetaConnection,
    sandbox: SandboxTransport,
    graph_client: GraphClient,
    token_service: TokenService,
):
    request = _request(connection, image_url=None, video_url="https://cdn.example.com/spring.mp4")

    await process_launch(db_session, graph_client, request, token_service)

    assert len(sandbox.calls_to("POST", "act_123/advideos")) == 1
    assert sandbox.calls_to("POST", "act_123/adimages") == []
    creative = json.loads(sandbox.calls_to("POST", "act_123/adcreatives")[0].data["object_story_spec"])
    assert "video_data" in creative


@pytest.mark.asyncio
async def test_launch_without_active_connection(
    db_session: AsyncSession,
    connection: MetaConnection,
    sandbox: SandboxTransport,
    graph_client: GraphClient,
    token_service: TokenService,
):
    connection.status = "EXPIRED"
    await db_session.flush()

    with pytest.raises(PreconditionFailedError):
        await process_launch(db_session, graph_client, _request(connection), token_service)
    assert sandbox.calls == []


@pytest.mark.asyncio
async def test_failed_ad_set_keeps_created_campaign(
    db_session: AsyncSession, connection: MetaConnection, token_service: TokenService,
):
    """A failure part-way leaves the already-created campaign stored with its remote id."""
    client = GraphClient(_RejectingSandbox("/adsets"), sleep=_no_sleep)

    with pytest.raises(InvalidParameterError):
        await process_launch(db_session, client, _request(connection), token_service)

    campaigns = (await db_session.execute(select(Campaign))).scalars().all()
    assert len(campaigns) == 1
    assert campaigns[0].campaign_id.startswith("sandbox_")
    assert await db_session.scalar(select(func.count()).select_from(AdSet)) == 0


# ---------------------------------------------------------------------------
# Queue processor
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_processor_runs_queued_launch(
    db_session: AsyncSession,
    connection: MetaConnection,
    graph_client: GraphClient,
    token_service: TokenService,
    redis_client,
):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue(_request(connection).model_dump(mode="json"))
    processor = LaunchProcessor(graph_client, session_factory=_SharedSession(db_session), tokens=token_service)

    await queue.process_next(processor)

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result["campaign_id"].startswith("sandbox_")


@pytest.mark.asyncio
async def test_processor_rejects_invalid_payload(graph_client: GraphClient, token_service: TokenService, redis_client):
    queue = LaunchQueue(redis_client)
    job_id = await queue.enqueue({"name": "missing everything"})

    await queue.process_next(LaunchProcessor(graph_client, tokens=token_service))

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == "ValidationError"


@pytest.mark.asyncio
async def test_launch_on_zero_decimal_account_keeps_budget_units(
    db_session: AsyncSession, connection: MetaConnection, token_service: TokenService,
):
    """JPY-style account: 1000 goes out as 1000 and comes back from the confirm pull as 1000."""
    sandbox = SandboxTransport(currency="JPY", currency_offset=1)
    client = GraphClient(sandbox, sleep=_no_sleep)

    ids = await process_launch(
        db_session, client, _request(connection, daily_budget=Decimal("1000")), token_service,
    )

    assert sandbox.calls_to("POST", "act_123/adsets")[0].data["daily_budget"] == 1000
    ad_set = await db_session.scalar(select(AdSet).where(AdSet.ad_set_id == ids["ad_set_id"]))
    assert ad_set.budget == Decimal("1000.00")
    assert connection.currency_offset == 1
