"""Launch processing: the multi-step create transaction and the worker loop."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adpilot.database import session_scope
from adpilot.meta.client import GraphClient
from adpilot.meta.errors import MetaAPIError, PreconditionFailedError
from adpilot.meta.mapper import DEFAULT_CURRENCY_OFFSET, new_temporary_id
from adpilot.meta.tokens import TokenService
from adpilot.models.meta_ads import (
    Ad,
    AdSet,
    Campaign,
    ConnectionStatus,
    EntityLevel,
    LogSeverity,
    MetaConnection,
    OptimizationLog,
)
from adpilot.schemas.launch import LaunchJob, LaunchRequest
from adpilot.services.creative_service import CreativeService, CreativeSpec
from adpilot.services.launch_queue import LaunchQueue, Processor
from adpilot.services.sync_service import ACCOUNT_FIELDS, MetaSyncService

logger = logging.getLogger(__name__)

IDLE_SLEEP_SECONDS = 1.0
ERROR_BACKOFF_SECONDS = 5.0


async def get_active_connection(db: AsyncSession, tenant_id, ad_account_id: str) -> MetaConnection | None:
    """Most recently created ACTIVE connection for the tenant / account pair."""
    result = await db.execute(
        select(MetaConnection)
        .where(
            MetaConnection.tenant_id == tenant_id,
            MetaConnection.ad_account_id == ad_account_id,
            MetaConnection.status == ConnectionStatus.ACTIVE.value,
        )
        .order_by(MetaConnection.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _currency_offset(client: GraphClient, token: str, connection: MetaConnection) -> int:
    """Read the account's currency offset and remember it on the connection."""
    known = connection.currency_offset or DEFAULT_CURRENCY_OFFSET
    try:
        account = await client.fetch_node(
            connection.ad_account_id, {"fields": ACCOUNT_FIELDS}, token, connection.principal,
        )
    except MetaAPIError as e:
        logger.warning("Could not read currency settings for %s, using offset %s: %r", connection.ad_account_id, known, e)
        return known
    offset = int(account.get("currency_offset") or known)
    logger.info("Ad account %s currency %s, offset %s", connection.ad_account_id, account.get("currency"), offset)
    connection.currency_offset = offset
    return offset


async def process_launch(
    db: AsyncSession,
    client: GraphClient,
    request: LaunchRequest,
    tokens: TokenService | None = None,
) -> dict:
    """Upload the creative, then create campaign -> ad set -> ad on Meta.

    Each created entity is committed locally with its remote id before the
    next create call, so a failure part-way never loses a remote id.
    """
    tokens = tokens or TokenService()
    connection = await get_active_connection(db, request.tenant_id, request.ad_account_id)
    if connection is None:
        raise PreconditionFailedError(
            f"No active Meta connection for tenant {request.tenant_id} / {request.ad_account_id}"
        )

    sync = MetaSyncService(db, client, tokens)
    creatives = CreativeService(client)
    principal = connection.principal
    account = connection.ad_account_id
    token = await tokens.ensure_fresh_credential(db, connection, client)

    # 1. Creative asset + ad creative
    image_hash = video_id = None
    if request.video_url:
        video_id = await creatives.upload_video(token, account, request.video_url, principal)
    else:
        image_hash = await creatives.upload_image(token, account, request.image_url, principal)

    creative_id = await creatives.create_ad_creative(
        token,
        account,
        CreativeSpec(
            name=f"{request.name} - Creative",
            page_id=request.page_id,
            link_url=request.link_url,
            message=request.primary_text,
            headline=request.headline,
            description=request.description,
            call_to_action=request.cta,
            image_hash=image_hash,
            video_id=video_id,
        ),
        principal,
    )

    # 2. Budget units for this account's currency
    offset = await _currency_offset(client, token, connection)

    # 3. Campaign
    campaign = Campaign(
        tenant_id=connection.tenant_id,
        account_id=account,
        campaign_id=new_temporary_id("cmp"),
        name=request.name,
        objective="OUTCOME_TRAFFIC",
        status="ACTIVE",
    )
    created = await sync.push(connection, campaign, offset)
    campaign.campaign_id = created["id"]
    db.add(campaign)
    await db.commit()
    logger.info("Launch: campaign created %s", campaign.campaign_id)

    # 4. Ad set
    now = datetime.now(timezone.utc)
    ad_set = AdSet(
        tenant_id=connection.tenant_id,
        account_id=account,
        ad_set_id=new_temporary_id("adset"),
        campaign_id=campaign.campaign_id,
        name=f"{request.name} - Ad Set",
        status="ACTIVE",
        budget=request.daily_budget,
        optimization_goal="LINK_CLICKS",
        targeting=request.targeting.model_dump(),
        learning_phase_status="NOT_STARTED",
        start_time=now,
        end_time=now + timedelta(days=request.duration_days),
    )
    created = await sync.push(connection, ad_set, offset)
    ad_set.ad_set_id = created["id"]
    db.add(ad_set)
    await db.commit()
    logger.info("Launch: ad set created %s", ad_set.ad_set_id)

    # 5. Ad
    ad = Ad(
        tenant_id=connection.tenant_id,
        account_id=account,
        ad_id=new_temporary_id("ad"),
        ad_set_id=ad_set.ad_set_id,
        campaign_id=campaign.campaign_id,
        name=f"{request.name} - Ad",
        status="ACTIVE",
        creative={"creative_id": creative_id, "headline": request.headline, "link_url": request.link_url},
    )
    created = await sync.push(connection, ad, offset)
    ad.ad_id = created["id"]
    db.add(ad)
    await db.commit()
    logger.info("Launch: ad created %s", ad.ad_id)

    # 6. Confirm against Meta; the next scheduled pull covers any miss
    for level, remote_id in (
        (EntityLevel.CAMPAIGN, campaign.campaign_id),
        (EntityLevel.AD_SET, ad_set.ad_set_id),
        (EntityLevel.AD, ad.ad_id),
    ):
        try:
            await sync.refresh_entity(connection, level, remote_id)
        except MetaAPIError as e:
            logger.warning("Launch: could not confirm %s %s: %r", level.value, remote_id, e)

    ids = {
        "campaign_id": campaign.campaign_id,
        "ad_set_id": ad_set.ad_set_id,
        "ad_id": ad.ad_id,
        "creative_id": creative_id,
    }
    db.add(OptimizationLog(
        tenant_id=connection.tenant_id,
        account_id=account,
        action="LAUNCH_SUCCESS",
        entity_type=EntityLevel.CAMPAIGN.value,
        entity_id=campaign.campaign_id,
        severity=LogSeverity.INFO.value,
        success=True,
        message=f'Campaign "{request.name}" launched and is now monitored',
        details=ids,
    ))
    await db.commit()
    return ids


class LaunchProcessor:
    """Queue processor: one database session per job."""

    def __init__(
        self,
        client: GraphClient,
        session_factory: async_sessionmaker | None = None,
        tokens: TokenService | None = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.tokens = tokens or TokenService()

    async def __call__(self, job: LaunchJob) -> dict:
        request = LaunchRequest.model_validate(job.payload)
        logger.info("LaunchWorker: processing job %s for tenant %s", job.id, request.tenant_id)
        async with session_scope(self.session_factory) as db:
            return await process_launch(db, self.client, request, self.tokens)


class LaunchWorker:
    """Poll the queue forever; one job at a time."""

    def __init__(
        self,
        queue: LaunchQueue,
        processor: Processor,
        idle_sleep: float = IDLE_SLEEP_SECONDS,
        error_backoff: float = ERROR_BACKOFF_SECONDS,
    ):
        self.queue = queue
        self.processor = processor
        self.idle_sleep = idle_sleep
        self.error_backoff = error_backoff
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        logger.info("LaunchWorker: started")
        while not self._stopping.is_set():
            try:
                processed = await self.queue.process_next(self.processor)
            except Exception:
                logger.exception("LaunchWorker: queue error, backing off %ss", self.error_backoff)
                await self._pause(self.error_backoff)
                continue
            if not processed:
                await self._pause(self.idle_sleep)
        logger.info("LaunchWorker: stopped")
