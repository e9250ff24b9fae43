"""Reconcile Meta campaigns / ad sets / ads with the local store, and push
local edits back."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpilot.meta.client import GraphClient
from adpilot.meta.errors import AuthExpiredError, MetaAPIError, PreconditionFailedError
from adpilot.meta.mapper import (
    AD_FIELDS,
    AD_SET_FIELDS,
    CAMPAIGN_FIELDS,
    DEFAULT_CURRENCY_OFFSET,
    INSIGHT_FIELDS,
    ad_set_to_remote,
    ad_to_remote,
    campaign_to_remote,
    is_temporary_id,
    map_ad,
    map_ad_set,
    map_campaign,
    map_insight_row,
)
from adpilot.meta.tokens import TokenService
from adpilot.models.meta_ads import (
    MODEL_BY_LEVEL,
    REMOTE_KEY_BY_LEVEL,
    Ad,
    AdSet,
    Campaign,
    ConnectionStatus,
    EntityLevel,
    MetaConnection,
    PerformanceSnapshot,
)

logger = logging.getLogger(__name__)

PAGE_LIMIT = 200
ACCOUNT_FIELDS = "currency,currency_offset"
ARCHIVED = "ARCHIVED"

_FIELDS = {
    EntityLevel.CAMPAIGN: CAMPAIGN_FIELDS,
    EntityLevel.AD_SET: AD_SET_FIELDS,
    EntityLevel.AD: AD_FIELDS,
}
_LEVEL_PARAM = {
    EntityLevel.CAMPAIGN: "campaign",
    EntityLevel.AD_SET: "adset",
    EntityLevel.AD: "ad",
}
_COUNT_KEY = {
    EntityLevel.CAMPAIGN: "campaigns",
    EntityLevel.AD_SET: "ad_sets",
    EntityLevel.AD: "ads",
}
_PARENT_COLUMNS = {"campaign_id", "ad_set_id"}


def _offset(connection: MetaConnection) -> int:
    return connection.currency_offset or DEFAULT_CURRENCY_OFFSET


async def _gather_or_cancel(*coros):
    """Like ``asyncio.gather``, but the first failure cancels the other calls."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass
class PullStats:
    campaigns_synced: int = 0
    ad_sets_synced: int = 0
    ads_synced: int = 0
    duration_ms: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class MetaSyncService:
    def __init__(self, db: AsyncSession, client: GraphClient, tokens: TokenService | None = None):
        self.db = db
        self.client = client
        self.tokens = tokens or TokenService()

    async def access_token(self, connection: MetaConnection) -> str:
        return await self.tokens.ensure_fresh_credential(self.db, connection, self.client)

    async def mark_expired(self, connection: MetaConnection, error: AuthExpiredError) -> None:
        logger.warning("[meta-sync] Token expired for connection %s: %s", connection.id, error.message)
        connection.status = ConnectionStatus.EXPIRED.value
        connection.status_reason = error.message
        await self.db.flush()

    # -- Pull --------------------------------------------------------------

    async def pull(self, connection: MetaConnection) -> PullStats:
        """Fetch all three levels for the ad account and upsert them by remote id."""
        started = time.monotonic()
        account = connection.ad_account_id
        principal = connection.principal
        logger.info("[meta-sync] Pulling account %s for tenant %s", account, connection.tenant_id)

        try:
            token = await self.access_token(connection)
            account_node, campaigns, ad_sets, ads = await _gather_or_cancel(
                self.client.fetch_node(account, {"fields": ACCOUNT_FIELDS}, token, principal),
                self.client.fetch_all(
                    f"{account}/campaigns", {"fields": CAMPAIGN_FIELDS, "limit": PAGE_LIMIT}, token, principal,
                ),
                self.client.fetch_all(
                    f"{account}/adsets", {"fields": AD_SET_FIELDS, "limit": PAGE_LIMIT}, token, principal,
                ),
                self.client.fetch_all(
                    f"{account}/ads", {"fields": AD_FIELDS, "limit": PAGE_LIMIT}, token, principal,
                ),
            )
        except AuthExpiredError as e:
            await self.mark_expired(connection, e)
            raise
        except MetaAPIError as e:
            logger.error("[meta-sync] Pull failed for account %s: %r", account, e)
            raise

        logger.info(
            "[meta-sync] Fetched %d campaigns, %d ad sets, %d ads from Meta",
            len(campaigns), len(ad_sets), len(ads),
        )

        # Parent lookup from this batch
        campaign_by_ad_set = {a["id"]: a.get("campaign_id") for a in ad_sets if a.get("id")}

        offset = int(account_node.get("currency_offset") or _offset(connection))
        connection.currency_offset = offset
        stats = PullStats()
        for remote in campaigns:
            await self._upsert(connection, EntityLevel.CAMPAIGN, map_campaign(remote, offset))
            stats.campaigns_synced += 1
        for remote in ad_sets:
            await self._upsert(connection, EntityLevel.AD_SET, map_ad_set(remote, currency_offset=offset))
            stats.ad_sets_synced += 1
        for remote in ads:
            mapped = map_ad(remote, campaign_id=campaign_by_ad_set.get(remote.get("adset_id")))
            await self._upsert(connection, EntityLevel.AD, mapped)
            stats.ads_synced += 1

        connection.last_synced_at = datetime.now(timezone.utc)
        await self.db.flush()

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("[meta-sync] Pull complete for %s: %s", account, stats.as_dict())
        return stats

    async def _upsert(self, connection: MetaConnection, level: EntityLevel, fields: dict):
        model = MODEL_BY_LEVEL[level]
        key_column = REMOTE_KEY_BY_LEVEL[level]
        result = await self.db.execute(
            select(model).where(getattr(model, key_column) == fields[key_column])
        )
        row = result.scalar_one_or_none()
        now = datetime.now(timezone.utc)
        if row is None:
            row = model(
                tenant_id=connection.tenant_id,
                account_id=connection.ad_account_id,
                synced_at=now,
                **fields,
            )
            self.db.add(row)
        else:
            for name, value in fields.items():
                if name in _PARENT_COLUMNS and not value:
                    continue
                if getattr(row, name) != value:
                    setattr(row, name, value)
            row.synced_at = now
        await self.db.flush()
        return row

    async def refresh_entity(self, connection: MetaConnection, level: EntityLevel, remote_id: str):
        """Re-pull a single node (post-launch confirmation, webhook updates)."""
        token = await self.access_token(connection)
        remote = await self.client.fetch_node(
            remote_id, {"fields": _FIELDS[level]}, token, connection.principal,
        )
        if level == EntityLevel.CAMPAIGN:
            fields = map_campaign(remote, _offset(connection))
        elif level == EntityLevel.AD_SET:
            fields = map_ad_set(remote, currency_offset=_offset(connection))
        else:
            fields = map_ad(remote)
        return await self._upsert(connection, level, fields)

    # -- Performance -------------------------------------------------------

    async def pull_performance(self, connection: MetaConnection, date_preset: str = "last_7d") -> dict:
        """Upsert daily snapshots for every non-archived entity. One failing entity is skipped."""
        counts = {"campaigns": 0, "ad_sets": 0, "ads": 0}
        try:
            token = await self.access_token(connection)
        except AuthExpiredError as e:
            await self.mark_expired(connection, e)
            raise

        for level, model in MODEL_BY_LEVEL.items():
            key_column = getattr(model, REMOTE_KEY_BY_LEVEL[level])
            result = await self.db.execute(
                select(key_column).where(
                    model.account_id == connection.ad_account_id,
                    model.status != ARCHIVED,
                )
            )
            for remote_id in result.scalars().all():
                if is_temporary_id(remote_id):
                    continue
                try:
                    await self._sync_entity_performance(connection, token, level, remote_id, date_preset)
                    counts[_COUNT_KEY[level]] += 1
                except AuthExpiredError as e:
                    await self.mark_expired(connection, e)
                    raise
                except MetaAPIError as e:
                    logger.warning(
                        "[meta-sync] Insights failed for %s %s, skipping: %r", level.value, remote_id, e,
                    )

        logger.info("[meta-sync] Performance sync for %s: %s", connection.ad_account_id, counts)
        return counts

    async def sync_entity_performance(
        self,
        connection: MetaConnection,
        level: EntityLevel,
        entity_id: str,
        date_preset: str = "last_7d",
    ) -> int:
        token = await self.access_token(connection)
        return await self._sync_entity_performance(connection, token, level, entity_id, date_preset)

    async def _sync_entity_performance(
        self, connection: MetaConnection, token: str, level: EntityLevel, entity_id: str, date_preset: str,
    ) -> int:
        rows = await self.client.fetch_insights(
            entity_id,
            {
                "fields": INSIGHT_FIELDS,
                "level": _LEVEL_PARAM[level],
                "date_preset": date_preset,
                "time_increment": 1,
            },
            token,
            connection.principal,
        )
        written = 0
        for row in rows:
            values = map_insight_row(row)
            if values["date"] is None:
                continue
            await self.upsert_snapshot(connection, level, entity_id, values)
            written += 1
        return written

    async def upsert_snapshot(
        self, connection: MetaConnection, level: EntityLevel, entity_id: str, values: dict,
    ) -> PerformanceSnapshot:
        """Insert or overwrite the snapshot for (level, entity, day)."""
        result = await self.db.execute(
            select(PerformanceSnapshot).where(
                PerformanceSnapshot.entity_type == level.value,
                PerformanceSnapshot.entity_id == entity_id,
                PerformanceSnapshot.date == values["date"],
            )
        )
        snapshot = result.scalar_one_or_none()
        if snapshot is None:
            snapshot = PerformanceSnapshot(
                tenant_id=connection.tenant_id,
                account_id=connection.ad_account_id,
                entity_type=level.value,
                entity_id=entity_id,
                **values,
            )
            self.db.add(snapshot)
        else:
            for name, value in values.items():
                setattr(snapshot, name, value)
        await self.db.flush()
        return snapshot

    # -- Push --------------------------------------------------------------

    async def push(
        self,
        connection: MetaConnection,
        entity: Campaign | AdSet | Ad,
        currency_offset: int | None = None,
    ) -> dict:
        """Create (temporary id) or update (remote id) *entity* on Meta.

        Returns the Graph response with ``id`` always set. Creates are not
        idempotent: persist the returned id before retrying. Budgets use the
        connection's currency offset unless *currency_offset* is given.
        """
        currency_offset = currency_offset or _offset(connection)
        if isinstance(entity, Campaign):
            creating = is_temporary_id(entity.campaign_id)
            data = campaign_to_remote(entity, currency_offset)
            edge = "campaigns"
        elif isinstance(entity, AdSet):
            creating = is_temporary_id(entity.ad_set_id)
            if creating and is_temporary_id(entity.campaign_id):
                raise PreconditionFailedError("campaign_id is required to create an ad set")
            data = ad_set_to_remote(entity, creating, currency_offset)
            edge = "adsets"
        elif isinstance(entity, Ad):
            creating = is_temporary_id(entity.ad_id)
            if creating and not (entity.creative or {}).get("creative_id"):
                raise PreconditionFailedError("creative_id is required to create an ad")
            if creating and is_temporary_id(entity.ad_set_id):
                raise PreconditionFailedError("ad_set_id is required to create an ad")
            data = ad_to_remote(entity, creating)
            edge = "ads"
        else:
            raise TypeError(f"Unsupported entity type: {type(entity).__name__}")

        token = await self.access_token(connection)
        path = f"{connection.ad_account_id}/{edge}" if creating else entity.remote_id
        logger.info(
            "Pushing %s to Meta (%s): %s",
            entity.level.value, "create" if creating else "update", entity.remote_id,
        )
        result = await self.client.post(path, data, token, connection.principal)
        if not creating:
            result = {"id": entity.remote_id, **result}
        return result

    async def push_entity(
        self,
        connection: MetaConnection,
        level: EntityLevel,
        entity: Campaign | AdSet | Ad,
        currency_offset: int | None = None,
    ) -> dict:
        expected = MODEL_BY_LEVEL.get(level)
        if expected is None or not isinstance(entity, expected):
            raise TypeError(f"{type(entity).__name__} cannot be pushed as {level}")
        return await self.push(connection, entity, currency_offset)

    async def archive(self, connection: MetaConnection, entity: Campaign | AdSet | Ad) -> bool:
        """Delete *entity* on Meta and keep the local row as ARCHIVED."""
        if not is_temporary_id(entity.remote_id):
            token = await self.access_token(connection)
            deleted = await self.client.delete(entity.remote_id, token, connection.principal)
            if not deleted:
                return False
        entity.status = ARCHIVED
        await self.db.flush()
        return True
