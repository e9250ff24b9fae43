"""Threshold optimization engine.

One cycle per connection: read 7-day metrics, evaluate each rule against each
entity of the rule's level, and either record a recommendation (MONITOR) or
push the change to Meta (ACTIVE). Every cycle is bracketed by CYCLE_START /
CYCLE_COMPLETE audit entries.
"""

import logging
import operator
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

import redis.asyncio as redis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from adpilot.config import Settings, get_settings
from adpilot.meta.client import GraphClient
from adpilot.meta.errors import AuthExpiredError, ConflictError, MetaAPIError, PreconditionFailedError, SyncError
from adpilot.meta.mapper import CENTS, extract_conversions, extract_revenue, to_decimal
from adpilot.models.meta_ads import (
    MODEL_BY_LEVEL,
    REMOTE_KEY_BY_LEVEL,
    AdSet,
    ConnectionStatus,
    EntityLevel,
    LogSeverity,
    MetaConnection,
    OptimizationLog,
    PerformanceSnapshot,
)
from adpilot.services.locks import hold_lock, lock_key
from adpilot.services.sync_service import MetaSyncService

logger = logging.getLogger(__name__)

MONITOR = "MONITOR"
ACTIVE = "ACTIVE"

LOCK_GRACE_SECONDS = 300
LEARNING = "LEARNING"

_COMPARATORS = {"GT": operator.gt, "LT": operator.lt}


# ---------------------------------------------------------------------------
# Rules & configuration
# ---------------------------------------------------------------------------

@dataclass
class EntityMetrics:
    entity_id: str
    name: str | None = None
    impressions: int = 0
    clicks: int = 0
    spend: Decimal = Decimal("0")
    conversions: int = 0
    revenue: Decimal = Decimal("0")


@dataclass(frozen=True)
class OptimizationRule:
    id: str
    name: str
    level: EntityLevel
    metric: str  # CPA | ROAS
    condition: str  # GT | LT
    threshold: float
    action: str  # PAUSE | SCALE_BUDGET
    min_spend: float = 0.0
    action_value: float | None = None
    # Only act on a sample large enough to trust (see OptimizerConfig.has_mature_sample)
    requires_mature_sample: bool = False

    def metric_value(self, m: EntityMetrics) -> float:
        spend = float(m.spend)
        if self.metric == "CPA":
            if m.conversions > 0:
                return spend / m.conversions
            # No conversions at all: treat the whole spend as the CPA once it is well past the limit
            return spend if spend > self.threshold * 1.5 else 0.0
        if self.metric == "ROAS":
            return float(m.revenue) / spend if spend > 0 else 0.0
        raise ValueError(f"Unknown metric {self.metric}")

    def triggered(self, m: EntityMetrics) -> bool:
        if float(m.spend) <= self.min_spend:
            return False
        return _COMPARATORS[self.condition](self.metric_value(m), self.threshold)


DEFAULT_RULES: tuple[OptimizationRule, ...] = (
    OptimizationRule(
        id="kill_high_cpa",
        name="Kill High CPA Ads",
        level=EntityLevel.AD,
        metric="CPA",
        condition="GT",
        threshold=50.0,
        action="PAUSE",
        min_spend=10.0,
    ),
    OptimizationRule(
        id="kill_high_cpa_ad_sets",
        name="Pause High CPA Ad Sets",
        level=EntityLevel.AD_SET,
        metric="CPA",
        condition="GT",
        threshold=50.0,
        action="PAUSE",
        min_spend=10.0,
    ),
    OptimizationRule(
        id="scale_high_roas",
        name="Scale High ROAS Ad Sets",
        level=EntityLevel.AD_SET,
        metric="ROAS",
        condition="GT",
        threshold=2.0,
        action="SCALE_BUDGET",
        action_value=0.2,
        min_spend=50.0,
        requires_mature_sample=True,
    ),
)


@dataclass(frozen=True)
class OptimizerConfig:
    """Read once at the start of a cycle; never re-read mid-cycle."""

    mode: str = MONITOR
    rules: tuple[OptimizationRule, ...] = DEFAULT_RULES
    date_preset: str = "last_7d"
    lookback_days: int = 7
    min_impressions: int = 1000
    min_clicks: int = 100
    min_conversions: int = 10

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OptimizerConfig":
        settings = settings or get_settings()
        mode = settings.optimization_mode.upper()
        return cls(mode=ACTIVE if mode == ACTIVE else MONITOR)

    @property
    def dry_run(self) -> bool:
        return self.mode != ACTIVE

    def has_mature_sample(self, m: EntityMetrics) -> bool:
        if m.impressions < self.min_impressions:
            return False
        return m.clicks >= self.min_clicks or m.conversions >= self.min_conversions


@dataclass
class OptimizationResult:
    rule_id: str
    entity_type: str
    entity_id: str
    action: str
    old_value: str
    new_value: str
    metric_value: float


# ---------------------------------------------------------------------------
# Insight sources
# ---------------------------------------------------------------------------

_GRAPH_LEVEL = {EntityLevel.CAMPAIGN: "campaign", EntityLevel.AD_SET: "adset", EntityLevel.AD: "ad"}
_ID_FIELD = {EntityLevel.CAMPAIGN: "campaign_id", EntityLevel.AD_SET: "adset_id", EntityLevel.AD: "ad_id"}
_NAME_FIELD = {EntityLevel.CAMPAIGN: "campaign_name", EntityLevel.AD_SET: "adset_name", EntityLevel.AD: "ad_name"}


class GraphInsightSource:
    """Account-level insights from Meta, one row per entity over the preset."""

    def __init__(self, client: GraphClient):
        self.client = client

    async def fetch(self, connection: MetaConnection, token: str, level: EntityLevel, config: OptimizerConfig):
        rows = await self.client.fetch_insights(
            connection.ad_account_id,
            {
                "level": _GRAPH_LEVEL[level],
                "date_preset": config.date_preset,
                "fields": f"{_ID_FIELD[level]},{_NAME_FIELD[level]},impressions,clicks,spend,actions,action_values",
            },
            token,
            connection.principal,
        )
        return [
            EntityMetrics(
                entity_id=row.get(_ID_FIELD[level]),
                name=row.get(_NAME_FIELD[level]),
                impressions=int(to_decimal(row.get("impressions"))),
                clicks=int(to_decimal(row.get("clicks"))),
                spend=to_decimal(row.get("spend")),
                conversions=extract_conversions(row.get("actions")),
                revenue=extract_revenue(row.get("action_values")),
            )
            for row in rows
            if row.get(_ID_FIELD[level])
        ]


class SnapshotInsightSource:
    """Aggregate stored daily snapshots of exactly one level (no cross-level sums)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def fetch(self, connection: MetaConnection, token: str, level: EntityLevel, config: OptimizerConfig):
        since = date.today() - timedelta(days=config.lookback_days)
        result = await self.db.execute(
            select(
                PerformanceSnapshot.entity_id,
                func.sum(PerformanceSnapshot.impressions),
                func.sum(PerformanceSnapshot.clicks),
                func.sum(PerformanceSnapshot.spend),
                func.sum(PerformanceSnapshot.conversions),
                func.sum(PerformanceSnapshot.revenue),
            )
            .where(
                PerformanceSnapshot.account_id == connection.ad_account_id,
                PerformanceSnapshot.entity_type == level.value,
                PerformanceSnapshot.date >= since,
            )
            .group_by(PerformanceSnapshot.entity_id)
        )
        return [
            EntityMetrics(
                entity_id=entity_id,
                impressions=int(impressions or 0),
                clicks=int(clicks or 0),
                spend=to_decimal(spend),
                conversions=int(conversions or 0),
                revenue=to_decimal(revenue),
            )
            for entity_id, impressions, clicks, spend, conversions, revenue in result.all()
        ]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class OptimizationEngine:
    def __init__(self, db: AsyncSession, sync: MetaSyncService, insights, config: OptimizerConfig):
        self.db = db
        self.sync = sync
        self.insights = insights
        self.config = config

    def _log(self, connection: MetaConnection, **fields) -> OptimizationLog:
        entry = OptimizationLog(tenant_id=connection.tenant_id, account_id=connection.ad_account_id, **fields)
        self.db.add(entry)
        return entry

    async def run_cycle(self, connection: MetaConnection) -> list[OptimizationResult]:
        if connection.status != ConnectionStatus.ACTIVE.value:
            raise PreconditionFailedError(f"Connection {connection.id} is {connection.status}")

        config = self.config
        logger.info(
            "[optimizer] Cycle start for %s (%s)", connection.ad_account_id, config.mode,
        )
        self._log(
            connection,
            action="CYCLE_START",
            entity_type="ACCOUNT",
            entity_id=connection.ad_account_id,
            reason="Scheduled health check",
            message="Starting optimization health check",
            severity=LogSeverity.INFO.value,
            details={"mode": config.mode},
        )
        await self.db.flush()

        try:
            token = await self.sync.access_token(connection)
            metrics_by_level = {}
            for level in {rule.level for rule in config.rules}:
                metrics_by_level[level] = await self.insights.fetch(connection, token, level, config)
        except AuthExpiredError as e:
            await self.sync.mark_expired(connection, e)
            raise

        results: list[OptimizationResult] = []
        for rule in config.rules:
            for metrics in metrics_by_level.get(rule.level, []):
                try:
                    outcome = await self._evaluate(connection, rule, metrics)
                except (MetaAPIError, SyncError) as e:
                    logger.error("[optimizer] Rule %s failed for %s: %r", rule.id, metrics.entity_id, e)
                    self._log(
                        connection,
                        action=f"{rule.action}_FAILED",
                        entity_type=rule.level.value,
                        entity_id=metrics.entity_id,
                        rule_id=rule.id,
                        success=False,
                        severity=LogSeverity.ERROR.value,
                        message=str(e),
                        details={"kind": e.kind.value},
                    )
                    await self.db.flush()
                    continue
                if outcome is not None:
                    results.append(outcome)

        self._log(
            connection,
            action="CYCLE_COMPLETE",
            entity_type="ACCOUNT",
            entity_id=connection.ad_account_id,
            reason="Scheduled health check",
            message=f"Optimization cycle complete ({config.mode}). Found {len(results)} recommendations/actions.",
            severity=LogSeverity.INFO.value,
            details={"actionCount": len(results), "mode": config.mode},
        )
        await self.db.flush()
        logger.info("[optimizer] Cycle complete for %s: %d actions", connection.ad_account_id, len(results))
        return results

    async def _load(self, level: EntityLevel, remote_id: str):
        model = MODEL_BY_LEVEL[level]
        key = getattr(model, REMOTE_KEY_BY_LEVEL[level])
        result = await self.db.execute(select(model).where(key == remote_id))
        return result.scalar_one_or_none()

    async def _check_version(self, entity) -> None:
        model = type(entity)
        current = await self.db.scalar(
            select(model.version).where(model.id == entity.id)
        )
        if current != entity.version:
            raise ConflictError(
                f"{entity.level.value} {entity.remote_id} changed since it was read "
                f"(version {entity.version} -> {current})"
            )

    async def _apply(self, connection: MetaConnection, level: EntityLevel, entity, attr: str, value) -> None:
        """Push one change and store it inside a savepoint.

        A failure rolls back only this entity's change and reloads the row, so
        the rest of the cycle carries on. A row that moved on between the
        version check and the flush surfaces as ConflictError.
        """
        # credential refreshes are kept outside the savepoint
        await self.sync.access_token(connection)
        try:
            async with self.db.begin_nested():
                setattr(entity, attr, value)
                await self.sync.push_entity(connection, level, entity)
        except StaleDataError as e:
            await self.db.refresh(entity)
            raise ConflictError(
                f"{entity.level.value} {entity.remote_id} changed while it was being updated "
                f"(the change had already been sent to Meta)"
            ) from e
        except Exception:
            await self.db.refresh(entity)
            raise

    async def _evaluate(self, connection: MetaConnection, rule: OptimizationRule, metrics: EntityMetrics):
        if not rule.triggered(metrics):
            return None
        if rule.requires_mature_sample and not self.config.has_mature_sample(metrics):
            logger.info(
                "[optimizer] %s: sample too small for %s (%d impressions, %d clicks, %d conversions)",
                rule.id, metrics.entity_id, metrics.impressions, metrics.clicks, metrics.conversions,
            )
            return None
        value = rule.metric_value(metrics)
        entity = await self._load(rule.level, metrics.entity_id)
        if entity is None or entity.status != "ACTIVE":
            return None
        if isinstance(entity, AdSet) and entity.learning_phase_status == LEARNING:
            logger.info("[optimizer] Ad set %s is still learning, leaving it alone", entity.remote_id)
            return None

        name = metrics.name or entity.name
        label = rule.level.value.replace("_", " ").lower()
        if rule.action == "PAUSE":
            attr, old, new = "status", entity.status, "PAUSED"
            recommend_action, active_action = "RECOMMEND_PAUSE", "PAUSE"
            summary = f'{rule.metric} {value:.2f} > {rule.threshold:g}'
            text = f'paused {label} "{name}" because {summary}'
        elif rule.action == "SCALE_BUDGET":
            if not entity.budget:
                return None
            old = entity.budget
            new = (old * (Decimal(1) + Decimal(str(rule.action_value or 0.2)))).quantize(CENTS, rounding=ROUND_HALF_UP)
            attr = "budget"
            recommend_action, active_action = "RECOMMEND_SCALE", "SCALE_BUDGET"
            text = f'increased budget for "{name}" from {old} to {new} ({rule.metric} {value:.2f})'
        else:
            raise ValueError(f"Unknown action {rule.action}")

        details = {
            "metric": rule.metric,
            "value": round(value, 4),
            "threshold": rule.threshold,
            "spend": float(metrics.spend),
            "conversions": metrics.conversions,
            "revenue": float(metrics.revenue),
        }

        if self.config.dry_run:
            action = recommend_action
            self._log(
                connection,
                action=action,
                entity_type=rule.level.value,
                entity_id=entity.remote_id,
                rule_id=rule.id,
                reason=f"{rule.name} (monitor only)",
                previous_value=str(old),
                new_value=str(new),
                severity=LogSeverity.INFO.value,
                message=f"[SIMULATION] Would have {text}",
                details=details,
            )
        else:
            action = active_action
            await self._check_version(entity)
            await self._apply(connection, rule.level, entity, attr, new)
            self._log(
                connection,
                action=action,
                entity_type=rule.level.value,
                entity_id=entity.remote_id,
                rule_id=rule.id,
                reason=rule.name,
                previous_value=str(old),
                new_value=str(new),
                severity=LogSeverity.ACTION.value,
                message=text[0].upper() + text[1:],
                details=details,
            )
        await self.db.flush()
        logger.info("[optimizer] %s %s %s (%s=%.2f)", action, rule.level.value, entity.remote_id, rule.metric, value)
        return OptimizationResult(
            rule_id=rule.id,
            entity_type=rule.level.value,
            entity_id=entity.remote_id,
            action=action,
            old_value=str(old),
            new_value=str(new),
            metric_value=value,
        )


# ---------------------------------------------------------------------------
# Locked entry point
# ---------------------------------------------------------------------------

def cycle_lock_ttl(interval_minutes: int) -> int:
    return interval_minutes * 60 + LOCK_GRACE_SECONDS


async def run_locked_cycle(
    redis_client: redis.Redis,
    db: AsyncSession,
    client: GraphClient,
    connection_id: uuid.UUID,
    config: OptimizerConfig | None = None,
    settings: Settings | None = None,
    insights=None,
) -> list[OptimizationResult] | None:
    """Run one cycle under the per-connection lock. Returns None when the lock is held elsewhere."""
    settings = settings or get_settings()
    config = config or OptimizerConfig.from_settings(settings)
    key = lock_key(settings.lock_namespace, f"optimization:{connection_id}")

    async with hold_lock(redis_client, key, cycle_lock_ttl(settings.optimization_interval_minutes)) as acquired:
        if not acquired:
            return None
        connection = await db.get(MetaConnection, connection_id)
        if connection is None:
            raise PreconditionFailedError(f"Connection {connection_id} not found")
        if insights is None:
            insights = SnapshotInsightSource(db) if settings.meta_sandbox_mode else GraphInsightSource(client)
        engine = OptimizationEngine(db, MetaSyncService(db, client), insights, config)
        return await engine.run_cycle(connection)
