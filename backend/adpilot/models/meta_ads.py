"""Meta Ads models: connections, the campaign / ad set / ad hierarchy,
daily performance snapshots and the optimization audit log."""

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from adpilot.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------

class EntityLevel(str, enum.Enum):
    CAMPAIGN = "CAMPAIGN"
    AD_SET = "AD_SET"
    AD = "AD"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    DISCONNECTED = "DISCONNECTED"


class CampaignStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"
    DRAFT = "DRAFT"
    LEARNING = "LEARNING"
    LEARNING_LIMITED = "LEARNING_LIMITED"


class AdSetStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"
    DRAFT = "DRAFT"


class AdStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"
    DRAFT = "DRAFT"


class LogSeverity(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ACTION = "ACTION"
    ERROR = "ERROR"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class MetaConnection(Base):
    """Encrypted credentials for one tenant / ad-account pair.

    Rows are never deleted; revocation and expiry are status transitions.
    """

    __tablename__ = "meta_connections"
    __table_args__ = (
        Index("ix_meta_connections_tenant_account_status", "tenant_id", "ad_account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ad_account_id: Mapped[str] = mapped_column(String(50), nullable=False)  # act_123456789
    fb_user_id: Mapped[str | None] = mapped_column(String(50))

    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    scopes: Mapped[list] = mapped_column(JSONB, default=list)
    status: Mapped[str] = mapped_column(String(20), default=ConnectionStatus.ACTIVE.value, nullable=False)
    status_reason: Mapped[str | None] = mapped_column(Text)
    # Minor units per major unit for this account (100 for USD, 1 for JPY)
    currency_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    tenant = relationship("Tenant", back_populates="meta_connections")

    @property
    def principal(self) -> str:
        """Identity the Graph call budget is tracked against."""
        return f"{self.tenant_id}:{self.ad_account_id}"


# ---------------------------------------------------------------------------
# Campaign hierarchy
#
# Entities are keyed by the remote id (or a ``tmp_`` placeholder before the
# create call returns). Parents are referenced by remote id so a pull can
# land children whose parent arrives in the same batch.
# ---------------------------------------------------------------------------

class Campaign(Base):
    __tablename__ = "meta_campaigns"
    __table_args__ = (
        Index("ix_meta_campaigns_account_status", "account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[str] = mapped_column(String(50), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(400), nullable=False)
    objective: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(30), default=CampaignStatus.DRAFT.value, nullable=False)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))  # daily, major units
    lifetime_budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    level = EntityLevel.CAMPAIGN

    @property
    def remote_id(self) -> str:
        return self.campaign_id


class AdSet(Base):
    __tablename__ = "meta_ad_sets"
    __table_args__ = (
        Index("ix_meta_ad_sets_campaign_status", "campaign_id", "status"),
        Index("ix_meta_ad_sets_account_status", "account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[str] = mapped_column(String(50), nullable=False)
    ad_set_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(400), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default=AdSetStatus.DRAFT.value, nullable=False)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    lifetime_budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    targeting: Mapped[dict] = mapped_column(JSONB, default=dict)
    optimization_goal: Mapped[str | None] = mapped_column(String(50))
    billing_event: Mapped[str | None] = mapped_column(String(50))
    bid_amount: Mapped[int | None] = mapped_column(Integer)  # minor units
    learning_phase_status: Mapped[str | None] = mapped_column(String(20))
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    level = EntityLevel.AD_SET

    @property
    def remote_id(self) -> str:
        return self.ad_set_id


class Ad(Base):
    __tablename__ = "meta_ads"
    __table_args__ = (
        Index("ix_meta_ads_ad_set_status", "ad_set_id", "status"),
        Index("ix_meta_ads_account_status", "account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[str] = mapped_column(String(50), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    ad_set_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(400), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default=AdStatus.DRAFT.value, nullable=False)
    effective_status: Mapped[str | None] = mapped_column(String(40))
    creative: Mapped[dict] = mapped_column(JSONB, default=dict)
    issues: Mapped[list] = mapped_column(JSONB, default=list)
    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    level = EntityLevel.AD

    @property
    def remote_id(self) -> str:
        return self.ad_id


MODEL_BY_LEVEL = {
    EntityLevel.CAMPAIGN: Campaign,
    EntityLevel.AD_SET: AdSet,
    EntityLevel.AD: Ad,
}

REMOTE_KEY_BY_LEVEL = {
    EntityLevel.CAMPAIGN: "campaign_id",
    EntityLevel.AD_SET: "ad_set_id",
    EntityLevel.AD: "ad_id",
}


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------

class PerformanceSnapshot(Base):
    """One day of metrics for one entity. Upserted on (entity_type, entity_id, date)."""

    __tablename__ = "meta_performance_snapshots"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "date", name="uq_meta_snapshot_entity_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    account_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    impressions: Mapped[int] = mapped_column(Integer, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    spend: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ---------------------------------------------------------------------------
# Optimization audit trail
# ---------------------------------------------------------------------------

class OptimizationLog(Base):
    """Append-only record of optimization cycles, rule outcomes and launches."""

    __tablename__ = "meta_optimization_logs"
    __table_args__ = (
        Index("ix_meta_optimization_logs_account_executed", "account_id", "executed_at"),
        Index("ix_meta_optimization_logs_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    account_id: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[str | None] = mapped_column(String(80))
    reason: Mapped[str | None] = mapped_column(Text)
    previous_value: Mapped[str | None] = mapped_column(String(100))
    new_value: Mapped[str | None] = mapped_column(String(100))
    severity: Mapped[str] = mapped_column(String(10), default=LogSeverity.INFO.value, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(OptimizationLog, "before_update")
def _reject_log_update(mapper, connection, target):
    raise AuditLogImmutableError("optimization log entries are append-only")
