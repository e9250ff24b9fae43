"""create tenants and meta ads tables

Revision ID: 001
Revises:
Create Date: 2026-10-17

Creates:
- tenants
- meta_connections
- meta_campaigns, meta_ad_sets, meta_ads
- meta_performance_snapshots
- meta_optimization_logs
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _tenant_fk(nullable: bool = False) -> sa.Column:
    return sa.Column(
        "tenant_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=nullable,
        index=True,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _sync_columns() -> list[sa.Column]:
    return [
        sa.Column("raw_data", postgresql.JSONB, server_default="{}"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("synced_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, server_default="true"),
        sa.Column("settings", postgresql.JSONB, server_default="{}"),
        *_timestamps(),
    )

    # ---- Connections ----

    op.create_table(
        "meta_connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_fk(),
        sa.Column("ad_account_id", sa.String(50), nullable=False),
        sa.Column("fb_user_id", sa.String(50)),
        sa.Column("access_token_encrypted", sa.Text, nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text),
        sa.Column("token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("scopes", postgresql.JSONB, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("status_reason", sa.Text),
        sa.Column("currency_offset", sa.Integer, nullable=False, server_default="100"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_meta_connections_tenant_account_status",
        "meta_connections",
        ["tenant_id", "ad_account_id", "status"],
    )

    # ---- Campaign hierarchy ----

    op.create_table(
        "meta_campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_fk(),
        sa.Column("account_id", sa.String(50), nullable=False),
        sa.Column("campaign_id", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(400), nullable=False),
        sa.Column("objective", sa.String(50)),
        sa.Column("status", sa.String(30), nullable=False, server_default="DRAFT"),
        sa.Column("budget", sa.Numeric(12, 2)),
        sa.Column("lifetime_budget", sa.Numeric(12, 2)),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        *_sync_columns(),
    )
    op.create_index("ix_meta_campaigns_account_status", "meta_campaigns", ["account_id", "status"])

    op.create_table(
        "meta_ad_sets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_fk(),
        sa.Column("account_id", sa.String(50), nullable=False),
        sa.Column("ad_set_id", sa.String(64), nullable=False, unique=True),
        sa.Column("campaign_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("name", sa.String(400), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="DRAFT"),
        sa.Column("budget", sa.Numeric(12, 2)),
        sa.Column("lifetime_budget", sa.Numeric(12, 2)),
        sa.Column("targeting", postgresql.JSONB, server_default="{}"),
        sa.Column("optimization_goal", sa.String(50)),
        sa.Column("billing_event", sa.String(50)),
        sa.Column("bid_amount", sa.Integer),
        sa.Column("learning_phase_status", sa.String(20)),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        *_sync_columns(),
    )
    op.create_index("ix_meta_ad_sets_campaign_status", "meta_ad_sets", ["campaign_id", "status"])
    op.create_index("ix_meta_ad_sets_account_status", "meta_ad_sets", ["account_id", "status"])

    op.create_table(
        "meta_ads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_fk(),
        sa.Column("account_id", sa.String(50), nullable=False),
        sa.Column("ad_id", sa.String(64), nullable=False, unique=True),
        sa.Column("ad_set_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("campaign_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("name", sa.String(400), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="DRAFT"),
        sa.Column("effective_status", sa.String(40)),
        sa.Column("creative", postgresql.JSONB, server_default="{}"),
        sa.Column("issues", postgresql.JSONB, server_default="[]"),
        *_sync_columns(),
    )
    op.create_index("ix_meta_ads_ad_set_status", "meta_ads", ["ad_set_id", "status"])
    op.create_index("ix_meta_ads_account_status", "meta_ads", ["account_id", "status"])

    # ---- Performance ----

    op.create_table(
        "meta_performance_snapshots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_fk(nullable=True),
        sa.Column("account_id", sa.String(50), nullable=False, index=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("impressions", sa.Integer, server_default="0"),
        sa.Column("clicks", sa.Integer, server_default="0"),
        sa.Column("spend", sa.Numeric(12, 2), server_default="0"),
        sa.Column("conversions", sa.Integer, server_default="0"),
        sa.Column("revenue", sa.Numeric(12, 2), server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("entity_type", "entity_id", "date", name="uq_meta_snapshot_entity_date"),
    )

    # ---- Optimization audit trail ----

    op.create_table(
        "meta_optimization_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_fk(nullable=True),
        sa.Column("account_id", sa.String(50), nullable=False),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("rule_id", sa.String(80)),
        sa.Column("reason", sa.Text),
        sa.Column("previous_value", sa.String(100)),
        sa.Column("new_value", sa.String(100)),
        sa.Column("severity", sa.String(10), nullable=False, server_default="INFO"),
        sa.Column("success", sa.Boolean, server_default="true"),
        sa.Column("message", sa.Text, nullable=False, server_default=""),
        sa.Column("details", postgresql.JSONB, server_default="{}"),
        sa.Column("executed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_meta_optimization_logs_account_executed",
        "meta_optimization_logs",
        ["account_id", "executed_at"],
    )
    op.create_index(
        "ix_meta_optimization_logs_entity",
        "meta_optimization_logs",
        ["entity_type", "entity_id"],
    )


def downgrade() -> None:
    op.drop_table("meta_optimization_logs")
    op.drop_table("meta_performance_snapshots")
    op.drop_table("meta_ads")
    op.drop_table("meta_ad_sets")
    op.drop_table("meta_campaigns")
    op.drop_table("meta_connections")
    op.drop_table("tenants")
