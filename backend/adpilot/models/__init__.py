from adpilot.models.tenant import Tenant
from adpilot.models.meta_ads import (
    EntityLevel, ConnectionStatus, CampaignStatus, AdSetStatus, AdStatus, LogSeverity,
    MetaConnection, Campaign, AdSet, Ad, MODEL_BY_LEVEL, REMOTE_KEY_BY_LEVEL,
    PerformanceSnapshot, OptimizationLog,
)

__all__ = [
    "Tenant",
    # Meta Ads
    "EntityLevel",
    "ConnectionStatus",
    "CampaignStatus",
    "AdSetStatus",
    "AdStatus",
    "LogSeverity",
    "MetaConnection",
    "Campaign",
    "AdSet",
    "Ad",
    "MODEL_BY_LEVEL",
    "REMOTE_KEY_BY_LEVEL",
    "PerformanceSnapshot",
    "OptimizationLog",
]
