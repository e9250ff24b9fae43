"""Pure translation between Graph payloads and local rows.

Every function here is total: missing or malformed remote fields fall back
to documented defaults instead of raising.
"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from adpilot.models.meta_ads import AdSetStatus, AdStatus, CampaignStatus

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp_"
DEFAULT_CURRENCY_OFFSET = 100
CENTS = Decimal("0.01")

CAMPAIGN_FIELDS = "id,name,objective,status,daily_budget,lifetime_budget,start_time,stop_time,updated_time"
AD_SET_FIELDS = (
    "id,name,status,campaign_id,daily_budget,lifetime_budget,targeting,optimization_goal,"
    "billing_event,bid_amount,learning_stage_info,start_time,end_time,updated_time"
)
AD_FIELDS = (
    "id,name,status,effective_status,adset_id,campaign_id,issues_info,"
    "creative{id,name,title,body,object_story_spec,call_to_action_type,image_url,thumbnail_url,link_url}"
)
INSIGHT_FIELDS = "campaign_id,adset_id,ad_id,impressions,clicks,spend,actions,action_values,date_start,date_stop"

CONVERSION_PATTERNS = ("purchase", "lead", "conversion")
REVENUE_PATTERNS = ("purchase", "revenue")

_EFFECTIVE_STATUSES = {
    "ACTIVE", "PAUSED", "DISAPPROVED", "PENDING_REVIEW", "ARCHIVED",
    "DELETED", "ADSET_PAUSED", "CAMPAIGN_PAUSED",
}


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def new_temporary_id(kind: str = "") -> str:
    prefix = f"{TEMP_ID_PREFIX}{kind}_" if kind else TEMP_ID_PREFIX
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def is_temporary_id(value: str | None) -> bool:
    return not value or value.startswith(TEMP_ID_PREFIX)


# ---------------------------------------------------------------------------
# Status normalisation
# ---------------------------------------------------------------------------

def _normalize(value, allowed: type, default: str) -> str:
    if not value:
        return default
    upper = str(value).upper()
    return upper if upper in allowed.__members__ else default


def normalize_campaign_status(value: str | None) -> str:
    return _normalize(value, CampaignStatus, CampaignStatus.DRAFT.value)


def normalize_ad_set_status(value: str | None) -> str:
    return _normalize(value, AdSetStatus, AdSetStatus.DRAFT.value)


def normalize_ad_status(value: str | None) -> str:
    return _normalize(value, AdStatus, AdStatus.DRAFT.value)


def normalize_effective_status(value: str | None) -> str:
    if not value:
        return "PAUSED"
    upper = str(value).upper()
    return upper if upper in _EFFECTIVE_STATUSES else "PAUSED"


def normalize_learning_phase(value: str | None) -> str:
    if not value:
        return "NOT_STARTED"
    upper = str(value).upper()
    if "LEARNING" in upper:
        return "LEARNING"
    if "ACTIVE" in upper or "SUCCESS" in upper:
        return "ACTIVE"
    return "NOT_STARTED"


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------

def minor_to_major(value, offset: int = DEFAULT_CURRENCY_OFFSET) -> Decimal | None:
    """``"1234"`` cents -> ``Decimal("12.34")``. Missing, unparsable or negative -> None."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if amount < 0:
        logger.warning("Ignoring negative amount from Meta: %s", value)
        return None
    return (amount / Decimal(offset)).quantize(CENTS, rounding=ROUND_HALF_UP)


def major_to_minor(value, offset: int = DEFAULT_CURRENCY_OFFSET) -> int | None:
    """``Decimal("12.34")`` -> ``1234`` cents. Missing -> None."""
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return int((amount * Decimal(offset)).to_integral_value(rounding=ROUND_HALF_UP))


def to_decimal(value, default: Decimal = Decimal("0")) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else default
    except InvalidOperation:
        return default


def _to_int(value) -> int:
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, TypeError):
        return 0


def _parse_time(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        # Graph returns offsets like +0000
        try:
            return datetime.strptime(str(value), "%Y-%m-%dT%H:%M:%S%z")
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def _sum_matching(entries, patterns: tuple[str, ...]) -> Decimal:
    total = Decimal("0")
    if not isinstance(entries, list):
        return total
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        action_type = str(entry.get("action_type") or "").lower()
        if any(p in action_type for p in patterns):
            total += to_decimal(entry.get("value"))
    return total


def extract_conversions(actions) -> int:
    return int(_sum_matching(actions, CONVERSION_PATTERNS))


def extract_revenue(action_values) -> Decimal:
    return _sum_matching(action_values, REVENUE_PATTERNS).quantize(CENTS)


def map_insight_row(row: dict) -> dict:
    """One daily insight row -> PerformanceSnapshot column values."""
    day = row.get("date_start")
    try:
        snapshot_date = date.fromisoformat(day) if day else None
    except ValueError:
        snapshot_date = None
    return {
        "date": snapshot_date,
        "impressions": _to_int(row.get("impressions")),
        "clicks": _to_int(row.get("clicks")),
        "spend": to_decimal(row.get("spend")).quantize(CENTS),
        "conversions": extract_conversions(row.get("actions")),
        "revenue": extract_revenue(row.get("action_values")),
    }


# ---------------------------------------------------------------------------
# Targeting
# ---------------------------------------------------------------------------

def map_targeting(remote: dict | None) -> dict:
    if not isinstance(remote, dict) or not remote:
        return {}

    geo = remote.get("geo_locations") or {}
    countries = geo.get("countries") or []
    locations = [
        (c.get("key") if isinstance(c, dict) else c)
        for c in countries
    ]
    interests = list(remote.get("interests") or [])
    for spec in remote.get("flexible_spec") or []:
        interests.extend(spec.get("interests") or [])

    result = {
        "age_min": remote.get("age_min"),
        "age_max": remote.get("age_max"),
        "audience_size": remote.get("app_store_audience_size"),
        "genders": list(remote.get("genders") or []),
        "locations": [loc for loc in locations if loc],
        "interests": [i.get("name") for i in interests if isinstance(i, dict) and i.get("name")],
        "interest_ids": [str(i["id"]) for i in interests if isinstance(i, dict) and i.get("id")],
        "custom_audiences": list(remote.get("custom_audiences") or []),
        "lookalikes": [
            spec.get("name") for spec in remote.get("lookalike_specs") or []
            if isinstance(spec, dict) and spec.get("name")
        ],
        "exclusions": list(remote.get("excluded_custom_audiences") or []),
    }
    return {k: v for k, v in result.items() if v is not None}


def targeting_to_remote(targeting: dict | None) -> dict:
    targeting = targeting or {}
    result = {
        "age_min": targeting.get("age_min"),
        "age_max": targeting.get("age_max"),
        "genders": targeting.get("genders") or None,
        # Manual targeting: Advantage+ audience expansion off
        "targeting_automation": {"advantage_audience": 0},
    }
    if targeting.get("locations"):
        result["geo_locations"] = {"countries": list(targeting["locations"])}
    if targeting.get("interest_ids"):
        result["flexible_spec"] = [{"interests": [{"id": i} for i in targeting["interest_ids"]]}]
    if targeting.get("custom_audiences"):
        result["custom_audiences"] = targeting["custom_audiences"]
    if targeting.get("exclusions"):
        result["excluded_custom_audiences"] = targeting["exclusions"]
    return {k: v for k, v in result.items() if v is not None}


# ---------------------------------------------------------------------------
# Creative & issues
# ---------------------------------------------------------------------------

def map_creative(remote: dict | None) -> dict:
    if not isinstance(remote, dict) or not remote:
        return {}
    link_data = (remote.get("object_story_spec") or {}).get("link_data") or {}
    creative = {
        "creative_id": remote.get("id") or remote.get("creative_id"),
        "headline": remote.get("title") or link_data.get("name") or remote.get("name"),
        "body": remote.get("body") or link_data.get("message"),
        "call_to_action": (link_data.get("call_to_action") or {}).get("type") or remote.get("call_to_action_type"),
        "link_url": remote.get("link_url") or link_data.get("link"),
        "image_url": remote.get("image_url") or remote.get("thumbnail_url"),
    }
    return {k: v for k, v in creative.items() if v is not None}


def map_issues(effective_status: str | None, issues_info) -> list[dict]:
    issues = []
    for issue in issues_info if isinstance(issues_info, list) else []:
        if not isinstance(issue, dict):
            continue
        issues.append({
            "error_code": str(issue.get("error_code", "")),
            "error_message": issue.get("error_message"),
            "error_summary": issue.get("error_summary"),
            "level": "ERROR" if issue.get("level") == "ERROR" else "WARNING",
        })
    if (effective_status or "").upper() == "DISAPPROVED" and not issues:
        issues.append({"error_code": "DISAPPROVED", "error_message": "Ad disapproved by Meta", "level": "ERROR"})
    return issues


# ---------------------------------------------------------------------------
# Remote -> local
# ---------------------------------------------------------------------------

def map_campaign(remote: dict, currency_offset: int = DEFAULT_CURRENCY_OFFSET) -> dict:
    return {
        "campaign_id": remote["id"],
        "name": remote.get("name") or "",
        "objective": remote.get("objective") or "OUTCOME_TRAFFIC",
        "status": normalize_campaign_status(remote.get("status")),
        "budget": minor_to_major(remote.get("daily_budget"), currency_offset),
        "lifetime_budget": minor_to_major(remote.get("lifetime_budget"), currency_offset),
        "start_time": _parse_time(remote.get("start_time")),
        "end_time": _parse_time(remote.get("stop_time")),
        "raw_data": remote,
    }


def map_ad_set(
    remote: dict, campaign_id: str | None = None, currency_offset: int = DEFAULT_CURRENCY_OFFSET,
) -> dict:
    learning = (remote.get("learning_stage_info") or {}).get("status") or remote.get("learning_phase_status")
    bid = remote.get("bid_amount")
    return {
        "ad_set_id": remote["id"],
        "campaign_id": remote.get("campaign_id") or campaign_id or "",
        "name": remote.get("name") or "",
        "status": normalize_ad_set_status(remote.get("status")),
        "budget": minor_to_major(remote.get("daily_budget"), currency_offset),
        "lifetime_budget": minor_to_major(remote.get("lifetime_budget"), currency_offset),
        "targeting": map_targeting(remote.get("targeting")),
        "optimization_goal": remote.get("optimization_goal") or "LINK_CLICKS",
        "billing_event": remote.get("billing_event"),
        "bid_amount": _to_int(bid) if bid is not None else None,
        "learning_phase_status": normalize_learning_phase(learning),
        "start_time": _parse_time(remote.get("start_time")),
        "end_time": _parse_time(remote.get("end_time")),
        "raw_data": remote,
    }


def map_ad(remote: dict, ad_set_id: str | None = None, campaign_id: str | None = None) -> dict:
    effective = normalize_effective_status(remote.get("effective_status"))
    return {
        "ad_id": remote["id"],
        "ad_set_id": remote.get("adset_id") or ad_set_id or "",
        "campaign_id": remote.get("campaign_id") or campaign_id or "",
        "name": remote.get("name") or "",
        "status": normalize_ad_status(remote.get("status")),
        "effective_status": effective,
        "creative": map_creative(remote.get("creative")),
        "issues": map_issues(remote.get("effective_status"), remote.get("issues_info")),
        "raw_data": remote,
    }


# ---------------------------------------------------------------------------
# Local -> remote
# ---------------------------------------------------------------------------

def campaign_to_remote(campaign, currency_offset: int = DEFAULT_CURRENCY_OFFSET) -> dict:
    data = {
        "name": campaign.name,
        "status": campaign.status,
        "objective": campaign.objective or "OUTCOME_TRAFFIC",
        "special_ad_categories": [],
    }
    if campaign.budget:
        data["daily_budget"] = major_to_minor(campaign.budget, currency_offset)
    return data


def ad_set_to_remote(ad_set, creating: bool, currency_offset: int = DEFAULT_CURRENCY_OFFSET) -> dict:
    goal = ad_set.optimization_goal or "LINK_CLICKS"
    data = {
        "name": ad_set.name,
        "status": ad_set.status,
        "optimization_goal": goal,
        "targeting": targeting_to_remote(ad_set.targeting),
    }
    if ad_set.budget:
        data["daily_budget"] = major_to_minor(ad_set.budget, currency_offset)
    if ad_set.start_time:
        data["start_time"] = ad_set.start_time.isoformat()
    if ad_set.end_time:
        data["end_time"] = ad_set.end_time.isoformat()
    if creating:
        data["campaign_id"] = ad_set.campaign_id
        if goal == "LINK_CLICKS":
            data["billing_event"] = "LINK_CLICKS"
            data["bid_amount"] = ad_set.bid_amount or 50
        else:
            data["billing_event"] = "IMPRESSIONS"
            data["bid_amount"] = ad_set.bid_amount or 500
    return data


def ad_to_remote(ad, creating: bool) -> dict:
    data = {"name": ad.name, "status": ad.status}
    if creating:
        data["adset_id"] = ad.ad_set_id
        data["creative"] = {"creative_id": (ad.creative or {}).get("creative_id")}
    return data
