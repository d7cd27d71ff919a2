"""
Per-campaign-type capability table.

Each campaign type (SP / SB / SD) talks to its own set of endpoints with its
own media types and body shapes. Everything type-specific lives in one
CampaignTypeRoutes entry: endpoints, request-body builders, wire-shape
normalizers and the set of operations the type supports. The fetch and
mutation clients only ever look things up here.
"""

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from adsync.models import CampaignType

LIST_STATES = ["ENABLED", "PAUSED"]
PAGE_SIZE = 100


class Operation(str, enum.Enum):
    FETCH_KEYWORDS = "fetch_keywords"
    FETCH_NEGATIVE_KEYWORDS = "fetch_negative_keywords"
    FETCH_TARGETS = "fetch_targets"
    UPDATE_CAMPAIGN_BUDGET = "update_campaign_budget"
    UPDATE_CAMPAIGN_STATE = "update_campaign_state"
    UPDATE_AD_GROUP_STATE = "update_ad_group_state"
    UPDATE_KEYWORD_BID = "update_keyword_bid"
    UPDATE_KEYWORD_STATE = "update_keyword_state"
    UPDATE_TARGET_BID = "update_target_bid"
    UPDATE_TARGET_STATE = "update_target_state"
    CREATE_CAMPAIGN = "create_campaign"
    CREATE_AD_GROUP = "create_ad_group"
    CREATE_KEYWORDS = "create_keywords"
    CREATE_NEGATIVE_KEYWORD = "create_negative_keyword"
    ARCHIVE_NEGATIVE_KEYWORD = "archive_negative_keyword"
    CREATE_TARGETS = "create_targets"
    ARCHIVE_TARGET = "archive_target"


class UnsupportedOperation(Exception):
    """The campaign type has no remote endpoint for the requested operation."""

    def __init__(self, campaign_type: CampaignType, operation: Operation):
        self.campaign_type = campaign_type
        self.operation = operation
        super().__init__(f"{operation.value} is not supported for {campaign_type.value} campaigns")


@dataclass(frozen=True)
class Endpoint:
    path: str
    media_type: str
    items_key: str  # list key in request bodies and responses
    id_field: str

    @property
    def list_path(self) -> str:
        return f"{self.path}/list"


# ── Wire-shape helpers ───────────────────────────────────────────────

def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def to_remote_state(state: str) -> str:
    return state.upper()


def to_remote_negative_match(match_type: str) -> str:
    """negativeExact -> NEGATIVE_EXACT"""
    return {"negativeexact": "NEGATIVE_EXACT", "negativephrase": "NEGATIVE_PHRASE"}.get(
        match_type.replace("_", "").lower(), match_type.upper()
    )


def from_remote_negative_match(match_type: Optional[str]) -> Optional[str]:
    """NEGATIVE_EXACT -> negativeExact"""
    if not match_type:
        return match_type
    return {"negativeexact": "negativeExact", "negativephrase": "negativePhrase"}.get(
        match_type.replace("_", "").lower(), match_type
    )


def _first_expression_type(expression: Any) -> str:
    if isinstance(expression, list) and expression and isinstance(expression[0], dict):
        return str(expression[0].get("type") or "unknown")
    return "unknown"


# ── Campaign normalizers ─────────────────────────────────────────────

def _campaign_common(raw: dict, profile_id: str, campaign_type: CampaignType) -> dict:
    return {
        "id": _str_id(raw.get("campaignId")),
        "profile_id": profile_id,
        "type": campaign_type.value,
        "name": raw.get("name") or "",
        "state": _lower(raw.get("state")) or "enabled",
        "start_date": raw.get("startDate"),
        "end_date": raw.get("endDate"),
        "targeting_type": None,
        "brand_entity_id": None,
        "tactic": None,
        "cost_type": None,
    }


def _normalize_sp_campaign(raw: dict, profile_id: str) -> dict:
    data = _campaign_common(raw, profile_id, CampaignType.SP)
    budget = raw.get("budget") or {}
    # SP nests the amount: {"budget": {"budget": 10.0, "budgetType": "DAILY"}}
    if isinstance(budget, dict):
        data["budget"] = budget.get("budget")
        data["budget_type"] = _lower(budget.get("budgetType")) or "daily"
    else:
        data["budget"] = budget
        data["budget_type"] = "daily"
    data["targeting_type"] = _lower(raw.get("targetingType"))
    return data


def _normalize_sb_campaign(raw: dict, profile_id: str) -> dict:
    data = _campaign_common(raw, profile_id, CampaignType.SB)
    data["budget"] = raw.get("budget")
    data["budget_type"] = _lower(raw.get("budgetType")) or "daily"
    data["brand_entity_id"] = raw.get("brandEntityId")
    return data


def _normalize_sd_campaign(raw: dict, profile_id: str) -> dict:
    data = _campaign_common(raw, profile_id, CampaignType.SD)
    data["budget"] = raw.get("budget")
    data["budget_type"] = _lower(raw.get("budgetType")) or "daily"
    data["tactic"] = raw.get("tactic")
    data["cost_type"] = raw.get("costType")
    return data


# ── Child-entity normalizers (shared across types) ───────────────────

def normalize_ad_group(raw: dict, campaign_type: CampaignType) -> dict:
    default_bid = raw.get("defaultBid")
    if default_bid is None:
        default_bid = raw.get("bid")  # SB v4 names it bid
    return {
        "id": _str_id(raw.get("adGroupId")),
        "campaign_id": _str_id(raw.get("campaignId")),
        "name": raw.get("name") or "",
        "state": _lower(raw.get("state")) or "enabled",
        "default_bid": default_bid,
        "campaign_type": campaign_type.value,
    }


def normalize_keyword(raw: dict, campaign_type: CampaignType) -> dict:
    return {
        "id": _str_id(raw.get("keywordId")),
        "ad_group_id": _str_id(raw.get("adGroupId")),
        "keyword_text": raw.get("keywordText") or "",
        "match_type": _lower(raw.get("matchType")) or "exact",
        "state": _lower(raw.get("state")) or "enabled",
        "bid": raw.get("bid"),
        "campaign_type": campaign_type.value,
    }


def normalize_negative_keyword(raw: dict, campaign_type: CampaignType, campaign_level: bool) -> dict:
    return {
        "id": _str_id(raw.get("keywordId")),
        "campaign_id": _str_id(raw.get("campaignId")),
        "ad_group_id": None if campaign_level else _str_id(raw.get("adGroupId")),
        "keyword_text": raw.get("keywordText") or "",
        "match_type": from_remote_negative_match(raw.get("matchType")),
        "state": _lower(raw.get("state")) or "enabled",
        "campaign_type": campaign_type.value,
    }


def normalize_target(raw: dict, campaign_type: CampaignType) -> dict:
    expression = raw.get("expression")
    if expression is None:
        expression = raw.get("expressions")  # SB v4
    if expression is None:
        expression = []
    return {
        "id": _str_id(raw.get("targetId")),
        "ad_group_id": _str_id(raw.get("adGroupId")),
        "campaign_type": campaign_type.value,
        "target_type": _first_expression_type(expression),
        "expression_type": _lower(raw.get("expressionType")) or "manual",
        "expression": json.dumps(expression),
        "state": _lower(raw.get("state")) or "enabled",
        "bid": raw.get("bid"),
    }


# ── Request-body builders ────────────────────────────────────────────

def _sp_campaign_body(data: dict) -> dict:
    body = {
        "name": data["name"],
        "targetingType": data["targeting_type"].upper(),
        "state": "ENABLED",
        "startDate": data["start_date"],
        "budget": {"budget": data["budget"], "budgetType": "DAILY"},
        "dynamicBidding": data.get("dynamic_bidding") or {"strategy": "LEGACY_FOR_SALES"},
    }
    if data.get("end_date"):
        body["endDate"] = data["end_date"]
    return body


def _sb_campaign_body(data: dict) -> dict:
    body = {
        "name": data["name"],
        "state": "ENABLED",
        "budget": data["budget"],
        "budgetType": "DAILY",
        "brandEntityId": data["brand_entity_id"],
        "startDate": data["start_date"],
    }
    if data.get("end_date"):
        body["endDate"] = data["end_date"]
    return body


def _sd_campaign_body(data: dict) -> dict:
    body = {
        "name": data["name"],
        "state": "ENABLED",
        "tactic": data["tactic"],
        "costType": data.get("cost_type") or "cpc",
        "budget": data["budget"],
        "budgetType": "DAILY",
        "startDate": data["start_date"],
    }
    if data.get("end_date"):
        body["endDate"] = data["end_date"]
    return body


def _sp_budget_body(campaign_id: str, budget: float) -> dict:
    return {"campaignId": campaign_id, "budget": {"budget": budget, "budgetType": "DAILY"}}


def _flat_budget_body(campaign_id: str, budget: float) -> dict:
    return {"campaignId": campaign_id, "budget": budget}


def _sp_ad_group_body(data: dict) -> dict:
    return {"campaignId": data["campaign_id"], "name": data["name"], "state": "ENABLED",
            "defaultBid": data["default_bid"]}


def _sb_ad_group_body(data: dict) -> dict:
    return {"campaignId": data["campaign_id"], "name": data["name"], "state": "ENABLED",
            "bid": data["default_bid"]}


def _sd_ad_group_body(data: dict) -> dict:
    return {"campaignId": data["campaign_id"], "name": data["name"], "state": "ENABLED",
            "defaultBid": data["default_bid"],
            "bidOptimization": data.get("bid_optimization") or "clicks"}


def keyword_body(data: dict) -> dict:
    body = {
        "campaignId": data["campaign_id"],
        "adGroupId": data["ad_group_id"],
        "keywordText": data["keyword_text"],
        "matchType": data["match_type"].upper(),
        "state": "ENABLED",
    }
    if data.get("bid") is not None:
        body["bid"] = data["bid"]
    return body


def _sp_target_body(data: dict) -> dict:
    body = {"campaignId": data["campaign_id"], "adGroupId": data["ad_group_id"],
            "expressionType": "MANUAL", "expression": data["expression"], "state": "ENABLED"}
    if data.get("bid") is not None:
        body["bid"] = data["bid"]
    return body


def _sb_target_body(data: dict) -> dict:
    body = {"campaignId": data["campaign_id"], "adGroupId": data["ad_group_id"],
            "expressions": data["expression"], "state": "ENABLED"}
    if data.get("bid") is not None:
        body["bid"] = data["bid"]
    return body


def _sd_target_body(data: dict) -> dict:
    body = {"adGroupId": data["ad_group_id"], "expression": data["expression"],
            "expressionType": "manual", "state": "ENABLED"}
    if data.get("bid") is not None:
        body["bid"] = data["bid"]
    return body


# ── The table ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CampaignTypeRoutes:
    campaign_type: CampaignType
    ad_product: str
    campaigns: Endpoint
    ad_groups: Endpoint
    normalize_campaign: Callable[[dict, str], dict]
    campaign_body: Callable[[dict], dict]
    budget_body: Callable[[str, float], dict]
    ad_group_body: Callable[[dict], dict]
    targets: Endpoint
    target_body: Callable[[dict], dict]
    keywords: Optional[Endpoint] = None
    negative_keywords: Optional[Endpoint] = None
    campaign_negative_keywords: Optional[Endpoint] = None
    report_types: dict = field(default_factory=dict)
    operations: frozenset = frozenset()

    def supports(self, operation: Operation) -> bool:
        return operation in self.operations

    def require(self, operation: Operation) -> None:
        if not self.supports(operation):
            raise UnsupportedOperation(self.campaign_type, operation)


_ALL_OPERATIONS = frozenset(Operation)
_NO_KEYWORD_OPERATIONS = _ALL_OPERATIONS - {
    Operation.FETCH_KEYWORDS,
    Operation.FETCH_NEGATIVE_KEYWORDS,
    Operation.UPDATE_KEYWORD_BID,
    Operation.UPDATE_KEYWORD_STATE,
    Operation.CREATE_KEYWORDS,
    Operation.CREATE_NEGATIVE_KEYWORD,
    Operation.ARCHIVE_NEGATIVE_KEYWORD,
}

ROUTES: dict[CampaignType, CampaignTypeRoutes] = {
    CampaignType.SP: CampaignTypeRoutes(
        campaign_type=CampaignType.SP,
        ad_product="SPONSORED_PRODUCTS",
        campaigns=Endpoint("/sp/campaigns", "application/vnd.spCampaign.v3+json", "campaigns", "campaignId"),
        ad_groups=Endpoint("/sp/adGroups", "application/vnd.spAdGroup.v3+json", "adGroups", "adGroupId"),
        keywords=Endpoint("/sp/keywords", "application/vnd.spKeyword.v3+json", "keywords", "keywordId"),
        negative_keywords=Endpoint(
            "/sp/negativeKeywords", "application/vnd.spNegativeKeyword.v3+json",
            "negativeKeywords", "keywordId",
        ),
        campaign_negative_keywords=Endpoint(
            "/sp/campaignNegativeKeywords", "application/vnd.spCampaignNegativeKeyword.v3+json",
            "campaignNegativeKeywords", "keywordId",
        ),
        targets=Endpoint("/sp/targets", "application/vnd.spTargetingClause.v3+json", "targetingClauses", "targetId"),
        normalize_campaign=_normalize_sp_campaign,
        campaign_body=_sp_campaign_body,
        budget_body=_sp_budget_body,
        ad_group_body=_sp_ad_group_body,
        target_body=_sp_target_body,
        report_types={"campaigns": "spCampaigns", "keywords": "spKeywords", "targets": "spTargets"},
        operations=_ALL_OPERATIONS,
    ),
    CampaignType.SB: CampaignTypeRoutes(
        campaign_type=CampaignType.SB,
        ad_product="SPONSORED_BRANDS",
        campaigns=Endpoint("/sb/v4/campaigns", "application/vnd.sbcampaignresource.v4+json", "campaigns", "campaignId"),
        ad_groups=Endpoint("/sb/v4/adGroups", "application/vnd.sbadgroupresource.v4+json", "adGroups", "adGroupId"),
        keywords=Endpoint("/sb/keywords", "application/vnd.sbkeywordresource.v4+json", "keywords", "keywordId"),
        negative_keywords=Endpoint(
            "/sb/negativeKeywords", "application/vnd.sbnegativekeywordresource.v4+json",
            "negativeKeywords", "keywordId",
        ),
        campaign_negative_keywords=Endpoint(
            "/sb/campaignNegativeKeywords", "application/vnd.sbcampaignnegativekeywordresource.v4+json",
            "campaignNegativeKeywords", "keywordId",
        ),
        targets=Endpoint("/sb/targets", "application/vnd.sbtargetresource.v4+json", "targets", "targetId"),
        normalize_campaign=_normalize_sb_campaign,
        campaign_body=_sb_campaign_body,
        budget_body=_flat_budget_body,
        ad_group_body=_sb_ad_group_body,
        target_body=_sb_target_body,
        report_types={"campaigns": "sbCampaigns", "keywords": "sbKeywords", "targets": "sbTargets"},
        operations=_ALL_OPERATIONS,
    ),
    CampaignType.SD: CampaignTypeRoutes(
        campaign_type=CampaignType.SD,
        ad_product="SPONSORED_DISPLAY",
        campaigns=Endpoint("/sd/campaigns", "application/vnd.sdcampaign.v3+json", "campaigns", "campaignId"),
        ad_groups=Endpoint("/sd/adGroups", "application/vnd.sdadgroup.v3+json", "adGroups", "adGroupId"),
        targets=Endpoint("/sd/targets", "application/vnd.sdtarget.v3+json", "targets", "targetId"),
        normalize_campaign=_normalize_sd_campaign,
        campaign_body=_sd_campaign_body,
        budget_body=_flat_budget_body,
        ad_group_body=_sd_ad_group_body,
        target_body=_sd_target_body,
        report_types={"campaigns": "sdCampaigns", "targets": "sdTargets"},
        operations=_NO_KEYWORD_OPERATIONS,
    ),
}


def get_routes(campaign_type) -> CampaignTypeRoutes:
    """Look up the routing entry; accepts the enum or its string value."""
    return ROUTES[CampaignType(campaign_type)]
