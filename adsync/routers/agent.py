"""
Agent Router - HTTP surface for external AI agents.

Authenticated per key (X-Agent-Key). Every write goes through the
MutationService with actor_type="agent" and the key id as actor, so agents
get exactly the same safety limits and audit trail as the operator.

All responses use one envelope:
    {"data": ..., "meta": {"timestamp": ...}, "error": null}
    {"data": null, "meta": {...}, "error": {"code": ..., "message": ...}}
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from adsync.ads_client import AmazonAdsClient
from adsync.auth import AgentAPIError, require_agent
from adsync.database import get_db, get_session_factory
from adsync.models import (
    ActorType,
    AdGroup,
    AgentApiKey,
    Campaign,
    Keyword,
    NegativeKeyword,
    ProductTarget,
    ProductTargetMetric,
)
from adsync.services.agent_key_service import get_last_heartbeat, record_heartbeat
from adsync.services.metrics_service import get_campaign_counts, get_dashboard_metrics
from adsync.services.mutation_service import EntityNotFound, MutationResult, MutationService, MutationStatus
from adsync.services.sync_service import SYNC_IN_PROGRESS, get_sync_status, sync_campaign_data
from adsync.services.token_service import ConfigurationError, get_active_credential, get_ads_client

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Envelope ─────────────────────────────────────────────────────────

def api_response(data: Any, **meta: Any) -> dict:
    return {
        "data": data,
        "meta": {"timestamp": datetime.now(timezone.utc).isoformat(), **meta},
        "error": None,
    }


def api_error_body(code: str, message: str) -> dict:
    return {
        "data": None,
        "meta": {"timestamp": datetime.now(timezone.utc).isoformat()},
        "error": {"code": code, "message": message},
    }


# ── Dependencies ─────────────────────────────────────────────────────

async def ads_client(session_factory: async_sessionmaker = Depends(get_session_factory)) -> AmazonAdsClient:
    try:
        async with session_factory() as session:
            return await get_ads_client(session, session_factory=session_factory)
    except ConfigurationError as e:
        raise AgentAPIError("NOT_CONFIGURED", str(e), 503)


async def pipeline(
    key: AgentApiKey = Depends(require_agent),
    client: AmazonAdsClient = Depends(ads_client),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> MutationService:
    return MutationService(session_factory, client, ActorType.AGENT.value, str(key.id))


async def _mutate(call: Awaitable[MutationResult]) -> dict:
    """Run a pipeline call and map its outcome onto the envelope."""
    try:
        result = await call
    except EntityNotFound as e:
        raise AgentAPIError("NOT_FOUND", str(e), 404)
    except ValueError as e:
        raise AgentAPIError("INVALID_INPUT", str(e), 400)

    if result.status == MutationStatus.SAFETY_REJECTED:
        raise AgentAPIError("SAFETY_LIMIT", result.error or "Safety limit violated", 400)
    if result.status == MutationStatus.REMOTE_REJECTED:
        raise AgentAPIError("AMAZON_API_ERROR", result.error or "Amazon API error", 502)
    return api_response(result.to_dict())


# ── Schemas ──────────────────────────────────────────────────────────

class BidAction(BaseModel):
    entity_id: str
    new_bid: float
    entity_type: str = "keyword"  # keyword | product_target
    reason: Optional[str] = None


class Heartbeat(BaseModel):
    status: str = "active"


class BudgetAction(BaseModel):
    campaign_id: str
    new_budget: float
    reason: Optional[str] = None


class StatusAction(BaseModel):
    entity_id: str
    state: str
    entity_type: str = "keyword"  # campaign | ad_group | keyword | product_target
    reason: Optional[str] = None


class CampaignCreate(BaseModel):
    campaign_type: str = "SP"
    name: str
    budget: float
    start_date: str
    end_date: Optional[str] = None
    targeting_type: Optional[str] = None  # SP
    brand_entity_id: Optional[str] = None  # SB
    tactic: Optional[str] = None  # SD
    cost_type: Optional[str] = None  # SD
    reason: Optional[str] = None


class AdGroupCreate(BaseModel):
    campaign_id: str
    name: str
    default_bid: float
    reason: Optional[str] = None


class KeywordItem(BaseModel):
    keyword_text: str
    match_type: str
    bid: Optional[float] = None


class KeywordsCreate(BaseModel):
    ad_group_id: str
    keywords: list[KeywordItem]
    reason: Optional[str] = None


class NegativeKeywordCreate(BaseModel):
    campaign_id: str
    keyword_text: str
    match_type: str
    ad_group_id: Optional[str] = None
    reason: Optional[str] = None


class TargetItem(BaseModel):
    expression: list[dict]
    bid: Optional[float] = None


class ProductTargetsCreate(BaseModel):
    ad_group_id: str
    targets: list[TargetItem]
    reason: Optional[str] = None


class ProductTargetUpdate(BaseModel):
    bid: Optional[float] = None
    state: Optional[str] = None
    reason: Optional[str] = None


# ── Serializers ──────────────────────────────────────────────────────

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _campaign(c: Campaign) -> dict:
    return {
        "id": c.id,
        "type": c.type,
        "name": c.name,
        "state": c.state,
        "budget": c.budget,
        "budget_type": c.budget_type,
        "start_date": c.start_date,
        "end_date": c.end_date,
        "targeting_type": c.targeting_type,
        "brand_entity_id": c.brand_entity_id,
        "tactic": c.tactic,
        "cost_type": c.cost_type,
    }


def _keyword(k: Keyword) -> dict:
    return {
        "id": k.id,
        "ad_group_id": k.ad_group_id,
        "keyword_text": k.keyword_text,
        "match_type": k.match_type,
        "state": k.state,
        "bid": k.bid,
        "campaign_type": k.campaign_type,
    }


def _negative(n: NegativeKeyword) -> dict:
    return {
        "id": n.id,
        "campaign_id": n.campaign_id,
        "campaign_name": n.campaign.name if n.campaign else None,
        "ad_group_id": n.ad_group_id,
        "ad_group_name": n.ad_group.name if n.ad_group else None,
        "keyword_text": n.keyword_text,
        "match_type": n.match_type,
        "state": n.state,
        "level": n.level,
        "created_at": _iso(n.created_at),
    }


def _target(t: ProductTarget) -> dict:
    return {
        "id": t.id,
        "ad_group_id": t.ad_group_id,
        "campaign_type": t.campaign_type,
        "target_type": t.target_type,
        "expression_type": t.expression_type,
        "expression": t.parsed_expression,
        "state": t.state,
        "bid": t.bid,
        "created_at": _iso(t.created_at),
    }


async def _profile_id(db: AsyncSession) -> str:
    cred = await get_active_credential(db)
    if cred is None or not cred.profile_id:
        raise AgentAPIError("NOT_CONFIGURED", "No Amazon profile selected", 400)
    return cred.profile_id


# ── Actions ──────────────────────────────────────────────────────────

@router.post("/actions/bid")
async def change_bid(payload: BidAction, service: MutationService = Depends(pipeline)):
    return await _mutate(service.change_bid(payload.entity_type, payload.entity_id, payload.new_bid, payload.reason))


@router.post("/actions/budget")
async def change_budget(payload: BudgetAction, service: MutationService = Depends(pipeline)):
    return await _mutate(service.change_budget(payload.campaign_id, payload.new_budget, payload.reason))


@router.post("/actions/status")
async def change_status(payload: StatusAction, service: MutationService = Depends(pipeline)):
    return await _mutate(service.change_state(payload.entity_type, payload.entity_id, payload.state, payload.reason))


# ── Campaigns / ad groups / keywords ─────────────────────────────────

@router.get("/campaigns")
async def list_campaigns(
    type: Optional[str] = None,
    state: Optional[str] = None,
    _: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Campaign).where(Campaign.profile_id == await _profile_id(db))
    if type:
        stmt = stmt.where(Campaign.type == type.upper())
    if state:
        stmt = stmt.where(Campaign.state == state.lower())
    campaigns = (await db.execute(stmt.order_by(Campaign.name))).scalars().all()
    return api_response({"campaigns": [_campaign(c) for c in campaigns], "total": len(campaigns)})


@router.post("/campaigns/create")
async def create_campaign(payload: CampaignCreate, service: MutationService = Depends(pipeline)):
    data = payload.model_dump(exclude={"campaign_type", "reason"}, exclude_none=True)
    return await _mutate(service.create_campaign(payload.campaign_type.upper(), data, payload.reason))


@router.post("/ad-groups/create")
async def create_ad_group(payload: AdGroupCreate, service: MutationService = Depends(pipeline)):
    return await _mutate(
        service.create_ad_group(payload.campaign_id, payload.name, payload.default_bid, payload.reason)
    )


@router.get("/keywords")
async def list_keywords(
    ad_group_id: Optional[str] = None,
    state: Optional[str] = None,
    _: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(Keyword)
        .join(AdGroup, Keyword.ad_group_id == AdGroup.id)
        .join(Campaign, AdGroup.campaign_id == Campaign.id)
        .where(Campaign.profile_id == await _profile_id(db))
    )
    if ad_group_id:
        stmt = stmt.where(Keyword.ad_group_id == ad_group_id)
    if state:
        stmt = stmt.where(Keyword.state == state.lower())
    keywords = (await db.execute(stmt.order_by(Keyword.keyword_text))).scalars().all()
    return api_response({"keywords": [_keyword(k) for k in keywords], "total": len(keywords)})


@router.post("/keywords/create")
async def create_keywords(payload: KeywordsCreate, service: MutationService = Depends(pipeline)):
    return await _mutate(
        service.create_keywords(payload.ad_group_id, [k.model_dump() for k in payload.keywords], payload.reason)
    )


# ── Negative keywords ────────────────────────────────────────────────

@router.get("/negative-keywords")
async def list_negative_keywords(
    campaign_id: Optional[str] = None,
    ad_group_id: Optional[str] = None,
    _: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(NegativeKeyword)
        .join(Campaign, NegativeKeyword.campaign_id == Campaign.id)
        .where(Campaign.profile_id == await _profile_id(db))
        .options(selectinload(NegativeKeyword.campaign), selectinload(NegativeKeyword.ad_group))
    )
    if campaign_id:
        stmt = stmt.where(NegativeKeyword.campaign_id == campaign_id)
    if ad_group_id:
        stmt = stmt.where(NegativeKeyword.ad_group_id == ad_group_id)
    negatives = (await db.execute(stmt.order_by(NegativeKeyword.created_at.desc()))).scalars().all()
    return api_response({"negative_keywords": [_negative(n) for n in negatives], "total": len(negatives)})


@router.post("/negative-keywords")
async def create_negative_keyword(payload: NegativeKeywordCreate, service: MutationService = Depends(pipeline)):
    return await _mutate(service.create_negative_keyword(
        payload.campaign_id, payload.keyword_text, payload.match_type, payload.ad_group_id, payload.reason
    ))


@router.delete("/negative-keywords/{negative_keyword_id}")
async def archive_negative_keyword(
    negative_keyword_id: str,
    reason: Optional[str] = None,
    service: MutationService = Depends(pipeline),
):
    return await _mutate(service.archive_negative_keyword(negative_keyword_id, reason))


# ── Product targets ──────────────────────────────────────────────────

@router.get("/product-targets")
async def list_product_targets(
    ad_group_id: Optional[str] = None,
    campaign_type: Optional[str] = None,
    state: Optional[str] = None,
    _: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(ProductTarget)
        .join(AdGroup, ProductTarget.ad_group_id == AdGroup.id)
        .join(Campaign, AdGroup.campaign_id == Campaign.id)
        .where(Campaign.profile_id == await _profile_id(db))
    )
    if ad_group_id:
        stmt = stmt.where(ProductTarget.ad_group_id == ad_group_id)
    if campaign_type:
        stmt = stmt.where(ProductTarget.campaign_type == campaign_type.upper())
    if state:
        stmt = stmt.where(ProductTarget.state == state.lower())
    targets = (await db.execute(stmt.order_by(ProductTarget.created_at.desc()))).scalars().all()
    return api_response({"product_targets": [_target(t) for t in targets], "total": len(targets)})


@router.post("/product-targets")
async def create_product_targets(payload: ProductTargetsCreate, service: MutationService = Depends(pipeline)):
    return await _mutate(service.create_product_targets(
        payload.ad_group_id, [t.model_dump() for t in payload.targets], payload.reason
    ))


@router.get("/product-targets/{target_id}")
async def get_product_target(
    target_id: str,
    _: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    target = await db.get(ProductTarget, target_id)
    if target is None:
        raise AgentAPIError("NOT_FOUND", "Product target not found", 404)
    metrics = (await db.execute(
        select(ProductTargetMetric)
        .where(ProductTargetMetric.product_target_id == target_id)
        .order_by(ProductTargetMetric.date.desc())
        .limit(30)
    )).scalars().all()
    return api_response({
        **_target(target),
        "metrics": [
            {"date": m.date, "impressions": m.impressions, "clicks": m.clicks,
             "cost": m.cost, "orders": m.orders, "sales": m.sales}
            for m in metrics
        ],
    })


@router.put("/product-targets/{target_id}")
async def update_product_target(
    target_id: str,
    payload: ProductTargetUpdate,
    service: MutationService = Depends(pipeline),
):
    """Bid and/or state. A rejected bid change stops before the state change."""
    if payload.bid is None and payload.state is None:
        raise AgentAPIError("INVALID_INPUT", "Either bid or state must be provided", 400)

    response = None
    if payload.bid is not None:
        response = await _mutate(service.change_bid("product_target", target_id, payload.bid, payload.reason))
    if payload.state is not None:
        response = await _mutate(service.change_state("product_target", target_id, payload.state, payload.reason))
    return response


@router.delete("/product-targets/{target_id}")
async def archive_product_target(
    target_id: str,
    reason: Optional[str] = None,
    service: MutationService = Depends(pipeline),
):
    return await _mutate(service.archive_product_target(target_id, reason))


# ── Sync / status / metrics ──────────────────────────────────────────

@router.post("/sync")
async def trigger_sync(
    key: AgentApiKey = Depends(require_agent),
    client: AmazonAdsClient = Depends(ads_client),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    result = await sync_campaign_data(session_factory, actor_type=ActorType.AGENT.value,
                                      actor_id=str(key.id), client=client)
    if not result["success"]:
        code = "SYNC_IN_PROGRESS" if result["error"] == SYNC_IN_PROGRESS else "SYNC_FAILED"
        raise AgentAPIError(code, result["error"], 409 if code == "SYNC_IN_PROGRESS" else 502)
    return api_response(result["stats"])


@router.post("/heartbeat")
async def heartbeat(
    payload: Optional[Heartbeat] = None,
    key: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    beat = await record_heartbeat(db, key, payload.status if payload else "active")
    return api_response({"recorded": True, "timestamp": beat.timestamp.isoformat()})


@router.get("/status")
async def status(_: AgentApiKey = Depends(require_agent), db: AsyncSession = Depends(get_db)):
    cred = await get_active_credential(db)
    sync = await get_sync_status(db, cred.profile_id) if cred and cred.profile_id else None
    last_beat = await get_last_heartbeat(db)
    return api_response({
        "amazon": {
            "connected": cred is not None,
            "profile_id": cred.profile_id if cred else None,
            "country_code": cred.country_code if cred else None,
            "credential_status": cred.status if cred else None,
        },
        "sync": sync,
        "last_heartbeat": last_beat.timestamp.isoformat() if last_beat else None,
        "last_status": last_beat.status if last_beat else None,
    })


@router.get("/metrics")
async def metrics(
    days: int = Query(30, ge=1, le=365),
    _: AgentApiKey = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
):
    profile_id = await _profile_id(db)
    dashboard = await get_dashboard_metrics(db, profile_id, days)
    return api_response({**dashboard, "campaigns": await get_campaign_counts(db, profile_id)}, days=days)
