"""
Mutation Service - the single write path to the advertising account.

Every operation runs the same pipeline:

    VALIDATE → PUSH_REMOTE → PERSIST_LOCAL → AUDIT

- VALIDATE: safety limits for bids and budgets. Failure → safety_rejected.
- PUSH_REMOTE: the Ads API is authoritative, so it is written first.
  Failure → remote_rejected.
- PERSIST_LOCAL: mirror the change and stamp last_pushed_at (the sync
  engine's conflict marker). A failure here is reported as
  partially_applied: success with a stale-cache warning.
- AUDIT: exactly one entry per call, whatever the outcome.

Entity lookup and input checks happen before the pipeline starts and raise
EntityNotFound / ValueError; those calls never reach the remote system.
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.ads_client import AmazonAdsClient
from adsync.models import (
    AdGroup,
    Campaign,
    CampaignType,
    EntityState,
    Keyword,
    NegativeKeyword,
    ProductTarget,
)
from adsync.routing import from_remote_negative_match
from adsync.services.audit_service import log_action
from adsync.services.safety_service import (
    ValidationResult,
    get_safety_limits,
    validate_absolute_bid,
    validate_bid_change,
    validate_budget_change,
)
from adsync.utils import utcnow

logger = logging.getLogger(__name__)

STALE_CACHE_WARNING = "Change applied in Amazon but the local copy could not be updated; it will refresh on the next sync."

KEYWORD_MATCH_TYPES = ("exact", "phrase", "broad")
NEGATIVE_MATCH_TYPES = ("negativeExact", "negativePhrase")
SP_TARGETING_TYPES = ("manual", "auto")
SD_TACTICS = ("T00020", "T00030")

ENTITY_MODELS = {
    "campaign": Campaign,
    "ad_group": AdGroup,
    "keyword": Keyword,
    "product_target": ProductTarget,
    "negative_keyword": NegativeKeyword,
}


class EntityNotFound(Exception):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found")


class MutationStatus(str, enum.Enum):
    SUCCESS = "success"
    SAFETY_REJECTED = "safety_rejected"
    REMOTE_REJECTED = "remote_rejected"
    PARTIALLY_APPLIED = "partially_applied"


@dataclass
class MutationResult:
    status: MutationStatus
    previous: Any = None
    new: Any = None
    entity_id: Optional[str] = None
    entity_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None
    warning: Optional[str] = None

    @property
    def success(self) -> bool:
        # Remote is the source of truth; a stale local copy still counts
        return self.status in (MutationStatus.SUCCESS, MutationStatus.PARTIALLY_APPLIED)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status.value,
            "previous": self.previous,
            "new": self.new,
            "entity_id": self.entity_id,
            "entity_ids": self.entity_ids,
            "error": self.error,
            "warning": self.warning,
        }


@dataclass
class _AuditContext:
    action_type: str
    entity_type: str
    entity_id: str = ""
    entity_name: Optional[str] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    reason: Optional[str] = None


def _target_type(expression: list) -> str:
    if expression and isinstance(expression[0], dict):
        return str(expression[0].get("type") or "unknown")
    return "unknown"


class MutationService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: AmazonAdsClient,
        actor_type: str,
        actor_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.actor_type = actor_type
        self.actor_id = actor_id

    # ── Pipeline steps ───────────────────────────────────────────────

    async def _load(self, session: AsyncSession, entity_type: str, entity_id: str):
        entity = await session.get(ENTITY_MODELS[entity_type], str(entity_id))
        if entity is None:
            raise EntityNotFound(entity_type, str(entity_id))
        return entity

    async def _campaign_type_of(self, session: AsyncSession, entity_type: str, entity) -> CampaignType:
        if entity_type == "campaign":
            return CampaignType(entity.type)
        if entity_type == "ad_group":
            campaign = await self._load(session, "campaign", entity.campaign_id)
            return CampaignType(campaign.type)
        return CampaignType(entity.campaign_type)

    async def _audit(self, ctx: _AuditContext, success: bool, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            await log_action(
                session,
                actor_type=self.actor_type,
                actor_id=self.actor_id,
                action_type=ctx.action_type,
                entity_type=ctx.entity_type,
                entity_id=ctx.entity_id,
                entity_name=ctx.entity_name,
                before_state=ctx.before,
                after_state=ctx.after,
                reason=ctx.reason,
                success=success,
                error_msg=error,
            )
            await session.commit()

    async def _reject(self, ctx: _AuditContext, status: MutationStatus, error: str, previous=None, new=None) -> MutationResult:
        await self._audit(ctx, success=False, error=error)
        return MutationResult(status=status, previous=previous, new=new, entity_id=ctx.entity_id or None, error=error)

    async def _persist(self, apply: Callable[[AsyncSession], Awaitable[None]]) -> Optional[str]:
        """Run the local write; returns a warning instead of raising on failure."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await apply(session)
        except (SQLAlchemyError, EntityNotFound) as e:
            logger.error(f"Local persist failed after remote push: {e}")
            return STALE_CACHE_WARNING
        return None

    async def _complete(self, ctx: _AuditContext, warning: Optional[str], previous=None, new=None,
                        entity_ids: Optional[list[str]] = None) -> MutationResult:
        await self._audit(ctx, success=True, error=warning)
        return MutationResult(
            status=MutationStatus.PARTIALLY_APPLIED if warning else MutationStatus.SUCCESS,
            previous=previous,
            new=new,
            entity_id=ctx.entity_id or None,
            entity_ids=entity_ids or ([ctx.entity_id] if ctx.entity_id else []),
            warning=warning,
        )

    async def _limits(self):
        async with self.session_factory() as session:
            limits = await get_safety_limits(session)
            await session.commit()
            return limits

    def _update_fields(self, model, entity_id: str, values: dict):
        async def apply(session: AsyncSession) -> None:
            entity = await session.get(model, entity_id)
            if entity is None:
                raise EntityNotFound(model.__tablename__, entity_id)
            for name, value in values.items():
                setattr(entity, name, value)
            entity.last_pushed_at = utcnow()
        return apply

    # ── Bid / budget / state ─────────────────────────────────────────

    async def change_bid(self, entity_type: str, entity_id: str, new_bid: float,
                         reason: Optional[str] = None) -> MutationResult:
        """Keyword or product-target bid."""
        if entity_type not in ("keyword", "product_target"):
            raise ValueError("Bids can only be changed on keywords and product targets")
        if new_bid is None or new_bid < 0:
            raise ValueError("new_bid must be a positive number")

        async with self.session_factory() as session:
            entity = await self._load(session, entity_type, entity_id)
            campaign_type = await self._campaign_type_of(session, entity_type, entity)
            current = entity.bid or 0
            name = entity.keyword_text if entity_type == "keyword" else entity.target_type
        limits = await self._limits()

        ctx = _AuditContext("bid_change", entity_type, str(entity_id), name,
                            before={"bid": current}, after={"bid": new_bid}, reason=reason)

        validation = validate_bid_change(current, new_bid, limits)
        if not validation.valid:
            return await self._reject(ctx, MutationStatus.SAFETY_REJECTED, validation.error, current, new_bid)

        if entity_type == "keyword":
            remote = await self.client.update_keyword_bid(campaign_type, str(entity_id), new_bid)
        else:
            remote = await self.client.update_target_bid(campaign_type, str(entity_id), new_bid)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"], current, new_bid)

        warning = await self._persist(self._update_fields(ENTITY_MODELS[entity_type], str(entity_id), {"bid": new_bid}))
        return await self._complete(ctx, warning, previous=current, new=new_bid)

    async def change_budget(self, campaign_id: str, new_budget: float, reason: Optional[str] = None) -> MutationResult:
        if new_budget is None or new_budget <= 0:
            raise ValueError("new_budget must be a positive number")

        async with self.session_factory() as session:
            campaign = await self._load(session, "campaign", campaign_id)
            current = campaign.budget or 0
            campaign_type = CampaignType(campaign.type)
            name = campaign.name
        limits = await self._limits()

        ctx = _AuditContext("budget_change", "campaign", str(campaign_id), name,
                            before={"budget": current}, after={"budget": new_budget}, reason=reason)

        validation = validate_budget_change(current, new_budget, limits)
        if not validation.valid:
            return await self._reject(ctx, MutationStatus.SAFETY_REJECTED, validation.error, current, new_budget)

        remote = await self.client.update_campaign_budget(campaign_type, str(campaign_id), new_budget)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"], current, new_budget)

        warning = await self._persist(self._update_fields(Campaign, str(campaign_id), {"budget": new_budget}))
        return await self._complete(ctx, warning, previous=current, new=new_budget)

    async def change_state(self, entity_type: str, entity_id: str, new_state: str,
                           reason: Optional[str] = None) -> MutationResult:
        if entity_type not in ("campaign", "ad_group", "keyword", "product_target"):
            raise ValueError(f"Unsupported entity type: {entity_type}")
        try:
            new_state = EntityState(new_state.lower()).value
        except ValueError:
            raise ValueError("state must be enabled, paused, or archived") from None

        async with self.session_factory() as session:
            entity = await self._load(session, entity_type, entity_id)
            campaign_type = await self._campaign_type_of(session, entity_type, entity)
            current = entity.state
            name = getattr(entity, "name", None) or getattr(entity, "keyword_text", None) or getattr(entity, "target_type", None)

        ctx = _AuditContext("status_change", entity_type, str(entity_id), name,
                            before={"state": current}, after={"state": new_state}, reason=reason)

        push = {
            "campaign": self.client.update_campaign_state,
            "ad_group": self.client.update_ad_group_state,
            "keyword": self.client.update_keyword_state,
            "product_target": self.client.update_target_state,
        }[entity_type]
        remote = await push(campaign_type, str(entity_id), new_state)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"], current, new_state)

        warning = await self._persist(self._update_fields(ENTITY_MODELS[entity_type], str(entity_id), {"state": new_state}))
        return await self._complete(ctx, warning, previous=current, new=new_state)

    # ── Creation ─────────────────────────────────────────────────────

    @staticmethod
    def _check_campaign_input(campaign_type: CampaignType, data: dict) -> None:
        if not data.get("name"):
            raise ValueError("name is required")
        if not data.get("budget") or data["budget"] <= 0:
            raise ValueError("budget must be a positive number")
        if not data.get("start_date"):
            raise ValueError("start_date is required")
        if campaign_type == CampaignType.SP and (data.get("targeting_type") or "").lower() not in SP_TARGETING_TYPES:
            raise ValueError("targeting_type must be manual or auto")
        if campaign_type == CampaignType.SB and not data.get("brand_entity_id"):
            raise ValueError("brand_entity_id is required for Sponsored Brands campaigns")
        if campaign_type == CampaignType.SD and data.get("tactic") not in SD_TACTICS:
            raise ValueError("tactic must be T00020 or T00030")

    async def create_campaign(self, campaign_type: str, data: dict, reason: Optional[str] = None) -> MutationResult:
        campaign_type = CampaignType(campaign_type)
        self._check_campaign_input(campaign_type, data)
        limits = await self._limits()

        ctx = _AuditContext("campaign_create", "campaign", "", data["name"],
                            after={"type": campaign_type.value, **data}, reason=reason)

        validation = validate_budget_change(None, data["budget"], limits)
        if not validation.valid:
            return await self._reject(ctx, MutationStatus.SAFETY_REJECTED, validation.error)

        remote = await self.client.create_campaign(campaign_type, data)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])
        if not remote["ids"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, "No campaign ID returned from Amazon")

        campaign_id = ctx.entity_id = remote["ids"][0]

        async def apply(session: AsyncSession) -> None:
            session.add(Campaign(
                id=campaign_id,
                profile_id=self.client.profile_id,
                type=campaign_type.value,
                name=data["name"],
                state=EntityState.ENABLED.value,
                budget=data["budget"],
                budget_type="daily",
                start_date=data["start_date"],
                end_date=data.get("end_date"),
                targeting_type=(data.get("targeting_type") or "").lower() or None,
                brand_entity_id=data.get("brand_entity_id"),
                tactic=data.get("tactic"),
                cost_type=data.get("cost_type") or ("cpc" if campaign_type == CampaignType.SD else None),
                last_pushed_at=utcnow(),
            ))

        warning = await self._persist(apply)
        return await self._complete(ctx, warning, new=data["budget"])

    async def create_ad_group(self, campaign_id: str, name: str, default_bid: float,
                              reason: Optional[str] = None) -> MutationResult:
        if not name:
            raise ValueError("name is required")

        async with self.session_factory() as session:
            campaign = await self._load(session, "campaign", campaign_id)
            campaign_type = CampaignType(campaign.type)
        limits = await self._limits()

        ctx = _AuditContext("ad_group_create", "ad_group", "", name,
                            after={"campaign_id": str(campaign_id), "name": name, "default_bid": default_bid},
                            reason=reason)

        validation = validate_absolute_bid(default_bid, limits)
        if not validation.valid:
            return await self._reject(ctx, MutationStatus.SAFETY_REJECTED, validation.error)

        remote = await self.client.create_ad_group(
            campaign_type, {"campaign_id": str(campaign_id), "name": name, "default_bid": default_bid}
        )
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])
        if not remote["ids"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, "No ad group ID returned from Amazon")

        ad_group_id = ctx.entity_id = remote["ids"][0]

        async def apply(session: AsyncSession) -> None:
            session.add(AdGroup(
                id=ad_group_id,
                campaign_id=str(campaign_id),
                name=name,
                state=EntityState.ENABLED.value,
                default_bid=default_bid,
                last_pushed_at=utcnow(),
            ))

        warning = await self._persist(apply)
        return await self._complete(ctx, warning, new=default_bid)

    def _first_invalid_bid(self, bids: list[Optional[float]], limits) -> Optional[ValidationResult]:
        for bid in bids:
            if bid is None:
                continue
            validation = validate_absolute_bid(bid, limits)
            if not validation.valid:
                return validation
        return None

    async def create_keywords(self, ad_group_id: str, keywords: list[dict],
                              reason: Optional[str] = None) -> MutationResult:
        """keywords: [{"keyword_text", "match_type", "bid"}]; one audit entry for the batch."""
        if not keywords:
            raise ValueError("keywords must be a non-empty list")
        for kw in keywords:
            if not kw.get("keyword_text"):
                raise ValueError("Each keyword needs keyword_text")
            if (kw.get("match_type") or "").lower() not in KEYWORD_MATCH_TYPES:
                raise ValueError("match_type must be exact, phrase, or broad")

        async with self.session_factory() as session:
            ad_group = await self._load(session, "ad_group", ad_group_id)
            campaign_type = await self._campaign_type_of(session, "ad_group", ad_group)
            campaign_id = ad_group.campaign_id
        limits = await self._limits()

        items = [
            {
                "campaign_id": campaign_id,
                "ad_group_id": str(ad_group_id),
                "keyword_text": kw["keyword_text"],
                "match_type": kw["match_type"].lower(),
                "bid": kw.get("bid"),
            }
            for kw in keywords
        ]
        ctx = _AuditContext("keyword_add", "keyword", "", ", ".join(kw["keyword_text"] for kw in items)[:500],
                            after={"ad_group_id": str(ad_group_id), "keywords": items}, reason=reason)

        invalid = self._first_invalid_bid([kw["bid"] for kw in items], limits)
        if invalid:
            return await self._reject(ctx, MutationStatus.SAFETY_REJECTED, invalid.error)

        remote = await self.client.create_keywords(campaign_type, items)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])
        if len(remote["ids"]) != len(items):
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, "Keyword IDs missing from Amazon response")

        ids = remote["ids"]
        ctx.entity_id = ",".join(ids)

        async def apply(session: AsyncSession) -> None:
            now = utcnow()
            for keyword_id, kw in zip(ids, items):
                session.add(Keyword(
                    id=keyword_id,
                    ad_group_id=kw["ad_group_id"],
                    keyword_text=kw["keyword_text"],
                    match_type=kw["match_type"],
                    state=EntityState.ENABLED.value,
                    bid=kw["bid"],
                    campaign_type=campaign_type.value,
                    last_pushed_at=now,
                ))

        warning = await self._persist(apply)
        return await self._complete(ctx, warning, entity_ids=ids)

    async def create_negative_keyword(self, campaign_id: str, keyword_text: str, match_type: str,
                                      ad_group_id: Optional[str] = None,
                                      reason: Optional[str] = None) -> MutationResult:
        match_type = from_remote_negative_match(match_type or "")
        if not keyword_text:
            raise ValueError("keyword_text is required")
        if match_type not in NEGATIVE_MATCH_TYPES:
            raise ValueError("match_type must be negativeExact or negativePhrase")

        async with self.session_factory() as session:
            campaign = await self._load(session, "campaign", campaign_id)
            campaign_type = CampaignType(campaign.type)
            if ad_group_id:
                ad_group = await self._load(session, "ad_group", ad_group_id)
                if ad_group.campaign_id != str(campaign_id):
                    raise ValueError("Ad group does not belong to the specified campaign")

        data = {
            "campaign_id": str(campaign_id),
            "ad_group_id": str(ad_group_id) if ad_group_id else None,
            "keyword_text": keyword_text,
            "match_type": match_type,
        }
        ctx = _AuditContext("keyword_add", "keyword", "", keyword_text,
                            after={"negative": True, **data}, reason=reason)

        remote = await self.client.create_negative_keyword(campaign_type, data)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])
        if not remote["ids"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, "No keyword ID returned from Amazon")

        keyword_id = ctx.entity_id = remote["ids"][0]

        async def apply(session: AsyncSession) -> None:
            session.add(NegativeKeyword(
                id=keyword_id,
                state=EntityState.ENABLED.value,
                campaign_type=campaign_type.value,
                **data,
            ))

        warning = await self._persist(apply)
        return await self._complete(ctx, warning)

    async def archive_negative_keyword(self, negative_keyword_id: str, reason: Optional[str] = None) -> MutationResult:
        async with self.session_factory() as session:
            negative = await self._load(session, "negative_keyword", negative_keyword_id)
            campaign_type = CampaignType(negative.campaign_type)
            campaign_level = negative.ad_group_id is None
            before = {"state": negative.state, "keyword_text": negative.keyword_text, "match_type": negative.match_type}

        ctx = _AuditContext("keyword_remove", "keyword", str(negative_keyword_id), before["keyword_text"],
                            before=before, after={"state": EntityState.ARCHIVED.value}, reason=reason)

        remote = await self.client.archive_negative_keyword(campaign_type, str(negative_keyword_id), campaign_level)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])

        async def apply(session: AsyncSession) -> None:
            negative = await session.get(NegativeKeyword, str(negative_keyword_id))
            if negative is not None:
                negative.state = EntityState.ARCHIVED.value

        warning = await self._persist(apply)
        return await self._complete(ctx, warning, previous=before["state"], new=EntityState.ARCHIVED.value)

    async def create_product_targets(self, ad_group_id: str, targets: list[dict],
                                     reason: Optional[str] = None) -> MutationResult:
        """targets: [{"expression": [{"type", "value"}], "bid"}]."""
        if not targets:
            raise ValueError("targets must be a non-empty list")
        for target in targets:
            expression = target.get("expression")
            if not isinstance(expression, list) or not expression:
                raise ValueError("Each target must have an expression array")
            if any(not isinstance(part, dict) or not part.get("type") for part in expression):
                raise ValueError("Each expression must have a type")

        async with self.session_factory() as session:
            ad_group = await self._load(session, "ad_group", ad_group_id)
            campaign_type = await self._campaign_type_of(session, "ad_group", ad_group)
            campaign_id = ad_group.campaign_id
        limits = await self._limits()

        items = [
            {"campaign_id": campaign_id, "ad_group_id": str(ad_group_id),
             "expression": t["expression"], "bid": t.get("bid")}
            for t in targets
        ]
        ctx = _AuditContext("target_add", "product_target", "", f"{len(items)} target(s)",
                            after={"ad_group_id": str(ad_group_id), "targets": items}, reason=reason)

        invalid = self._first_invalid_bid([t["bid"] for t in items], limits)
        if invalid:
            return await self._reject(ctx, MutationStatus.SAFETY_REJECTED, invalid.error)

        remote = await self.client.create_targets(campaign_type, items)
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])
        if len(remote["ids"]) != len(items):
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, "Target IDs missing from Amazon response")

        ids = remote["ids"]
        ctx.entity_id = ",".join(ids)

        async def apply(session: AsyncSession) -> None:
            now = utcnow()
            for target_id, item in zip(ids, items):
                session.add(ProductTarget(
                    id=target_id,
                    ad_group_id=item["ad_group_id"],
                    campaign_type=campaign_type.value,
                    target_type=_target_type(item["expression"]),
                    expression_type="manual",
                    expression=json.dumps(item["expression"]),
                    state=EntityState.ENABLED.value,
                    bid=item["bid"],
                    last_pushed_at=now,
                ))

        warning = await self._persist(apply)
        return await self._complete(ctx, warning, entity_ids=ids)

    async def archive_product_target(self, target_id: str, reason: Optional[str] = None) -> MutationResult:
        async with self.session_factory() as session:
            target = await self._load(session, "product_target", target_id)
            campaign_type = CampaignType(target.campaign_type)
            before = {"state": target.state, "bid": target.bid}
            name = target.target_type

        ctx = _AuditContext("target_remove", "product_target", str(target_id), name,
                            before=before, after={"state": EntityState.ARCHIVED.value}, reason=reason)

        remote = await self.client.archive_target(campaign_type, str(target_id))
        if not remote["success"]:
            return await self._reject(ctx, MutationStatus.REMOTE_REJECTED, remote["error"])

        warning = await self._persist(
            self._update_fields(ProductTarget, str(target_id), {"state": EntityState.ARCHIVED.value})
        )
        return await self._complete(ctx, warning, previous=before["state"], new=EntityState.ARCHIVED.value)
