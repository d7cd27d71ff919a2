"""
Rules Service - keyword automation rules.

A rule is a (condition, action) pair evaluated against every non-archived
keyword's trailing 30-day metrics. Triggered actions go through the
MutationService with actor_type="rule", so safety limits and auditing apply
exactly as they do for a human or an agent.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.ads_client import AmazonAdsClient
from adsync.models import (
    ActorType,
    AdGroup,
    AutomationRule,
    Campaign,
    EntityState,
    Keyword,
    KeywordMetric,
    RuleExecution,
    RuleResult,
)
from adsync.services.audit_service import log_action
from adsync.services.mutation_service import MutationService
from adsync.utils import metric_window_start, utcnow

logger = logging.getLogger(__name__)

METRICS_WINDOW_DAYS = 30
# orders_below only fires once a keyword has had a fair chance to convert
MIN_CLICKS_FOR_ORDERS_RULE = 100
DEFAULT_DECREASE_PCT = 10.0
DEFAULT_INCREASE_PCT = 5.0


class ConditionType(str, enum.Enum):
    ACOS_ABOVE = "acos_above"
    ACOS_BELOW = "acos_below"
    ROAS_ABOVE = "roas_above"
    ROAS_BELOW = "roas_below"
    CLICKS_ABOVE = "clicks_above"
    IMPRESSIONS_ABOVE = "impressions_above"
    ORDERS_BELOW = "orders_below"
    SPEND_ABOVE = "spend_above"


class ActionType(str, enum.Enum):
    DECREASE_BID = "decrease_bid"
    INCREASE_BID = "increase_bid"
    PAUSE = "pause"
    ENABLE = "enable"


RULE_TEMPLATES = [
    {
        "id": "high-acos-reducer",
        "name": "High ACoS Reducer",
        "description": "Decrease bid by 10% when ACoS exceeds 50%",
        "rule": {
            "name": "High ACoS Reducer",
            "description": "Automatically reduce bids on keywords with ACoS above 50%",
            "condition_type": "acos_above",
            "condition_value": 50,
            "condition_entity": "keyword",
            "action_type": "decrease_bid",
            "action_value": 10,
            "cooldown_hours": 24,
        },
    },
    {
        "id": "low-performance-pauser",
        "name": "Low Performance Pauser",
        "description": "Pause keywords with 100+ clicks but no orders",
        "rule": {
            "name": "Low Performance Pauser",
            "description": "Pause keywords that get clicks but never convert",
            "condition_type": "orders_below",
            "condition_value": 1,
            "condition_entity": "keyword",
            "action_type": "pause",
            "action_value": None,
            "cooldown_hours": 168,
        },
    },
    {
        "id": "winner-booster",
        "name": "Winner Booster",
        "description": "Increase bid by 5% when ROAS exceeds 3x",
        "rule": {
            "name": "Winner Booster",
            "description": "Automatically boost bids on high-performing keywords",
            "condition_type": "roas_above",
            "condition_value": 3,
            "condition_entity": "keyword",
            "action_type": "increase_bid",
            "action_value": 5,
            "cooldown_hours": 48,
        },
    },
]


# ══════════════════════════════════════════════════════════════════════
#  EVALUATION
# ══════════════════════════════════════════════════════════════════════

@dataclass
class KeywordPerformance:
    id: str
    keyword_text: str
    state: str
    bid: Optional[float]
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    orders: int = 0
    sales: float = 0.0

    @property
    def acos(self) -> Optional[float]:
        return self.spend / self.sales * 100 if self.sales > 0 else None

    @property
    def roas(self) -> Optional[float]:
        return self.sales / self.spend if self.spend > 0 else None


def _above(value: Optional[float], threshold: float) -> bool:
    return value is not None and value > threshold


def _below(value: Optional[float], threshold: float) -> bool:
    return value is not None and value < threshold


CONDITIONS: dict[ConditionType, Callable[[KeywordPerformance, float], bool]] = {
    ConditionType.ACOS_ABOVE: lambda kw, v: _above(kw.acos, v),
    ConditionType.ACOS_BELOW: lambda kw, v: _below(kw.acos, v),
    ConditionType.ROAS_ABOVE: lambda kw, v: _above(kw.roas, v),
    ConditionType.ROAS_BELOW: lambda kw, v: _below(kw.roas, v),
    ConditionType.CLICKS_ABOVE: lambda kw, v: kw.clicks > v,
    ConditionType.IMPRESSIONS_ABOVE: lambda kw, v: kw.impressions > v,
    ConditionType.ORDERS_BELOW: lambda kw, v: kw.clicks >= MIN_CLICKS_FOR_ORDERS_RULE and kw.orders < v,
    ConditionType.SPEND_ABOVE: lambda kw, v: kw.spend > v,
}


def evaluate_condition(rule: AutomationRule, keyword: KeywordPerformance) -> bool:
    try:
        condition = ConditionType(rule.condition_type)
    except ValueError:
        logger.warning(f"Rule {rule.id} has unknown condition {rule.condition_type}")
        return False
    return CONDITIONS[condition](keyword, rule.condition_value)


@dataclass
class ExecutionResult:
    entity_id: str
    entity_name: str
    result: RuleResult
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "result": self.result.value,
            "message": self.message,
        }


class RuleEvaluator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: AmazonAdsClient,
        profile_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.client = client
        self.profile_id = profile_id or client.profile_id
        self.clock = clock

    async def load_keywords(self) -> list[KeywordPerformance]:
        """Non-archived keywords for the profile with their trailing-window totals."""
        since = metric_window_start(METRICS_WINDOW_DAYS, today=self.clock().date())
        totals = (
            select(
                KeywordMetric.keyword_id,
                func.sum(KeywordMetric.impressions).label("impressions"),
                func.sum(KeywordMetric.clicks).label("clicks"),
                func.sum(KeywordMetric.cost).label("spend"),
                func.sum(KeywordMetric.orders).label("orders"),
                func.sum(KeywordMetric.sales).label("sales"),
            )
            .where(KeywordMetric.date >= since)
            .group_by(KeywordMetric.keyword_id)
            .subquery()
        )
        stmt = (
            select(Keyword, totals)
            .join(AdGroup, Keyword.ad_group_id == AdGroup.id)
            .join(Campaign, AdGroup.campaign_id == Campaign.id)
            .outerjoin(totals, totals.c.keyword_id == Keyword.id)
            .where(Campaign.profile_id == self.profile_id, Keyword.state != EntityState.ARCHIVED.value)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [
            KeywordPerformance(
                id=row.Keyword.id,
                keyword_text=row.Keyword.keyword_text,
                state=row.Keyword.state,
                bid=row.Keyword.bid,
                impressions=int(row.impressions or 0),
                clicks=int(row.clicks or 0),
                spend=float(row.spend or 0),
                orders=int(row.orders or 0),
                sales=float(row.sales or 0),
            )
            for row in rows
        ]

    async def in_cooldown(self, session: AsyncSession, rule: AutomationRule, entity_id: str) -> bool:
        cutoff = self.clock() - timedelta(hours=rule.cooldown_hours)
        result = await session.execute(
            select(RuleExecution.id).where(
                RuleExecution.rule_id == rule.id,
                RuleExecution.entity_id == entity_id,
                RuleExecution.result == RuleResult.SUCCESS.value,
                RuleExecution.executed_at >= cutoff,
            ).limit(1)
        )
        return result.first() is not None

    async def execute_action(self, rule: AutomationRule, keyword: KeywordPerformance) -> ExecutionResult:
        def outcome(result: RuleResult, message: Optional[str]) -> ExecutionResult:
            return ExecutionResult(keyword.id, keyword.keyword_text, result, message)

        try:
            action = ActionType(rule.action_type)
        except ValueError:
            return outcome(RuleResult.FAILED, f"Unknown action type: {rule.action_type}")

        pipeline = MutationService(self.session_factory, self.client, ActorType.RULE.value, str(rule.id))
        reason = f'Rule "{rule.name}": {rule.condition_type} triggered'

        if action in (ActionType.PAUSE, ActionType.ENABLE):
            target = EntityState.PAUSED if action == ActionType.PAUSE else EntityState.ENABLED
            if keyword.state == target.value:
                return outcome(RuleResult.SKIPPED, f"Already {target.value}")
            result = await pipeline.change_state("keyword", keyword.id, target.value, reason)
            if not result.success:
                return outcome(RuleResult.FAILED, result.error or "Amazon API error")
            return outcome(RuleResult.SUCCESS, "Paused" if target == EntityState.PAUSED else "Enabled")

        current = keyword.bid or 0
        if action == ActionType.DECREASE_BID:
            pct = rule.action_value or DEFAULT_DECREASE_PCT
            new_bid = round(current * (1 - pct / 100), 2)
            verb = "decreased"
        else:
            pct = rule.action_value or DEFAULT_INCREASE_PCT
            new_bid = round(current * (1 + pct / 100), 2)
            verb = "increased"

        result = await pipeline.change_bid("keyword", keyword.id, new_bid, reason)
        if not result.success:
            return outcome(RuleResult.FAILED, result.error or "Amazon API error")
        return outcome(RuleResult.SUCCESS, f"Bid {verb} from ${current:.2f} to ${new_bid:.2f}")

    async def run_rule(self, rule: AutomationRule) -> list[ExecutionResult]:
        if not rule.enabled or rule.condition_entity != "keyword":
            return []

        results: list[ExecutionResult] = []
        for keyword in await self.load_keywords():
            if not evaluate_condition(rule, keyword):
                continue

            async with self.session_factory() as session:
                cooling = await self.in_cooldown(session, rule, keyword.id)
            if cooling:
                results.append(ExecutionResult(keyword.id, keyword.keyword_text, RuleResult.SKIPPED, "In cooldown period"))
                continue

            try:
                result = await self.execute_action(rule, keyword)
            except Exception as e:
                logger.exception(f"Rule {rule.name} failed on keyword {keyword.id}")
                result = ExecutionResult(keyword.id, keyword.keyword_text, RuleResult.FAILED, str(e))
            results.append(result)

            async with self.session_factory() as session:
                session.add(RuleExecution(
                    rule_id=rule.id,
                    entity_type="keyword",
                    entity_id=keyword.id,
                    entity_name=keyword.keyword_text,
                    result=result.result.value,
                    message=result.message,
                    executed_at=self.clock(),
                ))
                await session.commit()

        successes = sum(1 for r in results if r.result == RuleResult.SUCCESS)
        if successes:
            async with self.session_factory() as session:
                stored = await session.get(AutomationRule, rule.id)
                if stored is not None:
                    stored.execution_count = (stored.execution_count or 0) + successes
                    stored.last_executed_at = self.clock()
                    await session.commit()

        logger.info(f"Rule {rule.name}: {len(results)} triggered, {successes} applied")
        return results

    async def run_all(self) -> dict[str, list[ExecutionResult]]:
        """Every enabled rule, one after another; a failing rule never stops the rest."""
        async with self.session_factory() as session:
            rules = (await session.execute(
                select(AutomationRule).where(AutomationRule.enabled.is_(True)).order_by(AutomationRule.created_at)
            )).scalars().all()

        results: dict[str, list[ExecutionResult]] = {}
        for rule in rules:
            try:
                results[str(rule.id)] = await self.run_rule(rule)
            except Exception:
                logger.exception(f"Rule {rule.name} aborted")
                results[str(rule.id)] = []
        return results


# ══════════════════════════════════════════════════════════════════════
#  CRUD
# ══════════════════════════════════════════════════════════════════════

RULE_FIELDS = (
    "name", "description", "condition_type", "condition_value", "condition_entity",
    "action_type", "action_value", "cooldown_hours",
)


def validate_rule_input(data: dict, partial: bool = False) -> None:
    if not partial:
        for name in ("name", "condition_type", "condition_value", "action_type"):
            if data.get(name) is None or data.get(name) == "":
                raise ValueError(f"{name} is required")
    if data.get("condition_type") is not None:
        ConditionType(data["condition_type"])
    if data.get("action_type") is not None:
        ActionType(data["action_type"])
    if data.get("condition_entity") not in (None, "keyword", "campaign"):
        raise ValueError("condition_entity must be keyword or campaign")
    if data.get("cooldown_hours") is not None and data["cooldown_hours"] < 0:
        raise ValueError("cooldown_hours cannot be negative")


def serialize_rule(rule: AutomationRule) -> dict:
    return {
        "id": str(rule.id),
        "name": rule.name,
        "description": rule.description,
        "condition_type": rule.condition_type,
        "condition_value": rule.condition_value,
        "condition_entity": rule.condition_entity,
        "condition_label": format_rule_condition(rule),
        "action_type": rule.action_type,
        "action_value": rule.action_value,
        "action_label": format_rule_action(rule),
        "cooldown_hours": rule.cooldown_hours,
        "enabled": rule.enabled,
        "execution_count": rule.execution_count,
        "last_executed_at": rule.last_executed_at.isoformat() if rule.last_executed_at else None,
        "created_at": rule.created_at.isoformat() if rule.created_at else None,
    }


async def list_rules(db: AsyncSession) -> list[AutomationRule]:
    result = await db.execute(select(AutomationRule).order_by(AutomationRule.created_at.desc()))
    return list(result.scalars().all())


async def get_rule(db: AsyncSession, rule_id: uuid.UUID) -> Optional[AutomationRule]:
    return await db.get(AutomationRule, rule_id)


async def create_rule(db: AsyncSession, data: dict, actor_type: str = "user", actor_id: Optional[str] = None) -> AutomationRule:
    validate_rule_input(data)
    rule = AutomationRule(**{k: v for k, v in data.items() if k in RULE_FIELDS})
    if rule.cooldown_hours is None:
        rule.cooldown_hours = 24
    if rule.condition_entity is None:
        rule.condition_entity = "keyword"
    db.add(rule)
    await db.flush()
    await log_action(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action_type="rule_create",
        entity_type="rule",
        entity_id=str(rule.id),
        entity_name=rule.name,
        after_state={k: getattr(rule, k) for k in RULE_FIELDS},
    )
    return rule


async def update_rule(db: AsyncSession, rule: AutomationRule, data: dict) -> AutomationRule:
    validate_rule_input(data, partial=True)
    for name, value in data.items():
        if name in RULE_FIELDS:
            setattr(rule, name, value)
    await db.flush()
    return rule


async def toggle_rule(db: AsyncSession, rule: AutomationRule, actor_type: str = "user", actor_id: Optional[str] = None) -> AutomationRule:
    before = rule.enabled
    rule.enabled = not rule.enabled
    await db.flush()
    await log_action(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action_type="rule_toggle",
        entity_type="rule",
        entity_id=str(rule.id),
        entity_name=rule.name,
        before_state={"enabled": before},
        after_state={"enabled": rule.enabled},
    )
    return rule


async def delete_rule(db: AsyncSession, rule: AutomationRule, actor_type: str = "user", actor_id: Optional[str] = None) -> None:
    snapshot = {k: getattr(rule, k) for k in RULE_FIELDS}
    rule_id, name = str(rule.id), rule.name
    await db.delete(rule)
    await db.flush()
    await log_action(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action_type="rule_delete",
        entity_type="rule",
        entity_id=rule_id,
        entity_name=name,
        before_state=snapshot,
    )


async def get_rule_executions(db: AsyncSession, rule_id: Optional[uuid.UUID] = None, limit: int = 50) -> list[RuleExecution]:
    stmt = select(RuleExecution)
    if rule_id:
        stmt = stmt.where(RuleExecution.rule_id == rule_id)
    result = await db.execute(stmt.order_by(RuleExecution.executed_at.desc()).limit(limit))
    return list(result.scalars().all())


def format_rule_condition(rule: AutomationRule) -> str:
    v = f"{rule.condition_value:g}"
    labels = {
        "acos_above": f"ACoS > {v}%",
        "acos_below": f"ACoS < {v}%",
        "roas_above": f"ROAS > {v}",
        "roas_below": f"ROAS < {v}",
        "clicks_above": f"Clicks > {v}",
        "impressions_above": f"Impressions > {v}",
        "orders_below": f"Orders < {v}",
        "spend_above": f"Spend > ${v}",
    }
    return labels.get(rule.condition_type, rule.condition_type)


def format_rule_action(rule: AutomationRule) -> str:
    labels = {
        "decrease_bid": f"Decrease bid by {(rule.action_value or DEFAULT_DECREASE_PCT):g}%",
        "increase_bid": f"Increase bid by {(rule.action_value or DEFAULT_INCREASE_PCT):g}%",
        "pause": "Pause",
        "enable": "Enable",
    }
    return labels.get(rule.action_type, rule.action_type)
