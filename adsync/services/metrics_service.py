"""
Metrics Service - aggregated performance for a date range.

Only the raw counters are stored; ACoS, ROAS, CTR and CPC are derived here
from the sums, never averaged from per-day ratios.
"""

from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.models import Campaign, CampaignMetric, EntityState
from adsync.utils import date_key, utcnow

COUNTERS = ("impressions", "clicks", "cost", "orders", "sales")
TREND_FIELDS = COUNTERS + ("acos", "roas")


def derive_metrics(totals: dict) -> dict:
    impressions = totals.get("impressions") or 0
    clicks = totals.get("clicks") or 0
    cost = totals.get("cost") or 0.0
    orders = totals.get("orders") or 0
    sales = totals.get("sales") or 0.0
    return {
        "impressions": impressions,
        "clicks": clicks,
        "cost": cost,
        "orders": orders,
        "sales": sales,
        "acos": cost / sales * 100 if sales > 0 else None,
        "roas": sales / cost if cost > 0 else None,
        "ctr": clicks / impressions * 100 if impressions > 0 else None,
        "cpc": cost / clicks if clicks > 0 else None,
    }


def calculate_trend(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    """Percent change; None when there is nothing to compare against."""
    if current is None or previous is None or previous == 0:
        return None
    return (current - previous) / previous * 100


def period_bounds(days: int, today: Optional[date] = None) -> tuple[tuple[str, str], tuple[str, str]]:
    """(current, previous) YYYYMMDD ranges of `days` each, current ending today."""
    today = today or utcnow().date()
    current = (date_key(today - timedelta(days=days - 1)), date_key(today))
    prev_end = today - timedelta(days=days)
    previous = (date_key(prev_end - timedelta(days=days - 1)), date_key(prev_end))
    return current, previous


async def sum_campaign_metrics(db: AsyncSession, profile_id: str, start: str, end: str) -> dict:
    stmt = (
        select(*(func.sum(getattr(CampaignMetric, name)).label(name) for name in COUNTERS))
        .join(Campaign, CampaignMetric.campaign_id == Campaign.id)
        .where(Campaign.profile_id == profile_id, CampaignMetric.date >= start, CampaignMetric.date <= end)
    )
    row = (await db.execute(stmt)).one()
    return derive_metrics(row._asdict())


async def get_dashboard_metrics(db: AsyncSession, profile_id: str, days: int = 30,
                                today: Optional[date] = None) -> dict:
    if days < 1:
        raise ValueError("days must be at least 1")
    (cur_start, cur_end), (prev_start, prev_end) = period_bounds(days, today)
    current = await sum_campaign_metrics(db, profile_id, cur_start, cur_end)
    previous = await sum_campaign_metrics(db, profile_id, prev_start, prev_end)
    return {
        "current_period": current,
        "previous_period": previous,
        "trends": {name: calculate_trend(current[name], previous[name]) for name in TREND_FIELDS},
        "range": {"start": cur_start, "end": cur_end, "days": days},
    }


async def get_campaign_counts(db: AsyncSession, profile_id: str) -> dict:
    rows = (await db.execute(
        select(Campaign.state, func.count(Campaign.id))
        .where(Campaign.profile_id == profile_id)
        .group_by(Campaign.state)
    )).all()
    by_state = {state: count for state, count in rows}
    return {
        "total": sum(by_state.values()),
        "enabled": by_state.get(EntityState.ENABLED.value, 0),
        "paused": by_state.get(EntityState.PAUSED.value, 0),
    }
