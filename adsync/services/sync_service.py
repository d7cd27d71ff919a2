"""
Sync Service - mirrors the remote advertising account into the local store.

A pass runs three strictly ordered phases:
1. fetch    - read-only; campaigns, then ad groups, then keywords /
              negative keywords / product targets. Sub-fetch failures
              yield fewer rows.
2. persist  - one transaction upserting the whole graph. Entities pushed
              locally within the push window keep their state/bid/budget.
3. metrics  - trailing-window performance reports upserted per (owner, date).

SyncState is the per-profile mutex: claiming it is a single conditional
UPDATE, so two passes can never overlap.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.ads_client import AmazonAdsClient
from adsync.config import get_settings
from adsync.database import get_session_factory
from adsync.models import (
    AdGroup,
    Campaign,
    CampaignMetric,
    Keyword,
    KeywordMetric,
    NegativeKeyword,
    ProductTarget,
    ProductTargetMetric,
    SyncState,
    SyncStatus,
)
from adsync.services.audit_service import log_action
from adsync.services.report_service import ReportPoller
from adsync.services.token_service import ConfigurationError, get_ads_client
from adsync.utils import get_date_range, utcnow

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "Sync already in progress"

# (descriptive fields always written, mutable fields guarded by the push window)
CAMPAIGN_FIELDS = (
    ("profile_id", "type", "name", "budget_type", "start_date", "end_date",
     "targeting_type", "brand_entity_id", "tactic", "cost_type"),
    ("state", "budget"),
)
AD_GROUP_FIELDS = (("campaign_id", "name"), ("state", "default_bid"))
KEYWORD_FIELDS = (("ad_group_id", "keyword_text", "match_type", "campaign_type"), ("state", "bid"))
NEGATIVE_KEYWORD_FIELDS = (("campaign_id", "ad_group_id", "keyword_text", "match_type", "campaign_type", "state"), ())
PRODUCT_TARGET_FIELDS = (
    ("ad_group_id", "campaign_type", "target_type", "expression_type", "expression"),
    ("state", "bid"),
)

# report kind -> (metric model, owner column, owner model)
METRIC_TARGETS = {
    "campaigns": (CampaignMetric, "campaign_id", Campaign),
    "keywords": (KeywordMetric, "keyword_id", Keyword),
    "targets": (ProductTargetMetric, "product_target_id", ProductTarget),
}
METRIC_STAT_KEYS = {
    "campaigns": "campaignMetrics",
    "keywords": "keywordMetrics",
    "targets": "productTargetMetrics",
}
METRIC_VALUE_FIELDS = ("impressions", "clicks", "cost", "orders", "sales")


@dataclass
class FetchedGraph:
    campaigns: list[dict] = field(default_factory=list)
    ad_groups: list[dict] = field(default_factory=list)
    keywords: list[dict] = field(default_factory=list)
    negative_keywords: list[dict] = field(default_factory=list)
    product_targets: list[dict] = field(default_factory=list)


def is_recently_pushed(last_pushed_at: Optional[datetime], now: datetime, window: timedelta) -> bool:
    if last_pushed_at is None:
        return False
    return now - last_pushed_at < window


class SyncService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: AmazonAdsClient,
        profile_id: Optional[str] = None,
        poller: Optional[ReportPoller] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.client = client
        self.profile_id = str(profile_id or client.profile_id)
        self.poller = poller or ReportPoller(client, timeout=settings.report_timeout_seconds)
        self.push_window = timedelta(minutes=settings.push_window_minutes)
        self.stale_after = timedelta(minutes=settings.sync_stale_after_minutes)
        self.lookback_days = settings.metrics_lookback_days
        self._clock = clock

    # ── Mutex ─────────────────────────────────────────────────────────

    async def claim(self) -> bool:
        """Atomically move SyncState to syncing. False if another pass holds it."""
        async with self.session_factory() as session:
            exists = await session.scalar(select(SyncState.id).where(SyncState.profile_id == self.profile_id))
            if exists is None:
                session.add(SyncState(profile_id=self.profile_id, sync_status=SyncStatus.IDLE.value))
                try:
                    await session.commit()
                except IntegrityError:
                    # Created concurrently by another caller
                    await session.rollback()

            now = self._clock()
            result = await session.execute(
                update(SyncState)
                .where(
                    SyncState.profile_id == self.profile_id,
                    or_(
                        SyncState.sync_status != SyncStatus.SYNCING.value,
                        SyncState.sync_started_at.is_(None),
                        # A pass that died without finishing
                        SyncState.sync_started_at < now - self.stale_after,
                    ),
                )
                .values(sync_status=SyncStatus.SYNCING.value, sync_started_at=now, error=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def finish(self, status: SyncStatus, stats: Optional[dict] = None, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            values = {"sync_status": status.value, "error": error}
            if status == SyncStatus.COMPLETED:
                values["last_sync_at"] = self._clock()
                values["stats"] = stats
            await session.execute(
                update(SyncState)
                .where(SyncState.profile_id == self.profile_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    # ── Phase 1: fetch ───────────────────────────────────────────────

    async def fetch(self) -> FetchedGraph:
        graph = FetchedGraph()
        graph.campaigns = await self.client.fetch_all_campaigns()
        logger.info(f"Sync fetch: {len(graph.campaigns)} campaigns")

        graph.ad_groups = await self.client.fetch_all_ad_groups(graph.campaigns)
        graph.keywords = await self.client.fetch_all_keywords(graph.ad_groups)
        graph.negative_keywords = await self.client.fetch_all_negative_keywords(graph.campaigns)
        graph.product_targets = await self.client.fetch_all_product_targets(graph.ad_groups)
        logger.info(
            f"Sync fetch: {len(graph.ad_groups)} ad groups, {len(graph.keywords)} keywords, "
            f"{len(graph.negative_keywords)} negative keywords, {len(graph.product_targets)} product targets"
        )
        return graph

    # ── Phase 2: persist ─────────────────────────────────────────────

    async def _upsert_entities(
        self,
        session: AsyncSession,
        model,
        rows: list[dict],
        fields: tuple,
        now: datetime,
        parent_column: Optional[str] = None,
        known_parents: Optional[set] = None,
    ) -> int:
        descriptive, mutable = fields
        written = 0
        for row in rows:
            if not row.get("id"):
                continue
            parent_id = row.get(parent_column) if parent_column else None
            if parent_column and parent_id is not None and parent_id not in known_parents:
                logger.warning(f"Sync: skipping {model.__tablename__} {row['id']} with unknown {parent_column} {parent_id}")
                continue

            existing = await session.get(model, row["id"])
            if existing is None:
                session.add(model(id=row["id"], **{name: row.get(name) for name in descriptive + mutable}))
                written += 1
                continue

            for name in descriptive:
                setattr(existing, name, row.get(name))
            if mutable and is_recently_pushed(getattr(existing, "last_pushed_at", None), now, self.push_window):
                logger.info(f"Sync: {model.__tablename__} {row['id']} pushed recently, keeping local {mutable}")
            else:
                for name in mutable:
                    setattr(existing, name, row.get(name))
            written += 1

        await session.flush()
        return written

    async def persist(self, graph: FetchedGraph) -> dict:
        """Upsert the fetched graph in one transaction; returns per-kind counts."""
        now = self._clock()
        async with self.session_factory() as session:
            async with session.begin():
                campaigns = await self._upsert_entities(session, Campaign, graph.campaigns, CAMPAIGN_FIELDS, now)
                campaign_ids = set(await session.scalars(select(Campaign.id)))

                ad_groups = await self._upsert_entities(
                    session, AdGroup, graph.ad_groups, AD_GROUP_FIELDS, now, "campaign_id", campaign_ids,
                )
                ad_group_ids = set(await session.scalars(select(AdGroup.id)))

                keywords = await self._upsert_entities(
                    session, Keyword, graph.keywords, KEYWORD_FIELDS, now, "ad_group_id", ad_group_ids,
                )
                negatives = await self._upsert_entities(
                    session, NegativeKeyword,
                    [row for row in graph.negative_keywords if not row.get("ad_group_id") or row["ad_group_id"] in ad_group_ids],
                    NEGATIVE_KEYWORD_FIELDS, now, "campaign_id", campaign_ids,
                )
                targets = await self._upsert_entities(
                    session, ProductTarget, graph.product_targets, PRODUCT_TARGET_FIELDS, now, "ad_group_id", ad_group_ids,
                )

        return {
            "campaigns": campaigns,
            "adGroups": ad_groups,
            "keywords": keywords,
            "negativeKeywords": negatives,
            "productTargets": targets,
        }

    # ── Phase 3: metrics ─────────────────────────────────────────────

    async def _upsert_metrics(self, session: AsyncSession, kind: str, rows: list[dict]) -> int:
        model, owner_column, owner_model = METRIC_TARGETS[kind]
        known = set(await session.scalars(select(owner_model.id)))
        owner_attr = getattr(model, owner_column)
        written = 0
        for row in rows:
            if row["owner_id"] not in known:
                logger.warning(f"Sync: skipping {kind} metric for unknown owner {row['owner_id']}")
                continue
            existing = await session.scalar(
                select(model).where(owner_attr == row["owner_id"], model.date == row["date"])
            )
            values = {name: row[name] for name in METRIC_VALUE_FIELDS}
            if existing is None:
                session.add(model(**{owner_column: row["owner_id"], "date": row["date"], **values}))
                # Reports can repeat a (owner, date) pair; make it visible to the next lookup
                await session.flush()
            else:
                for name, value in values.items():
                    setattr(existing, name, value)
            written += 1
        return written

    async def sync_metrics(self) -> dict:
        start_date, end_date = get_date_range(self.lookback_days, today=self._clock().date())
        stats = {}
        for kind in METRIC_TARGETS:
            rows = await self.poller.fetch_metrics(kind, start_date, end_date)
            async with self.session_factory() as session:
                async with session.begin():
                    stats[METRIC_STAT_KEYS[kind]] = await self._upsert_metrics(session, kind, rows)
        return stats

    # ── Orchestration ────────────────────────────────────────────────

    async def _audit(self, actor_type: str, actor_id: Optional[str], success: bool,
                     stats: Optional[dict] = None, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            await log_action(
                session,
                actor_type=actor_type,
                actor_id=actor_id,
                action_type="sync_triggered",
                entity_type="profile",
                entity_id=self.profile_id,
                after_state=stats,
                success=success,
                error_msg=error,
            )
            await session.commit()

    async def run(self, actor_type: str = "system", actor_id: Optional[str] = None) -> dict:
        if not await self.claim():
            logger.info(f"Sync for profile {self.profile_id} rejected: already running")
            await self._audit(actor_type, actor_id, success=False, error=SYNC_IN_PROGRESS)
            return {"success": False, "error": SYNC_IN_PROGRESS}

        logger.info(f"Sync started for profile {self.profile_id}")
        try:
            graph = await self.fetch()
            stats = await self.persist(graph)
            stats.update(await self.sync_metrics())
        except Exception as e:
            logger.exception(f"Sync failed for profile {self.profile_id}")
            await self.finish(SyncStatus.FAILED, error=str(e))
            await self._audit(actor_type, actor_id, success=False, error=str(e))
            return {"success": False, "error": str(e)}

        await self.finish(SyncStatus.COMPLETED, stats=stats)
        await self._audit(actor_type, actor_id, success=True, stats=stats)
        logger.info(f"Sync completed for profile {self.profile_id}: {stats}")
        return {"success": True, "stats": stats}


async def get_sync_status(db: AsyncSession, profile_id: Optional[str] = None) -> dict:
    stmt = select(SyncState)
    if profile_id:
        stmt = stmt.where(SyncState.profile_id == str(profile_id))
    state = await db.scalar(stmt.order_by(SyncState.updated_at.desc()).limit(1))
    if state is None:
        return {"sync_status": SyncStatus.IDLE.value, "last_sync_at": None, "stats": None, "error": None}
    return {
        "profile_id": state.profile_id,
        "sync_status": state.sync_status,
        "sync_started_at": state.sync_started_at.isoformat() if state.sync_started_at else None,
        "last_sync_at": state.last_sync_at.isoformat() if state.last_sync_at else None,
        "stats": state.stats,
        "error": state.error,
    }


async def sync_campaign_data(
    session_factory: Optional[async_sessionmaker] = None,
    actor_type: str = "system",
    actor_id: Optional[str] = None,
    client: Optional[AmazonAdsClient] = None,
) -> dict:
    """
    Entry point for cron, operator and agent triggers.
    Always returns {"success", "stats"|"error"}; never raises for expected failures.
    """
    session_factory = session_factory or get_session_factory()
    if client is None:
        try:
            async with session_factory() as session:
                client = await get_ads_client(session, session_factory=session_factory)
        except ConfigurationError as e:
            logger.warning(f"Sync not started: {e}")
            return {"success": False, "error": str(e)}

    return await SyncService(session_factory, client).run(actor_type=actor_type, actor_id=actor_id)
