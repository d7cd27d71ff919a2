"""
Tests for the mutation pipeline: validate, push, persist, audit.
"""

import httpx
import pytest
from sqlalchemy import delete, select
from unittest.mock import AsyncMock

from adsync.ads_client import AmazonAdsClient, TokenRefreshError
from adsync.rate_limiter import RateLimitTimeout, TokenBucket

from adsync.models import AdGroup, AuditEntry, Campaign, CampaignType, Keyword, NegativeKeyword, ProductTarget
from adsync.services.mutation_service import (
    STALE_CACHE_WARNING,
    EntityNotFound,
    MutationService,
    MutationStatus,
)

OK = {"success": True, "error": None, "ids": []}


def ok(*ids):
    return {"success": True, "error": None, "ids": list(ids)}


def rejected(message):
    return {"success": False, "error": message, "ids": []}


class FakeClient:
    profile_id = "111"

    def __init__(self):
        for name in (
            "update_keyword_bid", "update_target_bid", "update_campaign_budget", "update_campaign_state",
            "update_ad_group_state", "update_keyword_state", "update_target_state", "create_campaign",
            "create_ad_group", "create_keywords", "create_negative_keyword", "archive_negative_keyword",
            "create_targets", "archive_target",
        ):
            setattr(self, name, AsyncMock(return_value=OK))


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        session.add_all([
            Campaign(id="c1", profile_id="111", type="SP", name="Shoes", state="enabled", budget=20.0,
                     budget_type="daily", targeting_type="manual"),
            Campaign(id="c2", profile_id="111", type="SD", name="Display", state="enabled", budget=30.0,
                     budget_type="daily", tactic="T00020"),
            AdGroup(id="g1", campaign_id="c1", name="Running", state="enabled", default_bid=0.75),
            AdGroup(id="g2", campaign_id="c2", name="Audiences", state="enabled", default_bid=0.5),
            Keyword(id="k1", ad_group_id="g1", keyword_text="running shoes", match_type="exact",
                    state="enabled", bid=1.0, campaign_type="SP"),
            ProductTarget(id="t1", ad_group_id="g2", campaign_type="SD", target_type="asinSameAs",
                          expression="[]", state="enabled", bid=0.8),
        ])
        await session.commit()
    return session_factory


@pytest.fixture
def client():
    return FakeClient()


def service(session_factory, client, actor_type="agent", actor_id="key-1"):
    return MutationService(session_factory, client, actor_type=actor_type, actor_id=actor_id)


async def audit_entries(session_factory):
    async with session_factory() as session:
        return list((await session.scalars(select(AuditEntry))).all())


@pytest.mark.anyio
async def test_bid_change_success(seeded, client):
    result = await service(seeded, client).change_bid("keyword", "k1", 1.2, reason="raise bid")

    assert result.status == MutationStatus.SUCCESS
    assert result.success is True
    assert (result.previous, result.new) == (1.0, 1.2)
    client.update_keyword_bid.assert_awaited_once_with(CampaignType.SP, "k1", 1.2)

    async with seeded() as session:
        keyword = await session.get(Keyword, "k1")
    assert keyword.bid == 1.2
    assert keyword.last_pushed_at is not None

    entries = await audit_entries(seeded)
    assert len(entries) == 1
    entry = entries[0]
    assert (entry.action_type, entry.entity_type, entry.entity_id) == ("bid_change", "keyword", "k1")
    assert entry.before_state == {"bid": 1.0}
    assert entry.after_state == {"bid": 1.2}
    assert entry.actor_type == "agent" and entry.actor_id == "key-1"
    assert entry.reason == "raise bid"
    assert entry.success is True


@pytest.mark.anyio
async def test_safety_rejection_skips_remote(seeded, client):
    result = await service(seeded, client).change_bid("keyword", "k1", 0.40)

    assert result.status == MutationStatus.SAFETY_REJECTED
    assert result.success is False
    assert "exceeds maximum allowed change" in result.error
    client.update_keyword_bid.assert_not_awaited()

    async with seeded() as session:
        assert (await session.get(Keyword, "k1")).bid == 1.0
    entries = await audit_entries(seeded)
    assert len(entries) == 1
    assert entries[0].success is False
    assert entries[0].error_msg == result.error


@pytest.mark.anyio
async def test_remote_rejection_leaves_local_untouched(seeded, client):
    client.update_target_bid.return_value = rejected("Bid too low")

    result = await service(seeded, client).change_bid("product_target", "t1", 0.9)

    assert result.status == MutationStatus.REMOTE_REJECTED
    assert result.error == "Bid too low"
    async with seeded() as session:
        target = await session.get(ProductTarget, "t1")
    assert target.bid == 0.8
    assert target.last_pushed_at is None
    entries = await audit_entries(seeded)
    assert [e.success for e in entries] == [False]


@pytest.mark.anyio
async def test_local_failure_after_push_is_partially_applied(seeded, client):
    async def push_then_lose_row(campaign_type, keyword_id, bid):
        async with seeded() as session:
            await session.execute(delete(Keyword).where(Keyword.id == keyword_id))
            await session.commit()
        return OK

    client.update_keyword_bid.side_effect = push_then_lose_row

    result = await service(seeded, client).change_bid("keyword", "k1", 1.1)

    assert result.status == MutationStatus.PARTIALLY_APPLIED
    assert result.success is True
    assert result.warning == STALE_CACHE_WARNING
    entries = await audit_entries(seeded)
    assert len(entries) == 1
    assert entries[0].success is True
    assert entries[0].error_msg == STALE_CACHE_WARNING


@pytest.mark.anyio
async def test_missing_entity_raises_before_pipeline(seeded, client):
    with pytest.raises(EntityNotFound, match="Keyword nope not found"):
        await service(seeded, client).change_bid("keyword", "nope", 1.0)
    assert await audit_entries(seeded) == []


@pytest.mark.anyio
async def test_invalid_input(seeded, client):
    svc = service(seeded, client)
    with pytest.raises(ValueError):
        await svc.change_bid("campaign", "c1", 1.0)
    with pytest.raises(ValueError, match="enabled, paused, or archived"):
        await svc.change_state("keyword", "k1", "deleted")
    with pytest.raises(ValueError, match="tactic"):
        await svc.create_campaign("SD", {"name": "x", "budget": 10, "start_date": "20240101", "tactic": "T99"})


@pytest.mark.anyio
async def test_budget_change_over_limit(seeded, client):
    result = await service(seeded, client).change_budget("c1", 50.0)
    assert result.status == MutationStatus.SAFETY_REJECTED
    assert "150.0%" in result.error
    client.update_campaign_budget.assert_not_awaited()


@pytest.mark.anyio
async def test_state_change_on_ad_group_routes_by_campaign_type(seeded, client):
    result = await service(seeded, client, actor_type="user", actor_id="user").change_state("ad_group", "g2", "PAUSED")

    assert result.success
    client.update_ad_group_state.assert_awaited_once_with(CampaignType.SD, "g2", "paused")
    async with seeded() as session:
        assert (await session.get(AdGroup, "g2")).state == "paused"


@pytest.mark.anyio
async def test_create_keywords_batch_has_one_audit_entry(seeded, client):
    client.create_keywords.return_value = ok("k10", "k11")

    result = await service(seeded, client).create_keywords("g1", [
        {"keyword_text": "trail shoes", "match_type": "PHRASE", "bid": 0.9},
        {"keyword_text": "road shoes", "match_type": "broad"},
    ])

    assert result.success
    assert result.entity_ids == ["k10", "k11"]
    sent_type, sent_items = client.create_keywords.await_args.args
    assert sent_type == CampaignType.SP
    assert sent_items[0]["campaign_id"] == "c1"
    assert sent_items[0]["match_type"] == "phrase"

    async with seeded() as session:
        created = await session.get(Keyword, "k10")
    assert created.keyword_text == "trail shoes"
    assert created.campaign_type == "SP"

    entries = await audit_entries(seeded)
    assert len(entries) == 1
    assert entries[0].entity_id == "k10,k11"
    assert entries[0].action_type == "keyword_add"


@pytest.mark.anyio
async def test_create_keywords_with_missing_ids_is_rejected(seeded, client):
    client.create_keywords.return_value = ok("k10")
    result = await service(seeded, client).create_keywords("g1", [
        {"keyword_text": "a", "match_type": "exact"},
        {"keyword_text": "b", "match_type": "exact"},
    ])
    assert result.status == MutationStatus.REMOTE_REJECTED


@pytest.mark.anyio
async def test_negative_keyword_ad_group_must_belong_to_campaign(seeded, client):
    with pytest.raises(ValueError, match="does not belong"):
        await service(seeded, client).create_negative_keyword("c1", "free", "negativeExact", ad_group_id="g2")
    client.create_negative_keyword.assert_not_awaited()


@pytest.mark.anyio
async def test_negative_keyword_create_and_archive(seeded, client):
    client.create_negative_keyword.return_value = ok("n1")
    svc = service(seeded, client)

    created = await svc.create_negative_keyword("c1", "free", "NEGATIVE_PHRASE")
    archived = await svc.archive_negative_keyword("n1")

    assert created.entity_id == "n1"
    assert archived.previous == "enabled" and archived.new == "archived"
    client.archive_negative_keyword.assert_awaited_once_with(CampaignType.SP, "n1", True)
    async with seeded() as session:
        negative = await session.get(NegativeKeyword, "n1")
    assert negative.match_type == "negativePhrase"
    assert negative.state == "archived"
    assert [e.action_type for e in await audit_entries(seeded)] == ["keyword_add", "keyword_remove"]


@pytest.mark.anyio
async def test_create_display_campaign(seeded, client):
    client.create_campaign.return_value = ok("c9")

    result = await service(seeded, client).create_campaign(
        "SD", {"name": "Retarget", "budget": 15.0, "start_date": "20240301", "tactic": "T00030"}
    )

    assert result.entity_id == "c9"
    async with seeded() as session:
        campaign = await session.get(Campaign, "c9")
    assert campaign.type == "SD"
    assert campaign.cost_type == "cpc"
    assert campaign.profile_id == "111"
    assert campaign.last_pushed_at is not None


@pytest.mark.anyio
async def test_product_target_create_validates_bids(seeded, client):
    result = await service(seeded, client).create_product_targets(
        "g1", [{"expression": [{"type": "asinSameAs", "value": "B01"}], "bid": 0.01}]
    )
    assert result.status == MutationStatus.SAFETY_REJECTED
    client.create_targets.assert_not_awaited()


def unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


@pytest.mark.anyio
@pytest.mark.parametrize("failure", ["token", "rate_limit"])
async def test_transport_failure_before_send_is_audited(seeded, failure):
    token_manager = AsyncMock()
    token_manager.get_access_token.return_value = "tok"
    rate_limiter = TokenBucket(capacity=100, refill_rate=100)
    if failure == "token":
        token_manager.get_access_token.side_effect = TokenRefreshError("Token endpoint returned 400")
    else:
        rate_limiter = AsyncMock()
        rate_limiter.acquire.side_effect = RateLimitTimeout("Rate limit timeout: request queued too long")
    real_client = AmazonAdsClient(
        client_id="cid",
        profile_id="111",
        token_manager=token_manager,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(unreachable)),
        rate_limiter=rate_limiter,
        sleep=AsyncMock(),
    )

    result = await service(seeded, real_client).change_bid("keyword", "k1", 1.2)

    assert result.status == MutationStatus.REMOTE_REJECTED
    assert result.success is False
    async with seeded() as session:
        assert (await session.get(Keyword, "k1")).bid == 1.0
    entries = await audit_entries(seeded)
    assert len(entries) == 1
    assert entries[0].success is False
    assert entries[0].error_msg == result.error
