"""
Tests for rule conditions, actions and the per-entity cooldown.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from unittest.mock import AsyncMock

from adsync.models import (
    AdGroup, AuditEntry, AutomationRule, Campaign, Keyword, KeywordMetric, RuleExecution, RuleResult,
)
from adsync.services.rules_service import (
    RULE_TEMPLATES,
    KeywordPerformance,
    RuleEvaluator,
    create_rule,
    evaluate_condition,
    format_rule_action,
    format_rule_condition,
    toggle_rule,
    validate_rule_input,
)

T0 = datetime(2024, 3, 1, 12, 0, 0)
OK = {"success": True, "error": None, "ids": []}


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeClient:
    profile_id = "111"

    def __init__(self):
        self.update_keyword_bid = AsyncMock(return_value=OK)
        self.update_keyword_state = AsyncMock(return_value=OK)


def rule(condition_type, condition_value, action_type="decrease_bid", action_value=10.0, cooldown_hours=24):
    return AutomationRule(
        name="r", condition_type=condition_type, condition_value=condition_value, condition_entity="keyword",
        action_type=action_type, action_value=action_value, cooldown_hours=cooldown_hours, enabled=True,
    )


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        session.add_all([
            Campaign(id="c1", profile_id="111", type="SP", name="Shoes", state="enabled", budget=20.0),
            Campaign(id="c-other", profile_id="222", type="SP", name="Other", state="enabled", budget=20.0),
            AdGroup(id="g1", campaign_id="c1", name="Running", state="enabled", default_bid=0.75),
            AdGroup(id="g-other", campaign_id="c-other", name="Other", state="enabled", default_bid=0.75),
            Keyword(id="k-hot", ad_group_id="g1", keyword_text="running shoes", match_type="exact",
                    state="enabled", bid=1.0, campaign_type="SP"),
            Keyword(id="k-cold", ad_group_id="g1", keyword_text="shoe laces", match_type="broad",
                    state="enabled", bid=0.5, campaign_type="SP"),
            Keyword(id="k-archived", ad_group_id="g1", keyword_text="old", match_type="broad",
                    state="archived", bid=0.5, campaign_type="SP"),
            Keyword(id="k-other", ad_group_id="g-other", keyword_text="other profile", match_type="exact",
                    state="enabled", bid=1.0, campaign_type="SP"),
            # ACoS 60% inside the window
            KeywordMetric(keyword_id="k-hot", date="20240225", impressions=1000, clicks=50, cost=30.0,
                          orders=2, sales=50.0),
            KeywordMetric(keyword_id="k-hot", date="20240226", impressions=1000, clicks=50, cost=30.0,
                          orders=2, sales=50.0),
            # Outside the 30-day window
            KeywordMetric(keyword_id="k-cold", date="20240101", impressions=10, clicks=1, cost=99.0,
                          orders=0, sales=1.0),
            KeywordMetric(keyword_id="k-archived", date="20240225", impressions=10, clicks=1, cost=99.0,
                          orders=0, sales=1.0),
            KeywordMetric(keyword_id="k-other", date="20240225", impressions=10, clicks=1, cost=99.0,
                          orders=0, sales=1.0),
        ])
        await session.commit()
    return session_factory


async def stored_rule(session_factory, **overrides):
    data = {**RULE_TEMPLATES[0]["rule"], **overrides}
    async with session_factory() as session:
        created = await create_rule(session, data, actor_id="user")
        await session.commit()
    return created


def test_conditions():
    kw = KeywordPerformance(id="k", keyword_text="k", state="enabled", bid=1.0,
                            impressions=500, clicks=120, spend=60.0, orders=0, sales=0.0)
    assert kw.acos is None
    assert kw.roas == 0.0
    assert evaluate_condition(rule("acos_above", 50), kw) is False
    # Spend with no sales is ROAS 0, which a roas_below rule catches
    assert evaluate_condition(rule("roas_below", 1), kw) is True
    assert evaluate_condition(rule("orders_below", 1), kw) is True
    assert evaluate_condition(rule("spend_above", 50), kw) is True
    assert evaluate_condition(rule("clicks_above", 120), kw) is False

    kw.clicks = 99
    assert evaluate_condition(rule("orders_below", 1), kw) is False

    kw.sales = 240.0
    assert kw.acos == 25.0
    assert kw.roas == 4.0
    assert evaluate_condition(rule("roas_above", 3), kw) is True
    assert evaluate_condition(rule("acos_below", 30), kw) is True
    assert evaluate_condition(rule("no_such_condition", 1), kw) is False


def test_labels_and_validation():
    r = rule("acos_above", 50, action_type="decrease_bid", action_value=None)
    assert format_rule_condition(r) == "ACoS > 50%"
    assert format_rule_action(r) == "Decrease bid by 10%"
    with pytest.raises(ValueError):
        validate_rule_input({"name": "x", "condition_type": "ctr_above", "condition_value": 1, "action_type": "pause"})
    with pytest.raises(ValueError, match="action_type is required"):
        validate_rule_input({"name": "x", "condition_type": "acos_above", "condition_value": 1})


@pytest.mark.anyio
async def test_load_keywords_sums_window_for_profile(seeded):
    evaluator = RuleEvaluator(seeded, FakeClient(), clock=Clock(T0))
    keywords = {kw.id: kw for kw in await evaluator.load_keywords()}

    assert set(keywords) == {"k-hot", "k-cold"}
    assert keywords["k-hot"].spend == 60.0
    assert keywords["k-hot"].acos == pytest.approx(60.0)
    assert keywords["k-cold"].clicks == 0


@pytest.mark.anyio
async def test_rule_decreases_bid_through_pipeline(seeded):
    client = FakeClient()
    created = await stored_rule(seeded)

    results = await RuleEvaluator(seeded, client, clock=Clock(T0)).run_rule(created)

    assert [r.to_dict() for r in results] == [{
        "entity_id": "k-hot", "entity_name": "running shoes", "result": "success",
        "message": "Bid decreased from $1.00 to $0.90",
    }]
    client.update_keyword_bid.assert_awaited_once()
    async with seeded() as session:
        assert (await session.get(Keyword, "k-hot")).bid == 0.9
        stored = await session.get(AutomationRule, created.id)
        audit = await session.scalar(select(AuditEntry).where(AuditEntry.action_type == "bid_change"))
    assert stored.execution_count == 1
    assert stored.last_executed_at == T0
    assert audit.actor_type == "rule"
    assert audit.actor_id == str(created.id)
    assert audit.reason == 'Rule "High ACoS Reducer": acos_above triggered'


@pytest.mark.anyio
async def test_cooldown_blocks_until_window_passes(seeded):
    client = FakeClient()
    created = await stored_rule(seeded)
    clock = Clock(T0)
    evaluator = RuleEvaluator(seeded, client, clock=clock)

    first = await evaluator.run_rule(created)
    clock.now = T0 + timedelta(hours=1)
    second = await evaluator.run_rule(created)
    clock.now = T0 + timedelta(hours=25)
    third = await evaluator.run_rule(created)

    assert first[0].result == RuleResult.SUCCESS
    assert second[0].result == RuleResult.SKIPPED
    assert second[0].message == "In cooldown period"
    assert third[0].result == RuleResult.SUCCESS
    assert client.update_keyword_bid.await_count == 2

    async with seeded() as session:
        executions = (await session.scalars(select(RuleExecution))).all()
    assert len(executions) == 2


@pytest.mark.anyio
async def test_safety_rejection_is_a_failed_execution(seeded):
    client = FakeClient()
    created = await stored_rule(seeded, action_value=80)

    results = await RuleEvaluator(seeded, client, clock=Clock(T0)).run_rule(created)

    assert results[0].result == RuleResult.FAILED
    assert "exceeds maximum allowed change" in results[0].message
    client.update_keyword_bid.assert_not_awaited()
    async with seeded() as session:
        stored = await session.get(AutomationRule, created.id)
    assert stored.execution_count == 0


@pytest.mark.anyio
async def test_pause_skips_already_paused(seeded):
    async with seeded() as session:
        (await session.get(Keyword, "k-hot")).state = "paused"
        await session.commit()
    created = await stored_rule(seeded, action_type="pause", action_value=None)
    client = FakeClient()

    results = await RuleEvaluator(seeded, client, clock=Clock(T0)).run_rule(created)

    assert results[0].result == RuleResult.SKIPPED
    assert results[0].message == "Already paused"
    client.update_keyword_state.assert_not_awaited()


@pytest.mark.anyio
async def test_run_all_only_runs_enabled_rules(seeded):
    active = await stored_rule(seeded)
    disabled = await stored_rule(seeded, name="Disabled")
    async with seeded() as session:
        await toggle_rule(session, await session.get(AutomationRule, disabled.id))
        await session.commit()

    results = await RuleEvaluator(seeded, FakeClient(), clock=Clock(T0)).run_all()

    assert list(results) == [str(active.id)]
