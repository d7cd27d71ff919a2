"""
Tests for bid/budget safety validation and the stored limits row.
"""

import pytest
from sqlalchemy import select

from adsync.models import AuditEntry, SafetyLimit
from adsync.services.safety_service import (
    DEFAULT_LIMITS,
    get_safety_limits,
    limits_to_dict,
    update_safety_limits,
    validate_absolute_bid,
    validate_bid_change,
    validate_budget_change,
)


@pytest.fixture
def limits():
    return SafetyLimit(**DEFAULT_LIMITS)


def test_bid_drop_beyond_max_change_is_rejected(limits):
    result = validate_bid_change(1.00, 0.40, limits)
    assert result.valid is False
    assert "60.0%" in result.error


def test_bid_drop_within_max_change_is_accepted(limits):
    assert validate_bid_change(1.00, 0.60, limits).valid is True


def test_bid_below_floor_is_rejected_regardless_of_percent(limits):
    result = validate_bid_change(0.02, 0.01, limits)
    assert result.valid is False
    assert "below minimum floor" in result.error


def test_bid_above_ceiling_is_rejected(limits):
    result = validate_bid_change(None, 150.0, limits)
    assert result.valid is False
    assert "exceeds maximum ceiling" in result.error


def test_percent_rule_skipped_without_prior_bid(limits):
    assert validate_bid_change(None, 50.0, limits).valid is True
    assert validate_bid_change(0, 50.0, limits).valid is True
    assert validate_absolute_bid(0.5, limits).valid is True


def test_budget_change_limits(limits):
    assert validate_budget_change(10.0, 20.0, limits).valid is True
    result = validate_budget_change(10.0, 25.0, limits)
    assert result.valid is False
    assert "150.0%" in result.error


def test_budget_above_daily_spend_cap(limits):
    limits.max_daily_spend = 50.0
    result = validate_budget_change(None, 60.0, limits)
    assert result.valid is False
    assert "maximum daily spend" in result.error


@pytest.mark.anyio
async def test_limits_row_created_with_defaults(db):
    limits = await get_safety_limits(db)
    assert limits_to_dict(limits) == DEFAULT_LIMITS
    again = await get_safety_limits(db)
    assert again.id == limits.id


@pytest.mark.anyio
async def test_update_limits_is_audited(db):
    await update_safety_limits(db, {"max_bid_change_pct": 25.0, "unknown": 1}, actor_id="user")
    await db.commit()

    limits = await get_safety_limits(db)
    assert limits.max_bid_change_pct == 25.0

    entries = (await db.execute(select(AuditEntry))).scalars().all()
    assert len(entries) == 1
    assert entries[0].action_type == "safety_limit_update"
    assert entries[0].before_state["max_bid_change_pct"] == 50.0
    assert entries[0].after_state["max_bid_change_pct"] == 25.0


@pytest.mark.anyio
async def test_update_rejects_floor_above_ceiling(db):
    with pytest.raises(ValueError, match="min_bid_floor"):
        await update_safety_limits(db, {"min_bid_floor": 200.0})
