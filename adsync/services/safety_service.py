"""
Safety Service - pre-flight limits on bid and budget changes.

Validation is pure (no I/O); the stored SafetyLimit row is read once per
request and passed in. Checks run in a fixed order and the first violation
wins, so rejection messages are deterministic.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.models import SafetyLimit
from adsync.services.audit_service import log_action

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = {
    "max_bid_change_pct": 50.0,
    "max_budget_change_pct": 100.0,
    "min_bid_floor": 0.02,
    "max_bid_ceiling": 100.0,
    "max_daily_spend": None,
}

LIMIT_FIELDS = tuple(DEFAULT_LIMITS)


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


def _ok() -> ValidationResult:
    return ValidationResult(valid=True)


def _pct_change(current: float, new: float) -> float:
    return abs(new - current) / current * 100


def validate_bid_change(current_bid: Optional[float], new_bid: float, limits: SafetyLimit) -> ValidationResult:
    if new_bid < limits.min_bid_floor:
        return ValidationResult(False, f"Bid ${new_bid:.2f} is below minimum floor of ${limits.min_bid_floor:.2f}")
    if new_bid > limits.max_bid_ceiling:
        return ValidationResult(False, f"Bid ${new_bid:.2f} exceeds maximum ceiling of ${limits.max_bid_ceiling:.2f}")
    # Percentage rule only applies when there is a prior non-zero bid
    if current_bid and current_bid > 0:
        change = _pct_change(current_bid, new_bid)
        if change > limits.max_bid_change_pct:
            return ValidationResult(
                False,
                f"Bid change of {change:.1f}% exceeds maximum allowed change of {limits.max_bid_change_pct:g}%",
            )
    return _ok()


def validate_budget_change(
    current_budget: Optional[float], new_budget: float, limits: SafetyLimit
) -> ValidationResult:
    if limits.max_daily_spend is not None and new_budget > limits.max_daily_spend:
        return ValidationResult(
            False,
            f"Budget ${new_budget:.2f} exceeds maximum daily spend limit of ${limits.max_daily_spend:.2f}",
        )
    if current_budget and current_budget > 0:
        change = _pct_change(current_budget, new_budget)
        if change > limits.max_budget_change_pct:
            return ValidationResult(
                False,
                f"Budget change of {change:.1f}% exceeds maximum allowed change of {limits.max_budget_change_pct:g}%",
            )
    return _ok()


def validate_absolute_bid(bid: float, limits: SafetyLimit) -> ValidationResult:
    """Floor/ceiling only, for bids on newly created entities."""
    return validate_bid_change(None, bid, limits)


async def get_safety_limits(db: AsyncSession) -> SafetyLimit:
    """Return the single limits row, creating it with defaults on first read."""
    result = await db.execute(select(SafetyLimit).limit(1))
    limits = result.scalar_one_or_none()
    if limits is None:
        limits = SafetyLimit(**DEFAULT_LIMITS)
        db.add(limits)
        await db.flush()
        logger.info("Created default safety limits")
    return limits


def limits_to_dict(limits: SafetyLimit) -> dict:
    return {name: getattr(limits, name) for name in LIMIT_FIELDS}


async def update_safety_limits(
    db: AsyncSession,
    updates: dict,
    actor_type: str = "user",
    actor_id: Optional[str] = None,
) -> SafetyLimit:
    """Apply the given fields (unknown keys ignored) and audit the change."""
    limits = await get_safety_limits(db)
    before = limits_to_dict(limits)

    for name, value in updates.items():
        if name in LIMIT_FIELDS:
            setattr(limits, name, value)

    if limits.min_bid_floor > limits.max_bid_ceiling:
        raise ValueError("min_bid_floor cannot exceed max_bid_ceiling")

    await db.flush()
    await log_action(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action_type="safety_limit_update",
        entity_type="safety_limit",
        entity_id=str(limits.id),
        before_state=before,
        after_state=limits_to_dict(limits),
    )
    return limits
