"""
Audit Service - append-only log of every mutation attempt, sync trigger and
settings change, with filtered/paginated reads for the audit view.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.models import ActorType, AuditEntry

logger = logging.getLogger(__name__)

ACTION_TYPES = (
    "bid_change", "budget_change", "status_change",
    "keyword_add", "keyword_remove",
    "campaign_create", "campaign_delete",
    "ad_group_create", "ad_group_delete",
    "target_add", "target_remove",
    "sync_triggered",
    "rule_create", "rule_toggle", "rule_delete",
    "safety_limit_update",
    "api_key_create", "api_key_revoke",
)

ENTITY_TYPES = (
    "campaign", "keyword", "ad_group", "product_target",
    "profile", "rule", "safety_limit", "api_key",
)

ACTOR_LABELS = {
    ActorType.USER.value: "User",
    ActorType.AGENT.value: "AI Agent",
    ActorType.RULE.value: "Automation Rule",
    ActorType.SYSTEM.value: "System",
}

DEFAULT_PAGE_SIZE = 100


async def log_action(
    db: AsyncSession,
    *,
    actor_type: str,
    action_type: str,
    entity_type: str,
    entity_id: str = "",
    actor_id: Optional[str] = None,
    entity_name: Optional[str] = None,
    before_state: Optional[dict] = None,
    after_state: Optional[dict] = None,
    reason: Optional[str] = None,
    success: bool = True,
    error_msg: Optional[str] = None,
) -> AuditEntry:
    """
    Add one audit entry to the session and flush it.
    The caller owns the transaction; the entry commits with it.
    """
    entry = AuditEntry(
        actor_type=ActorType(actor_type).value,
        actor_id=actor_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id or "",
        entity_name=entity_name,
        before_state=before_state,
        after_state=after_state,
        reason=reason,
        success=success,
        error_msg=error_msg,
    )
    db.add(entry)
    await db.flush()
    if not success:
        logger.info(f"Audit: {action_type} on {entity_type} {entity_id} failed: {error_msg}")
    return entry


def _apply_filters(
    stmt,
    action_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
):
    if action_type:
        stmt = stmt.where(AuditEntry.action_type == action_type)
    if entity_type:
        stmt = stmt.where(AuditEntry.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditEntry.entity_id == entity_id)
    if actor_type:
        stmt = stmt.where(AuditEntry.actor_type == actor_type)
    if start_date:
        stmt = stmt.where(AuditEntry.timestamp >= start_date)
    if end_date:
        stmt = stmt.where(AuditEntry.timestamp <= end_date)
    return stmt


async def get_audit_log(
    db: AsyncSession,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
    **filters: Any,
) -> list[AuditEntry]:
    """Newest first."""
    stmt = _apply_filters(select(AuditEntry), **filters)
    stmt = stmt.order_by(AuditEntry.timestamp.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_audit_log_count(db: AsyncSession, **filters: Any) -> int:
    stmt = _apply_filters(select(func.count(AuditEntry.id)), **filters)
    result = await db.execute(stmt)
    return result.scalar() or 0


def format_action_type(action_type: str) -> str:
    """bid_change -> Bid Change"""
    return " ".join(part.capitalize() for part in action_type.split("_"))


def format_actor_type(actor_type: str) -> str:
    return ACTOR_LABELS.get(actor_type, actor_type)


def serialize_entry(entry: AuditEntry) -> dict:
    return {
        "id": str(entry.id),
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "actor_type": entry.actor_type,
        "actor_label": format_actor_type(entry.actor_type),
        "actor_id": entry.actor_id,
        "action_type": entry.action_type,
        "action_label": format_action_type(entry.action_type),
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "entity_name": entry.entity_name,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "reason": entry.reason,
        "success": entry.success,
        "error_msg": entry.error_msg,
    }
