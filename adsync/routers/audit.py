"""
Audit Router - filtered, paginated read of the audit trail.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.database import get_db
from adsync.services.audit_service import (
    ACTION_TYPES,
    DEFAULT_PAGE_SIZE,
    ENTITY_TYPES,
    get_audit_log,
    get_audit_log_count,
    serialize_entry,
)

router = APIRouter()


@router.get("")
async def list_audit_entries(
    action_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    filters = {
        "action_type": action_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "actor_type": actor_type,
        "start_date": start_date,
        "end_date": end_date,
    }
    entries = await get_audit_log(db, limit=limit, offset=offset, **filters)
    total = await get_audit_log_count(db, **filters)
    return {
        "entries": [serialize_entry(e) for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/vocabulary")
async def audit_vocabulary():
    """Filter options for the audit view."""
    return {"action_types": list(ACTION_TYPES), "entity_types": list(ENTITY_TYPES)}
