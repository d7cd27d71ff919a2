"""
Sync Router - operator-triggered campaign sync and its status.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.auth import require_auth
from adsync.database import get_db, get_session_factory
from adsync.services.sync_service import SYNC_IN_PROGRESS, get_sync_status, sync_campaign_data
from adsync.services.token_service import get_active_credential

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("")
async def trigger_sync(
    actor: str = Depends(require_auth),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Run a full sync: campaign tree, then 30 days of metrics.
    Returns 409 when a sync for the profile is already running.
    """
    result = await sync_campaign_data(session_factory, actor_type="user", actor_id=actor)
    if not result["success"] and result.get("error") == SYNC_IN_PROGRESS:
        raise HTTPException(409, SYNC_IN_PROGRESS)
    return result


@router.get("/status")
async def sync_status(db: AsyncSession = Depends(get_db)):
    cred = await get_active_credential(db)
    profile_id = cred.profile_id if cred else None
    return await get_sync_status(db, profile_id)
