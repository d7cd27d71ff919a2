"""
Cron / Scheduled Jobs - endpoint for an external scheduler.

Verifies CRON_SECRET and runs the campaign sync for the stored credential.
The scheduler sends either:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>
"""

import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from adsync.auth import require_cron_secret
from adsync.database import get_session_factory
from adsync.services.sync_service import sync_campaign_data

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


@router.api_route("/sync", methods=["GET", "POST"])
async def cron_sync(
    _: None = Depends(require_cron_secret),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Scheduled campaign sync. Call from the scheduler:
    POST https://your-app.example.com/api/cron/sync
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    result = await sync_campaign_data(session_factory, actor_type="system", actor_id="cron")
    if result["success"]:
        logger.info(f"Cron sync completed: {result['stats']}")
    else:
        logger.warning(f"Cron sync did not complete: {result['error']}")
    return {"status": "ok" if result["success"] else "error", "result": result}
