"""
Credentials Router - connect the Amazon Ads account.

The operator completes Login with Amazon in the browser and posts the
authorization code here; tokens are stored encrypted and never returned.
"""

import logging
from typing import Optional
import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.ads_client import AdsAPIError, AmazonAdsClient
from adsync.database import get_db, get_session_factory
from adsync.rate_limiter import RateLimitTimeout
from adsync.services.token_service import (
    ConfigurationError,
    TokenRefreshError,
    exchange_code_for_tokens,
    get_active_credential,
    get_ads_client,
    get_region_from_country_code,
    is_token_expired,
    save_credential,
)
from adsync.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()


class CodeExchange(BaseModel):
    code: str
    redirect_uri: Optional[str] = None
    profile_id: Optional[str] = None
    country_code: Optional[str] = None


class ProfileSelect(BaseModel):
    profile_id: str
    country_code: Optional[str] = None


def _status(cred) -> dict:
    if cred is None:
        return {"connected": False, "profile_id": None, "country_code": None, "region": None, "status": None}
    return {
        "connected": True,
        "profile_id": cred.profile_id,
        "country_code": cred.country_code,
        "region": get_region_from_country_code(cred.country_code),
        "status": cred.status,
        "token_expired": is_token_expired(cred.token_expires_at),
        "updated_at": cred.updated_at.isoformat() if cred.updated_at else None,
    }


@router.post("/exchange")
async def exchange_code(payload: CodeExchange, db: AsyncSession = Depends(get_db)):
    try:
        token_data = await exchange_code_for_tokens(payload.code, payload.redirect_uri)
    except TokenRefreshError as e:
        raise HTTPException(status_code=502, detail=safe_error_detail(e, "Token exchange with Amazon failed."))

    cred = await save_credential(db, token_data, profile_id=payload.profile_id, country_code=payload.country_code)
    logger.info(f"Amazon credential stored (profile {cred.profile_id or 'not selected'})")
    return _status(cred)


@router.put("/profile")
async def select_profile(payload: ProfileSelect, db: AsyncSession = Depends(get_db)):
    cred = await get_active_credential(db)
    if cred is None:
        raise HTTPException(404, "Amazon account not connected")
    cred.profile_id = payload.profile_id
    if payload.country_code:
        cred.country_code = payload.country_code.upper()
    await db.flush()
    return _status(cred)


@router.get("/status")
async def credential_status(db: AsyncSession = Depends(get_db)):
    return _status(await get_active_credential(db))


async def profiles_client(session_factory: async_sessionmaker = Depends(get_session_factory)) -> AmazonAdsClient:
    try:
        async with session_factory() as session:
            return await get_ads_client(session, session_factory=session_factory, require_profile=False)
    except ConfigurationError as e:
        raise HTTPException(404, str(e))


@router.get("/profiles")
async def list_profiles(client: AmazonAdsClient = Depends(profiles_client)):
    """Profiles reachable with the stored token; pick one with PUT /profile."""
    try:
        profiles = await client.list_profiles()
    except (AdsAPIError, TokenRefreshError, RateLimitTimeout, httpx.HTTPError) as e:
        raise HTTPException(status_code=502, detail=safe_error_detail(e, "Could not list advertising profiles."))
    return {"profiles": profiles, "selected_profile_id": client.profile_id or None}
