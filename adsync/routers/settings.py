"""
Settings Router - safety limits and agent API keys.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.auth import require_auth
from adsync.database import get_db
from adsync.services.agent_key_service import (
    create_api_key,
    list_api_keys,
    revoke_api_key,
    serialize_api_key,
)
from adsync.services.safety_service import get_safety_limits, limits_to_dict, update_safety_limits
from adsync.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


class SafetyLimitsUpdate(BaseModel):
    max_bid_change_pct: Optional[float] = Field(None, gt=0)
    max_budget_change_pct: Optional[float] = Field(None, gt=0)
    min_bid_floor: Optional[float] = Field(None, ge=0)
    max_bid_ceiling: Optional[float] = Field(None, gt=0)
    max_daily_spend: Optional[float] = Field(None, gt=0)


class AgentKeyCreate(BaseModel):
    name: str


# ── Safety limits ────────────────────────────────────────────────────

@router.get("/safety-limits")
async def read_safety_limits(db: AsyncSession = Depends(get_db)):
    return limits_to_dict(await get_safety_limits(db))


@router.put("/safety-limits")
async def write_safety_limits(
    payload: SafetyLimitsUpdate,
    actor: str = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    # Only fields the caller sent; an explicit null clears max_daily_spend
    updates = payload.model_dump(exclude_unset=True)
    try:
        limits = await update_safety_limits(db, updates, actor_type="user", actor_id=actor)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return limits_to_dict(limits)


# ── Agent API keys ───────────────────────────────────────────────────

@router.get("/agent-keys")
async def read_agent_keys(db: AsyncSession = Depends(get_db)):
    return [serialize_api_key(k) for k in await list_api_keys(db)]


@router.post("/agent-keys")
async def issue_agent_key(
    payload: AgentKeyCreate,
    actor: str = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """The plain key is only ever returned here."""
    try:
        key, plain_key = await create_api_key(db, payload.name, actor_type="user", actor_id=actor)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {**serialize_api_key(key), "key": plain_key}


@router.delete("/agent-keys/{key_id}")
async def delete_agent_key(
    key_id: str,
    actor: str = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    key = await revoke_api_key(db, parse_uuid(key_id, "key_id"), actor_type="user", actor_id=actor)
    if key is None:
        raise HTTPException(404, "API key not found")
    return serialize_api_key(key)
