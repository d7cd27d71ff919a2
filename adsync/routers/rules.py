"""
Rules Router - automation rule CRUD, templates and manual execution.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.auth import require_auth
from adsync.database import get_db, get_session_factory
from adsync.services.rules_service import (
    RULE_TEMPLATES,
    RuleEvaluator,
    create_rule,
    delete_rule,
    get_rule,
    get_rule_executions,
    list_rules,
    serialize_rule,
    toggle_rule,
    update_rule,
)
from adsync.services.token_service import ConfigurationError, get_ads_client
from adsync.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


class RuleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    condition_type: str
    condition_value: float
    condition_entity: str = "keyword"
    action_type: str
    action_value: Optional[float] = None
    cooldown_hours: int = Field(24, ge=0)


class RuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    condition_type: Optional[str] = None
    condition_value: Optional[float] = None
    condition_entity: Optional[str] = None
    action_type: Optional[str] = None
    action_value: Optional[float] = None
    cooldown_hours: Optional[int] = Field(None, ge=0)


class RuleExecuteRequest(BaseModel):
    rule_id: Optional[str] = None  # omit to run every enabled rule


async def _get_rule_or_404(db: AsyncSession, rule_id: str):
    rule = await get_rule(db, parse_uuid(rule_id, "rule_id"))
    if not rule:
        raise HTTPException(404, "Rule not found")
    return rule


@router.get("")
async def read_rules(db: AsyncSession = Depends(get_db)):
    return [serialize_rule(r) for r in await list_rules(db)]


@router.get("/templates")
async def read_templates():
    return RULE_TEMPLATES


@router.post("")
async def add_rule(payload: RuleCreate, actor: str = Depends(require_auth), db: AsyncSession = Depends(get_db)):
    try:
        rule = await create_rule(db, payload.model_dump(), actor_type="user", actor_id=actor)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return serialize_rule(rule)


@router.post("/execute")
async def execute_rules(
    payload: RuleExecuteRequest,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        client = await get_ads_client(db, session_factory=session_factory)
    except ConfigurationError as e:
        raise HTTPException(400, str(e))

    evaluator = RuleEvaluator(session_factory, client)
    if payload.rule_id:
        rule = await _get_rule_or_404(db, payload.rule_id)
        results = {str(rule.id): await evaluator.run_rule(rule)}
    else:
        results = await evaluator.run_all()

    return {
        "results": {rule_id: [r.to_dict() for r in items] for rule_id, items in results.items()},
        "triggered": sum(len(items) for items in results.values()),
    }


@router.get("/executions")
async def read_executions(rule_id: Optional[str] = None, limit: int = 50, db: AsyncSession = Depends(get_db)):
    executions = await get_rule_executions(db, parse_uuid(rule_id, "rule_id") if rule_id else None, limit)
    return [
        {
            "id": str(e.id),
            "rule_id": str(e.rule_id),
            "entity_type": e.entity_type,
            "entity_id": e.entity_id,
            "entity_name": e.entity_name,
            "result": e.result,
            "message": e.message,
            "executed_at": e.executed_at.isoformat() if e.executed_at else None,
        }
        for e in executions
    ]


@router.get("/{rule_id}")
async def read_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    return serialize_rule(await _get_rule_or_404(db, rule_id))


@router.put("/{rule_id}")
async def edit_rule(rule_id: str, payload: RuleUpdate, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule_or_404(db, rule_id)
    try:
        rule = await update_rule(db, rule, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(400, str(e))
    return serialize_rule(rule)


@router.post("/{rule_id}/toggle")
async def flip_rule(rule_id: str, actor: str = Depends(require_auth), db: AsyncSession = Depends(get_db)):
    rule = await _get_rule_or_404(db, rule_id)
    return serialize_rule(await toggle_rule(db, rule, actor_type="user", actor_id=actor))


@router.delete("/{rule_id}")
async def remove_rule(rule_id: str, actor: str = Depends(require_auth), db: AsyncSession = Depends(get_db)):
    rule = await _get_rule_or_404(db, rule_id)
    await delete_rule(db, rule, actor_type="user", actor_id=actor)
    return {"deleted": True}
