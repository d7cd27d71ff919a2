"""
Agent key service - credentials for the external-agent API.
Only a SHA-256 digest is stored; the plain key is returned once on creation.
"""

import hashlib
import logging
import secrets
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.models import AgentApiKey, AgentHeartbeat
from adsync.services.audit_service import log_action
from adsync.utils import utcnow

logger = logging.getLogger(__name__)


def hash_key(plain_key: str) -> str:
    return hashlib.sha256(plain_key.encode()).hexdigest()


def key_preview(plain_key: str) -> str:
    return f"****-****-{plain_key[-8:]}"


async def create_api_key(
    db: AsyncSession, name: str, actor_type: str = "user", actor_id: Optional[str] = None
) -> tuple[AgentApiKey, str]:
    if not name or not name.strip():
        raise ValueError("name is required")
    plain_key = secrets.token_hex(32)
    key = AgentApiKey(name=name.strip(), key_hash=hash_key(plain_key), key_preview=key_preview(plain_key))
    db.add(key)
    await db.flush()
    await log_action(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action_type="api_key_create",
        entity_type="api_key",
        entity_id=str(key.id),
        entity_name=key.name,
        after_state={"name": key.name, "key_preview": key.key_preview},
    )
    logger.info(f"Agent API key created: {key.name} ({key.key_preview})")
    return key, plain_key


async def validate_api_key(db: AsyncSession, plain_key: str) -> Optional[AgentApiKey]:
    """Return the key row if it exists and is not revoked, stamping last_used_at."""
    if not plain_key:
        return None
    result = await db.execute(select(AgentApiKey).where(AgentApiKey.key_hash == hash_key(plain_key)))
    key = result.scalar_one_or_none()
    if key is None or key.revoked_at is not None:
        return None
    key.last_used_at = utcnow()
    await db.flush()
    return key


async def revoke_api_key(
    db: AsyncSession, key_id: uuid.UUID, actor_type: str = "user", actor_id: Optional[str] = None
) -> Optional[AgentApiKey]:
    key = await db.get(AgentApiKey, key_id)
    if key is None:
        return None
    if key.revoked_at is None:
        key.revoked_at = utcnow()
        await db.flush()
        await log_action(
            db,
            actor_type=actor_type,
            actor_id=actor_id,
            action_type="api_key_revoke",
            entity_type="api_key",
            entity_id=str(key.id),
            entity_name=key.name,
        )
    return key


async def list_api_keys(db: AsyncSession) -> list[AgentApiKey]:
    result = await db.execute(select(AgentApiKey).order_by(AgentApiKey.created_at.desc()))
    return list(result.scalars().all())


def serialize_api_key(key: AgentApiKey) -> dict:
    return {
        "id": str(key.id),
        "name": key.name,
        "key_preview": key.key_preview,
        "last_used_at": key.last_used_at.isoformat() if key.last_used_at else None,
        "revoked_at": key.revoked_at.isoformat() if key.revoked_at else None,
        "created_at": key.created_at.isoformat() if key.created_at else None,
    }


# ── Heartbeats ───────────────────────────────────────────────────────

async def record_heartbeat(db: AsyncSession, key: AgentApiKey, status: str = "active") -> AgentHeartbeat:
    heartbeat = AgentHeartbeat(agent_key_id=key.id, status=status or "active", timestamp=utcnow())
    db.add(heartbeat)
    await db.flush()
    return heartbeat


async def get_last_heartbeat(db: AsyncSession) -> Optional[AgentHeartbeat]:
    result = await db.execute(select(AgentHeartbeat).order_by(AgentHeartbeat.timestamp.desc()).limit(1))
    return result.scalar_one_or_none()
