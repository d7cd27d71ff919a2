"""
Authentication - three callers, three credentials.

- Operator UI / scripts: API_KEY. Include: Authorization: Bearer <API_KEY>
- External agents: per-key credential. Include: X-Agent-Key: <key>
- Scheduler: CRON_SECRET. Include: X-Cron-Secret: <secret> (or Bearer)

In development with no API_KEY set, operator auth is skipped for local dev.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.config import get_settings
from adsync.database import get_db
from adsync.models import AgentApiKey
from adsync.services.agent_key_service import validate_api_key

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


class AgentAPIError(Exception):
    """Rendered by the app as the agent envelope: {data: null, meta, error: {code, message}}."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Operator auth. Returns "user" as the audit actor id."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    if not secrets.compare_digest(credentials.credentials, api_key):
        raise HTTPException(status_code=401, detail="Invalid API key.")
    return "user"


async def require_agent(
    x_agent_key: Optional[str] = Header(None, alias="X-Agent-Key"),
    db: AsyncSession = Depends(get_db),
) -> AgentApiKey:
    if not x_agent_key:
        raise AgentAPIError("MISSING_API_KEY", "X-Agent-Key header is required", 401)

    key = await validate_api_key(db, x_agent_key)
    if key is None:
        raise AgentAPIError("INVALID_API_KEY", "Invalid or revoked API key", 401)
    # Persist last_used_at before the handler runs
    await db.commit()
    return key


async def require_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    authorization: Optional[str] = Header(None),
) -> None:
    """Verify the scheduler's shared secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(503, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not secrets.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")
