"""
Token Service - OAuth token lifecycle for the Amazon Ads API.

Tokens are refreshed 5 minutes before actual expiry. Each credential has one
TokenManager per process, and it guards refresh with a lock so concurrent
callers that all see an expired token trigger exactly one refresh and then
share the result.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.ads_client import AmazonAdsClient, TokenRefreshError
from adsync.config import get_settings
from adsync.crypto import decrypt_value, encrypt_value
from adsync.database import get_session_factory
from adsync.models import Credential, CredentialStatus
from adsync.utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)

REGION_BY_COUNTRY = {
    **{code: "NA" for code in ("US", "CA", "MX", "BR")},
    **{code: "EU" for code in ("UK", "GB", "DE", "FR", "IT", "ES", "NL", "PL", "SE", "TR", "AE", "SA", "EG", "IN")},
    **{code: "FE" for code in ("JP", "AU", "SG")},
}


class ConfigurationError(Exception):
    """No usable credential or profile is configured."""


def calculate_expires_at(expires_in: int, now: Optional[datetime] = None) -> datetime:
    """Stored expiry already has the refresh buffer subtracted."""
    now = now or utcnow()
    return now + timedelta(seconds=expires_in) - REFRESH_BUFFER


def is_token_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return True
    return (now or utcnow()) >= expires_at


def get_region_from_country_code(country_code: Optional[str]) -> str:
    if not country_code:
        return "NA"
    return REGION_BY_COUNTRY.get(country_code.upper(), "NA")


async def _token_request(data: dict, http_client: Optional[httpx.AsyncClient] = None) -> dict:
    settings = get_settings()
    form = {
        **data,
        "client_id": settings.amazon_client_id,
        "client_secret": settings.amazon_client_secret,
    }
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    try:
        if http_client is not None:
            response = await http_client.post(TOKEN_URL, data=form, headers=headers, timeout=30)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(TOKEN_URL, data=form, headers=headers, timeout=30)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(f"Token request failed: {e.response.status_code} - {e.response.text}")
        raise TokenRefreshError(f"Token endpoint returned {e.response.status_code}") from e
    except httpx.HTTPError as e:
        logger.error(f"Token request failed: {e}")
        raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e
    return response.json()


async def refresh_access_token(refresh_token: str, http_client: Optional[httpx.AsyncClient] = None) -> dict:
    """
    Exchange a refresh token for a new access token via Amazon LwA.
    Returns dict with access_token, expires_in and possibly a rotated refresh_token.
    """
    return await _token_request(
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        http_client=http_client,
    )


async def exchange_code_for_tokens(
    code: str,
    redirect_uri: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """Authorization-code grant after the operator approves access."""
    return await _token_request(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or get_settings().amazon_redirect_uri,
        },
        http_client=http_client,
    )


PersistCallback = Callable[[str, str, datetime], Awaitable[None]]


class TokenManager:
    """
    Holds the current access token and refreshes it on demand.

    persist(access_token, refresh_token, expires_at) is awaited after every
    successful refresh so the new tokens survive a restart.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str,
        expires_at: Optional[datetime],
        persist: Optional[PersistCallback] = None,
        on_failure: Optional[Callable[[], Awaitable[None]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_at = expires_at
        self._persist = persist
        self._on_failure = on_failure
        self.http_client = http_client
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    async def get_access_token(self) -> str:
        if not is_token_expired(self.expires_at):
            return self.access_token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if not is_token_expired(self.expires_at):
                return self.access_token
            await self._refresh()
            return self.access_token

    def load(self, access_token: str, refresh_token: str, expires_at: Optional[datetime]) -> None:
        """Adopt tokens written to the credential row by another path (e.g. a new exchange)."""
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_at = expires_at

    async def force_refresh(self) -> str:
        async with self._lock:
            await self._refresh()
            return self.access_token

    async def _refresh(self) -> None:
        logger.info("Access token expired, refreshing...")
        try:
            token_data = await refresh_access_token(self.refresh_token, http_client=self.http_client)
        except TokenRefreshError:
            if self._on_failure is not None:
                await self._on_failure()
            raise

        self.access_token = token_data["access_token"]
        # Amazon may rotate the refresh token
        self.refresh_token = token_data.get("refresh_token") or self.refresh_token
        self.expires_at = calculate_expires_at(int(token_data.get("expires_in", 3600)))
        self.refresh_count += 1

        if self._persist is not None:
            await self._persist(self.access_token, self.refresh_token, self.expires_at)
        logger.info(f"Access token refreshed, valid until {self.expires_at.isoformat()}")


# ── Credential storage ───────────────────────────────────────────────

async def get_active_credential(db: AsyncSession) -> Optional[Credential]:
    result = await db.execute(
        select(Credential).order_by(Credential.updated_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def save_credential(
    db: AsyncSession,
    token_data: dict,
    profile_id: Optional[str] = None,
    country_code: Optional[str] = None,
) -> Credential:
    """Store (or replace) the single installation credential, tokens encrypted."""
    cred = await get_active_credential(db)
    if cred is None:
        cred = Credential()
        db.add(cred)

    cred.access_token = encrypt_value(token_data["access_token"])
    cred.refresh_token = encrypt_value(token_data["refresh_token"])
    cred.token_expires_at = calculate_expires_at(int(token_data.get("expires_in", 3600)))
    cred.status = CredentialStatus.ACTIVE.value
    cred.updated_at = utcnow()
    if profile_id is not None:
        cred.profile_id = str(profile_id)
    if country_code is not None:
        cred.country_code = country_code.upper()

    await db.flush()
    return cred


def build_token_manager(
    cred: Credential,
    session_factory: async_sessionmaker,
    http_client: Optional[httpx.AsyncClient] = None,
) -> TokenManager:
    """TokenManager whose refreshes are written back to the credential row."""
    cred_id = cred.id

    async def persist(access_token: str, refresh_token: str, expires_at: datetime) -> None:
        async with session_factory() as session:
            row = await session.get(Credential, cred_id)
            if row is None:
                return
            row.access_token = encrypt_value(access_token)
            row.refresh_token = encrypt_value(refresh_token)
            row.token_expires_at = expires_at
            row.status = CredentialStatus.ACTIVE.value
            await session.commit()

    async def mark_expired() -> None:
        async with session_factory() as session:
            row = await session.get(Credential, cred_id)
            if row is not None:
                row.status = CredentialStatus.EXPIRED.value
                await session.commit()

    return TokenManager(
        access_token=decrypt_value(cred.access_token),
        refresh_token=decrypt_value(cred.refresh_token),
        expires_at=cred.token_expires_at,
        persist=persist,
        on_failure=mark_expired,
        http_client=http_client,
    )


# One manager per credential for the whole process: concurrent syncs,
# agent requests and rule runs share its lock and its refreshed token.
_token_managers: dict[uuid.UUID, TokenManager] = {}


def get_token_manager(
    cred: Credential,
    session_factory: async_sessionmaker,
    http_client: Optional[httpx.AsyncClient] = None,
) -> TokenManager:
    manager = _token_managers.get(cred.id)
    if manager is None:
        manager = build_token_manager(cred, session_factory, http_client=http_client)
        _token_managers[cred.id] = manager
        return manager

    # The row only moves ahead of the manager when tokens were stored elsewhere
    if manager.expires_at is None or cred.token_expires_at > manager.expires_at:
        manager.load(decrypt_value(cred.access_token), decrypt_value(cred.refresh_token), cred.token_expires_at)
    if http_client is not None:
        manager.http_client = http_client
    return manager


def clear_token_managers() -> None:
    _token_managers.clear()


async def get_ads_client(
    db: AsyncSession,
    session_factory: Optional[async_sessionmaker] = None,
    profile_id_override: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    require_profile: bool = True,
) -> AmazonAdsClient:
    """
    Build an AmazonAdsClient for the stored credential.
    This is the main entry point - services should not construct clients directly.
    Pass require_profile=False for the unscoped client that lists profiles.
    """
    settings = get_settings()
    if not settings.amazon_client_id:
        raise ConfigurationError("Amazon client ID is not configured")

    cred = await get_active_credential(db)
    if cred is None:
        raise ConfigurationError("Amazon account not connected")

    profile_id = profile_id_override or cred.profile_id
    if not profile_id and require_profile:
        raise ConfigurationError("No advertising profile selected")

    if session_factory is None:
        session_factory = get_session_factory()

    return AmazonAdsClient(
        client_id=settings.amazon_client_id,
        profile_id=profile_id,
        region=get_region_from_country_code(cred.country_code),
        token_manager=get_token_manager(cred, session_factory, http_client=http_client),
        http_client=http_client,
    )
