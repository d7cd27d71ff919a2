"""
Tests for token expiry, region lookup and single-flight refresh.
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
from unittest.mock import AsyncMock

from adsync.services.token_service import (
    ConfigurationError,
    TokenManager,
    TokenRefreshError,
    calculate_expires_at,
    get_ads_client,
    get_region_from_country_code,
    is_token_expired,
    save_credential,
)
from adsync.utils import utcnow


def _token_transport(calls: list, status_code: int = 200, payload: dict = None):
    payload = payload or {"access_token": "fresh-token", "expires_in": 3600}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


def test_expiry_has_refresh_buffer_subtracted():
    now = datetime(2024, 1, 1, 12, 0, 0)
    assert calculate_expires_at(3600, now=now) == datetime(2024, 1, 1, 12, 55, 0)


def test_is_token_expired():
    now = datetime(2024, 1, 1, 12, 0, 0)
    assert is_token_expired(None) is True
    assert is_token_expired(now - timedelta(seconds=1), now=now) is True
    assert is_token_expired(now, now=now) is True
    assert is_token_expired(now + timedelta(minutes=1), now=now) is False


@pytest.mark.parametrize("code,region", [
    ("US", "NA"), ("ca", "NA"), ("DE", "EU"), ("uk", "EU"), ("JP", "FE"), ("AU", "FE"), (None, "NA"), ("ZZ", "NA"),
])
def test_region_from_country_code(code, region):
    assert get_region_from_country_code(code) == region


@pytest.mark.anyio
async def test_valid_token_is_returned_without_refresh():
    calls = []
    async with httpx.AsyncClient(transport=_token_transport(calls)) as http:
        manager = TokenManager("current", "refresh", utcnow() + timedelta(minutes=30), http_client=http)
        assert await manager.get_access_token() == "current"
    assert calls == []


@pytest.mark.anyio
async def test_concurrent_callers_trigger_one_refresh():
    calls = []
    persist = AsyncMock()
    async with httpx.AsyncClient(transport=_token_transport(calls)) as http:
        manager = TokenManager("stale", "refresh", utcnow() - timedelta(minutes=1), persist=persist, http_client=http)
        tokens = await asyncio.gather(*(manager.get_access_token() for _ in range(5)))

    assert tokens == ["fresh-token"] * 5
    assert len(calls) == 1
    assert manager.refresh_count == 1
    persist.assert_awaited_once()
    assert b"grant_type=refresh_token" in calls[0].content


@pytest.mark.anyio
async def test_rotated_refresh_token_is_kept():
    calls = []
    transport = _token_transport(calls, payload={"access_token": "a2", "refresh_token": "r2", "expires_in": 3600})
    async with httpx.AsyncClient(transport=transport) as http:
        manager = TokenManager("a1", "r1", None, http_client=http)
        await manager.force_refresh()
    assert manager.refresh_token == "r2"
    assert not is_token_expired(manager.expires_at)


@pytest.mark.anyio
async def test_refresh_failure_marks_credential_and_raises():
    calls = []
    on_failure = AsyncMock()
    transport = _token_transport(calls, status_code=400, payload={"error": "invalid_grant"})
    async with httpx.AsyncClient(transport=transport) as http:
        manager = TokenManager("a1", "r1", None, on_failure=on_failure, http_client=http)
        with pytest.raises(TokenRefreshError):
            await manager.get_access_token()
    on_failure.assert_awaited_once()


@pytest.mark.anyio
async def test_get_ads_client_requires_credential(db, session_factory):
    with pytest.raises(ConfigurationError, match="not connected"):
        await get_ads_client(db, session_factory)


@pytest.mark.anyio
async def test_get_ads_client_requires_profile(db, session_factory):
    await save_credential(db, {"access_token": "a", "refresh_token": "r", "expires_in": 3600})
    await db.commit()
    with pytest.raises(ConfigurationError, match="profile"):
        await get_ads_client(db, session_factory)

    unscoped = await get_ads_client(db, session_factory, require_profile=False)
    assert unscoped.profile_id == ""


@pytest.mark.anyio
async def test_get_ads_client_uses_stored_profile_and_region(db, session_factory):
    await save_credential(
        db, {"access_token": "a", "refresh_token": "r", "expires_in": 3600}, profile_id="12345", country_code="de"
    )
    await db.commit()

    client = await get_ads_client(db, session_factory)
    assert client.profile_id == "12345"
    assert client.region == "EU"
    assert client.base_url == "https://advertising-api-eu.amazon.com"
    assert await client.token_manager.get_access_token() == "a"


@pytest.mark.anyio
async def test_clients_for_one_credential_share_a_single_refresh(db, session_factory):
    await save_credential(
        db, {"access_token": "old", "refresh_token": "r", "expires_in": 0}, profile_id="12345", country_code="US"
    )
    await db.commit()

    calls = []
    async with httpx.AsyncClient(transport=_token_transport(calls)) as http:
        sync_client = await get_ads_client(db, session_factory, http_client=http)
        agent_client = await get_ads_client(db, session_factory, http_client=http)
        tokens = await asyncio.gather(
            sync_client.token_manager.get_access_token(),
            agent_client.token_manager.get_access_token(),
        )

    assert tokens == ["fresh-token", "fresh-token"]
    assert len(calls) == 1
    assert sync_client.token_manager is agent_client.token_manager


@pytest.mark.anyio
async def test_shared_manager_adopts_newly_stored_tokens(db, session_factory):
    await save_credential(
        db, {"access_token": "first", "refresh_token": "r1", "expires_in": 3600}, profile_id="12345"
    )
    await db.commit()
    client = await get_ads_client(db, session_factory)
    assert await client.token_manager.get_access_token() == "first"

    # Reconnect stores a later-expiring token on the same row
    await save_credential(db, {"access_token": "second", "refresh_token": "r2", "expires_in": 7200})
    await db.commit()
    client = await get_ads_client(db, session_factory)

    assert await client.token_manager.get_access_token() == "second"
    assert client.token_manager.refresh_token == "r2"
