"""
Tests for the advertising API client: retry policy, pagination, mutation
result folding and per-type capability checks. No real network calls.
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from adsync.ads_client import AdsAPIError, AmazonAdsClient, MAX_ATTEMPTS, TokenRefreshError
from adsync.models import CampaignType
from adsync.rate_limiter import RateLimitTimeout, TokenBucket
from adsync.routing import ROUTES, Operation, get_routes, normalize_target


class ScriptedAPI:
    """Replays queued responses in order and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, payload = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status, json=payload)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def sleep():
    return AsyncMock()


def make_client(api: ScriptedAPI, sleep) -> AmazonAdsClient:
    return AmazonAdsClient(
        client_id="cid",
        profile_id="987",
        access_token="tok",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        rate_limiter=TokenBucket(capacity=100, refill_rate=100),
        sleep=sleep,
    )


def test_routing_table_capabilities():
    assert ROUTES[CampaignType.SP].supports(Operation.CREATE_KEYWORDS)
    assert ROUTES[CampaignType.SB].supports(Operation.FETCH_NEGATIVE_KEYWORDS)
    assert not ROUTES[CampaignType.SD].supports(Operation.FETCH_KEYWORDS)
    assert ROUTES[CampaignType.SD].supports(Operation.CREATE_TARGETS)
    assert get_routes("SB").campaign_type is CampaignType.SB


def test_target_expression_is_normalized_across_shapes():
    sb = normalize_target(
        {"targetId": 5, "adGroupId": 6, "expressions": [{"type": "asinSameAs", "value": "B0"}], "state": "PAUSED"},
        CampaignType.SB,
    )
    assert sb["id"] == "5"
    assert sb["target_type"] == "asinSameAs"
    assert sb["state"] == "paused"
    assert json.loads(sb["expression"]) == [{"type": "asinSameAs", "value": "B0"}]


def test_unknown_region_is_rejected():
    client = AmazonAdsClient(client_id="cid", profile_id="1", region="XX", access_token="tok")
    with pytest.raises(ValueError, match="Unsupported region"):
        client.base_url


@pytest.mark.anyio
async def test_request_sends_scope_and_media_type_headers(sleep):
    api = ScriptedAPI((200, {"campaigns": []}))
    client = make_client(api, sleep)

    await client.list_campaigns(CampaignType.SB)

    request = api.requests[0]
    assert request.url.path == "/sb/v4/campaigns/list"
    assert request.headers["Amazon-Advertising-API-Scope"] == "987"
    assert request.headers["Amazon-Advertising-API-ClientId"] == "cid"
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.headers["Content-Type"] == "application/vnd.sbcampaignresource.v4+json"


@pytest.mark.anyio
async def test_transient_errors_are_retried(sleep):
    page = {"campaigns": [{"campaignId": 1, "name": "A", "state": "ENABLED",
                           "budget": {"budget": 25.0, "budgetType": "DAILY"}, "targetingType": "MANUAL"}]}
    api = ScriptedAPI((429, {"code": "THROTTLED"}), (503, {}), (200, page))
    client = make_client(api, sleep)

    campaigns = await client.list_campaigns(CampaignType.SP)

    assert len(api.requests) == 3
    assert sleep.await_count == 2
    assert campaigns == [{
        "id": "1", "profile_id": "987", "type": "SP", "name": "A", "state": "enabled",
        "start_date": None, "end_date": None, "targeting_type": "manual", "brand_entity_id": None,
        "tactic": None, "cost_type": None, "budget": 25.0, "budget_type": "daily",
    }]


@pytest.mark.anyio
async def test_retries_stop_after_max_attempts(sleep):
    api = ScriptedAPI((503, {"message": "unavailable"}))
    client = make_client(api, sleep)

    with pytest.raises(AdsAPIError) as exc_info:
        await client.request("POST", "/sp/campaigns/list", {})

    assert exc_info.value.status_code == 503
    assert len(api.requests) == MAX_ATTEMPTS == 5
    assert sleep.await_count == 4


@pytest.mark.anyio
async def test_client_errors_are_not_retried(sleep):
    api = ScriptedAPI((400, {"message": "bad bid"}))
    client = make_client(api, sleep)

    result = await client.update_keyword_bid(CampaignType.SP, "111", 1.5)

    assert result["success"] is False
    assert "400" in result["error"]
    assert len(api.requests) == 1
    sleep.assert_not_awaited()


@pytest.mark.anyio
async def test_pagination_follows_next_token(sleep):
    api = ScriptedAPI(
        (200, {"adGroups": [{"adGroupId": 1, "campaignId": 9, "name": "g1", "state": "ENABLED", "defaultBid": 0.5}],
               "nextToken": "page-2"}),
        (200, {"adGroups": [{"adGroupId": 2, "campaignId": 9, "name": "g2", "state": "PAUSED", "defaultBid": 0.7}]}),
    )
    client = make_client(api, sleep)

    groups = await client.list_ad_groups(CampaignType.SP, "9")

    assert [g["id"] for g in groups] == ["1", "2"]
    assert "nextToken" not in api.body(0)
    assert api.body(1)["nextToken"] == "page-2"
    assert api.body(0)["campaignIdFilter"] == {"include": ["9"]}


@pytest.mark.anyio
async def test_mutation_success_returns_ids(sleep):
    api = ScriptedAPI((207, {"keywords": {"success": [{"index": 0, "keywordId": "k-1"}], "error": []}}))
    client = make_client(api, sleep)

    result = await client.create_keywords(CampaignType.SP, [
        {"campaign_id": "c", "ad_group_id": "g", "keyword_text": "shoes", "match_type": "exact", "bid": 0.8},
    ])

    assert result == {"success": True, "error": None, "ids": ["k-1"]}
    sent = api.body()["keywords"][0]
    assert sent["matchType"] == "EXACT"
    assert sent["bid"] == 0.8


@pytest.mark.anyio
async def test_item_level_error_inside_success_response(sleep):
    api = ScriptedAPI((207, {"keywords": {"success": [], "error": [
        {"index": 0, "errors": [{"errorType": "bidError", "errorValue": {"bidError": {"message": "Bid too low"}}}]},
    ]}}))
    client = make_client(api, sleep)

    result = await client.update_keyword_bid(CampaignType.SP, "111", 0.01)

    assert result["success"] is False
    assert result["error"] == "Bid too low"
    assert result["ids"] == []


@pytest.mark.anyio
async def test_bare_list_response_shape(sleep):
    api = ScriptedAPI((207, [{"code": "INVALID_ARGUMENT", "description": "Budget below minimum"}]))
    client = make_client(api, sleep)

    result = await client.update_campaign_budget(CampaignType.SD, "c-1", 0.5)

    assert result == {"success": False, "error": "Budget below minimum", "ids": []}
    assert api.body() == {"campaigns": [{"campaignId": "c-1", "budget": 0.5}]}


@pytest.mark.anyio
async def test_unsupported_operation_makes_no_request(sleep):
    api = ScriptedAPI((200, {}))
    client = make_client(api, sleep)

    result = await client.update_keyword_bid(CampaignType.SD, "111", 1.0)

    assert result["success"] is False
    assert "not supported for SD" in result["error"]
    assert api.requests == []


@pytest.mark.anyio
async def test_campaign_level_negative_uses_campaign_endpoint(sleep):
    api = ScriptedAPI((207, {"campaignNegativeKeywords": {"success": [{"index": 0, "keywordId": "n-1"}]}}))
    client = make_client(api, sleep)

    result = await client.create_negative_keyword(
        CampaignType.SP, {"campaign_id": "c", "keyword_text": "free", "match_type": "negativeExact"}
    )

    assert result["ids"] == ["n-1"]
    assert api.requests[0].url.path == "/sp/campaignNegativeKeywords"
    assert api.body()["campaignNegativeKeywords"][0]["matchType"] == "NEGATIVE_EXACT"


@pytest.mark.anyio
async def test_fetch_all_campaigns_fails_only_when_every_type_fails(sleep):
    api = ScriptedAPI((403, {"message": "forbidden"}))
    client = make_client(api, sleep)

    with pytest.raises(AdsAPIError):
        await client.fetch_all_campaigns()


@pytest.mark.anyio
async def test_fetch_all_skips_keyword_fetch_for_display(sleep):
    api = ScriptedAPI((200, {"keywords": []}))
    client = make_client(api, sleep)

    keywords = await client.fetch_all_keywords([{"id": "g1", "campaign_type": "SD"}])

    assert keywords == []
    assert api.requests == []


@pytest.mark.anyio
async def test_rate_limit_timeout_on_one_ad_group_keeps_the_others(sleep):
    api = ScriptedAPI((200, {"keywords": [
        {"keywordId": 7, "adGroupId": 2, "keywordText": "trail shoes", "matchType": "EXACT", "state": "ENABLED", "bid": 0.9},
    ]}))
    client = make_client(api, sleep)
    client.rate_limiter = AsyncMock()
    client.rate_limiter.acquire.side_effect = [RateLimitTimeout("queued too long"), None]

    keywords = await client.fetch_all_keywords([
        {"id": "1", "campaign_type": "SP"},
        {"id": "2", "campaign_type": "SP"},
    ])

    assert [k["id"] for k in keywords] == ["7"]
    assert len(api.requests) == 1


@pytest.mark.anyio
async def test_mutation_rate_limit_timeout_is_a_failed_result(sleep):
    api = ScriptedAPI((200, {}))
    client = make_client(api, sleep)
    client.rate_limiter = AsyncMock()
    client.rate_limiter.acquire.side_effect = RateLimitTimeout("Rate limit timeout: request queued too long")

    result = await client.update_keyword_bid(CampaignType.SP, "111", 1.5)

    assert result == {"success": False, "error": "Rate limit timeout: request queued too long", "ids": []}
    assert api.requests == []


@pytest.mark.anyio
async def test_mutation_token_refresh_failure_is_a_failed_result(sleep):
    api = ScriptedAPI((200, {}))
    token_manager = AsyncMock()
    token_manager.get_access_token.side_effect = TokenRefreshError("Token endpoint returned 400")
    client = AmazonAdsClient(
        client_id="cid",
        profile_id="987",
        token_manager=token_manager,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        rate_limiter=TokenBucket(capacity=100, refill_rate=100),
        sleep=sleep,
    )

    result = await client.update_campaign_state(CampaignType.SP, "c1", "paused")

    assert result["success"] is False
    assert "Token endpoint returned 400" in result["error"]
    assert api.requests == []


@pytest.mark.anyio
async def test_list_profiles_is_sent_without_scope(sleep):
    api = ScriptedAPI((200, [
        {"profileId": 111, "countryCode": "DE", "currencyCode": "EUR", "timezone": "Europe/Paris",
         "accountInfo": {"name": "Acme EU", "type": "seller", "marketplaceStringId": "A1PA6795UKMFR9"}},
    ]))
    client = AmazonAdsClient(
        client_id="cid",
        profile_id=None,
        access_token="tok",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        rate_limiter=TokenBucket(capacity=100, refill_rate=100),
        sleep=sleep,
    )

    profiles = await client.list_profiles()

    request = api.requests[0]
    assert (request.method, request.url.path) == ("GET", "/v2/profiles")
    assert "Amazon-Advertising-API-Scope" not in request.headers
    assert profiles == [{
        "profile_id": "111", "country_code": "DE", "currency_code": "EUR", "timezone": "Europe/Paris",
        "name": "Acme EU", "account_type": "seller", "marketplace_id": "A1PA6795UKMFR9",
    }]
