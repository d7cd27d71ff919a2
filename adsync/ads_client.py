"""
Amazon Advertising API client.

One transport for both directions:
- fetch: paginated list calls per (entity kind x campaign type), normalized
  into the shared row shape the sync engine persists.
- mutate: create/update calls per (mutation kind x campaign type) returning
  a uniform {"success", "error", "ids"} result.

Every request passes the shared token bucket and is retried on transient
failures (429, 5xx, network errors) with bounded, jittered backoff.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt

from adsync.models import CampaignType
from adsync.rate_limiter import RateLimitTimeout, TokenBucket, get_rate_limiter
from adsync.routing import (
    LIST_STATES,
    PAGE_SIZE,
    CampaignTypeRoutes,
    Endpoint,
    Operation,
    UnsupportedOperation,
    get_routes,
    keyword_body,
    normalize_ad_group,
    normalize_keyword,
    normalize_negative_keyword,
    normalize_target,
    to_remote_negative_match,
    to_remote_state,
)

logger = logging.getLogger(__name__)

# ── Region URL Mapping ────────────────────────────────────────────────
BASE_URLS = {
    "NA": "https://advertising-api.amazon.com",
    "EU": "https://advertising-api-eu.amazon.com",
    "FE": "https://advertising-api-fe.amazon.com",
}

RETRY_DELAYS = (1, 4, 10, 30)  # seconds, one per retry
MAX_ATTEMPTS = len(RETRY_DELAYS) + 1
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_PAGES = 50


class AdsAPIError(Exception):
    """Non-2xx response from the advertising API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES


class TokenRefreshError(Exception):
    """The token endpoint refused or failed a refresh/exchange."""


# A failed sub-fetch logs and yields fewer rows instead of aborting the sync
FETCH_ERRORS = (AdsAPIError, httpx.HTTPError, RateLimitTimeout)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, AdsAPIError):
        return exc.transient
    return isinstance(exc, httpx.TransportError)


def _backoff(retry_state) -> float:
    """1s, 4s, 10s, 30s plus up to 50% jitter."""
    index = min(retry_state.attempt_number, len(RETRY_DELAYS)) - 1
    base = RETRY_DELAYS[index]
    return base + random.uniform(0, base * 0.5)


def _error_message(entry: dict) -> str:
    """Pull a human-readable message out of a per-item error entry."""
    if entry.get("details"):
        return str(entry["details"])
    if entry.get("description"):
        return str(entry["description"])
    for err in entry.get("errors") or []:
        if not isinstance(err, dict):
            continue
        if err.get("message"):
            return str(err["message"])
        # v3 shape: {"errorType": "...", "errorValue": {"<type>": {"message": "..."}}}
        for value in (err.get("errorValue") or {}).values():
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
        if err.get("errorType"):
            return str(err["errorType"])
    return str(entry.get("code") or "Unknown error")


def _extract_items(data: Any, key: str) -> list[dict]:
    """
    Flatten a mutation response into per-item dicts with a "code" field.

    Handles the three shapes the API uses:
    - a bare list of {"code": "SUCCESS", ...} items (SD, older SB)
    - {"<key>": [items]}
    - {"<key>": {"success": [...], "error": [...]}} (SP v3, SB v4)
    """
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if not isinstance(data, dict):
        return []

    payload = data.get(key, data)
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict) and ("success" in payload or "error" in payload):
        items = []
        for ok in payload.get("success") or []:
            items.append({"code": "SUCCESS", **ok})
        for bad in payload.get("error") or []:
            items.append({"code": "ERROR", "details": _error_message(bad), **{k: v for k, v in bad.items() if k != "code"}})
        return sorted(items, key=lambda item: item.get("index", 0))
    return []


def _result_from_response(data: Any, endpoint: Endpoint) -> dict:
    items = _extract_items(data, endpoint.items_key)
    failures = [item for item in items if item.get("code", "SUCCESS") != "SUCCESS"]
    if failures:
        return {"success": False, "error": _error_message(failures[0]), "ids": []}
    ids = []
    for item in items:
        value = item.get(endpoint.id_field) or item.get("id")
        if value is not None:
            ids.append(str(value))
    return {"success": True, "error": None, "ids": ids}


def _failed(error: str) -> dict:
    return {"success": False, "error": error, "ids": []}


class AmazonAdsClient:
    """
    Client for a single advertising profile.
    Pass either a static access_token or a token_manager (anything with an
    async get_access_token()) so long-running syncs survive token expiry.
    """

    def __init__(
        self,
        client_id: str,
        profile_id: Optional[str],
        region: str = "NA",
        access_token: Optional[str] = None,
        token_manager=None,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[TokenBucket] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 30.0,
    ):
        if access_token is None and token_manager is None:
            raise ValueError("AmazonAdsClient needs an access_token or a token_manager")
        self.client_id = client_id
        self.profile_id = str(profile_id) if profile_id else ""
        self.region = region.upper()
        self.access_token = access_token
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self._http = http_client
        self._sleep = sleep
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        url = BASE_URLS.get(self.region)
        if not url:
            raise ValueError(f"Unsupported region: {self.region}. Use NA, EU, or FE.")
        return url

    async def _headers(self, media_type: str) -> dict[str, str]:
        token = await self.token_manager.get_access_token() if self.token_manager else self.access_token
        headers = {
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Authorization": f"Bearer {token}",
            "Content-Type": media_type,
            "Accept": media_type,
        }
        # Profile listing is the one call made before a profile is chosen
        if self.profile_id:
            headers["Amazon-Advertising-API-Scope"] = self.profile_id
        return headers

    # ── Transport ────────────────────────────────────────────────────

    async def _send(self, method: str, url: str, body: Any, media_type: str) -> Any:
        await self.rate_limiter.acquire()
        headers = await self._headers(media_type)

        if self._http is not None:
            response = await self._http.request(method, url, json=body, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=body, headers=headers)

        if response.status_code >= 400:
            text = response.text
            raise AdsAPIError(
                f"Amazon API {method} {url} returned {response.status_code}: {text[:500]}",
                status_code=response.status_code,
                body=text,
            )
        if not response.content:
            return None
        return response.json()

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        media_type: str = "application/json",
    ) -> Any:
        """Send one request with rate limiting and bounded retry on transient failures."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=_backoff,
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(self._send, method, url, body, media_type)

    async def _paginated_list(self, endpoint: Endpoint, filters: Optional[dict] = None) -> list[dict]:
        """Follow nextToken until exhausted and return the raw items."""
        all_items = []
        next_token = None
        page = 0

        while page < MAX_PAGES:
            body: dict[str, Any] = {"stateFilter": {"include": LIST_STATES}, "maxResults": PAGE_SIZE}
            if filters:
                body.update(filters)
            if next_token:
                body["nextToken"] = next_token

            data = await self.request("POST", endpoint.list_path, body, endpoint.media_type)
            data = data or {}
            items = data.get(endpoint.items_key) or []
            all_items.extend(items)
            page += 1

            next_token = data.get("nextToken")
            if not next_token:
                break

        logger.debug(f"{endpoint.list_path}: {len(all_items)} items in {page} page(s)")
        return all_items

    # ── Profiles ─────────────────────────────────────────────────────

    async def list_profiles(self) -> list[dict]:
        """Advertising profiles the token can reach, for choosing the one to manage."""
        data = await self.request("GET", "/v2/profiles")
        profiles = []
        for raw in data or []:
            account = raw.get("accountInfo") or {}
            profiles.append({
                "profile_id": str(raw.get("profileId")),
                "country_code": raw.get("countryCode"),
                "currency_code": raw.get("currencyCode"),
                "timezone": raw.get("timezone"),
                "name": account.get("name"),
                "account_type": account.get("type"),
                "marketplace_id": account.get("marketplaceStringId"),
            })
        return profiles

    # ── Fetch: per type ──────────────────────────────────────────────

    async def list_campaigns(self, campaign_type: CampaignType) -> list[dict]:
        routes = get_routes(campaign_type)
        raw = await self._paginated_list(routes.campaigns)
        return [routes.normalize_campaign(item, self.profile_id) for item in raw]

    async def list_ad_groups(self, campaign_type: CampaignType, campaign_id: str) -> list[dict]:
        routes = get_routes(campaign_type)
        raw = await self._paginated_list(routes.ad_groups, {"campaignIdFilter": {"include": [campaign_id]}})
        return [normalize_ad_group(item, routes.campaign_type) for item in raw]

    async def list_keywords(self, campaign_type: CampaignType, ad_group_id: str) -> list[dict]:
        routes = get_routes(campaign_type)
        routes.require(Operation.FETCH_KEYWORDS)
        raw = await self._paginated_list(routes.keywords, {"adGroupIdFilter": {"include": [ad_group_id]}})
        return [normalize_keyword(item, routes.campaign_type) for item in raw]

    async def list_negative_keywords(self, campaign_type: CampaignType, campaign_id: str) -> list[dict]:
        """Ad-group-level and campaign-level negatives for one campaign."""
        routes = get_routes(campaign_type)
        routes.require(Operation.FETCH_NEGATIVE_KEYWORDS)
        filters = {"campaignIdFilter": {"include": [campaign_id]}}

        ad_group_level = await self._paginated_list(routes.negative_keywords, filters)
        campaign_level = await self._paginated_list(routes.campaign_negative_keywords, filters)
        return [
            normalize_negative_keyword(item, routes.campaign_type, campaign_level=False) for item in ad_group_level
        ] + [
            normalize_negative_keyword(item, routes.campaign_type, campaign_level=True) for item in campaign_level
        ]

    async def list_product_targets(self, campaign_type: CampaignType, ad_group_id: str) -> list[dict]:
        routes = get_routes(campaign_type)
        routes.require(Operation.FETCH_TARGETS)
        raw = await self._paginated_list(routes.targets, {"adGroupIdFilter": {"include": [ad_group_id]}})
        return [normalize_target(item, routes.campaign_type) for item in raw]

    # ── Fetch: fan-out ───────────────────────────────────────────────
    # Sub-fetch failures are logged and yield fewer rows; only a total
    # campaign-fetch failure aborts.

    async def fetch_all_campaigns(self) -> list[dict]:
        campaigns: list[dict] = []
        errors: list[Exception] = []
        for campaign_type in CampaignType:
            try:
                campaigns.extend(await self.list_campaigns(campaign_type))
            except FETCH_ERRORS as e:
                logger.warning(f"Fetching {campaign_type.value} campaigns failed: {e}")
                errors.append(e)
        if len(errors) == len(CampaignType):
            raise errors[0]
        return campaigns

    async def fetch_all_ad_groups(self, campaigns: list[dict]) -> list[dict]:
        ad_groups: list[dict] = []
        for campaign in campaigns:
            try:
                ad_groups.extend(await self.list_ad_groups(campaign["type"], campaign["id"]))
            except FETCH_ERRORS as e:
                logger.warning(f"Fetching ad groups for campaign {campaign['id']} failed: {e}")
        return ad_groups

    async def fetch_all_keywords(self, ad_groups: list[dict]) -> list[dict]:
        keywords: list[dict] = []
        for ad_group in ad_groups:
            if not get_routes(ad_group["campaign_type"]).supports(Operation.FETCH_KEYWORDS):
                continue
            try:
                keywords.extend(await self.list_keywords(ad_group["campaign_type"], ad_group["id"]))
            except FETCH_ERRORS as e:
                logger.warning(f"Fetching keywords for ad group {ad_group['id']} failed: {e}")
        return keywords

    async def fetch_all_negative_keywords(self, campaigns: list[dict]) -> list[dict]:
        negatives: list[dict] = []
        for campaign in campaigns:
            if not get_routes(campaign["type"]).supports(Operation.FETCH_NEGATIVE_KEYWORDS):
                continue
            try:
                negatives.extend(await self.list_negative_keywords(campaign["type"], campaign["id"]))
            except FETCH_ERRORS as e:
                logger.warning(f"Fetching negative keywords for campaign {campaign['id']} failed: {e}")
        return negatives

    async def fetch_all_product_targets(self, ad_groups: list[dict]) -> list[dict]:
        targets: list[dict] = []
        for ad_group in ad_groups:
            if not get_routes(ad_group["campaign_type"]).supports(Operation.FETCH_TARGETS):
                continue
            try:
                targets.extend(await self.list_product_targets(ad_group["campaign_type"], ad_group["id"]))
            except FETCH_ERRORS as e:
                logger.warning(f"Fetching product targets for ad group {ad_group['id']} failed: {e}")
        return targets

    # ── Mutations ────────────────────────────────────────────────────

    async def _mutate(
        self,
        campaign_type: CampaignType,
        operation: Operation,
        build: Callable[[CampaignTypeRoutes], tuple[str, Endpoint, list[dict]]],
    ) -> dict:
        """
        Run one mutation and fold the response into {"success", "error", "ids"}.
        Unsupported operations fail before any network call.
        """
        routes = get_routes(campaign_type)
        try:
            routes.require(operation)
        except UnsupportedOperation as e:
            logger.warning(str(e))
            return _failed(str(e))

        method, endpoint, items = build(routes)
        try:
            data = await self.request(method, endpoint.path, {endpoint.items_key: items}, endpoint.media_type)
        except AdsAPIError as e:
            logger.error(f"{operation.value} ({routes.campaign_type.value}) failed: {e}")
            return _failed(str(e))
        except httpx.HTTPError as e:
            logger.error(f"{operation.value} ({routes.campaign_type.value}) network error: {e}")
            return _failed(f"Network error: {e}")
        except (RateLimitTimeout, TokenRefreshError) as e:
            logger.error(f"{operation.value} ({routes.campaign_type.value}) not sent: {e}")
            return _failed(str(e))

        result = _result_from_response(data, endpoint)
        if not result["success"]:
            logger.warning(f"{operation.value} ({routes.campaign_type.value}) rejected: {result['error']}")
        return result

    async def update_campaign_budget(self, campaign_type: CampaignType, campaign_id: str, budget: float) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_CAMPAIGN_BUDGET,
            lambda r: ("PUT", r.campaigns, [r.budget_body(campaign_id, budget)]),
        )

    async def update_campaign_state(self, campaign_type: CampaignType, campaign_id: str, state: str) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_CAMPAIGN_STATE,
            lambda r: ("PUT", r.campaigns, [{"campaignId": campaign_id, "state": to_remote_state(state)}]),
        )

    async def update_ad_group_state(self, campaign_type: CampaignType, ad_group_id: str, state: str) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_AD_GROUP_STATE,
            lambda r: ("PUT", r.ad_groups, [{"adGroupId": ad_group_id, "state": to_remote_state(state)}]),
        )

    async def update_keyword_bid(self, campaign_type: CampaignType, keyword_id: str, bid: float) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_KEYWORD_BID,
            lambda r: ("PUT", r.keywords, [{"keywordId": keyword_id, "bid": bid}]),
        )

    async def update_keyword_state(self, campaign_type: CampaignType, keyword_id: str, state: str) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_KEYWORD_STATE,
            lambda r: ("PUT", r.keywords, [{"keywordId": keyword_id, "state": to_remote_state(state)}]),
        )

    async def update_target_bid(self, campaign_type: CampaignType, target_id: str, bid: float) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_TARGET_BID,
            lambda r: ("PUT", r.targets, [{"targetId": target_id, "bid": bid}]),
        )

    async def update_target_state(self, campaign_type: CampaignType, target_id: str, state: str) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.UPDATE_TARGET_STATE,
            lambda r: ("PUT", r.targets, [{"targetId": target_id, "state": to_remote_state(state)}]),
        )

    async def create_campaign(self, campaign_type: CampaignType, data: dict) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.CREATE_CAMPAIGN,
            lambda r: ("POST", r.campaigns, [r.campaign_body(data)]),
        )

    async def create_ad_group(self, campaign_type: CampaignType, data: dict) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.CREATE_AD_GROUP,
            lambda r: ("POST", r.ad_groups, [r.ad_group_body(data)]),
        )

    async def create_keywords(self, campaign_type: CampaignType, keywords: list[dict]) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.CREATE_KEYWORDS,
            lambda r: ("POST", r.keywords, [keyword_body(kw) for kw in keywords]),
        )

    async def create_negative_keyword(self, campaign_type: CampaignType, data: dict) -> dict:
        """Ad-group level when data carries ad_group_id, campaign level otherwise."""
        item = {
            "campaignId": data["campaign_id"],
            "keywordText": data["keyword_text"],
            "matchType": to_remote_negative_match(data["match_type"]),
            "state": "ENABLED",
        }
        if data.get("ad_group_id"):
            item["adGroupId"] = data["ad_group_id"]

        def build(r: CampaignTypeRoutes):
            endpoint = r.negative_keywords if data.get("ad_group_id") else r.campaign_negative_keywords
            return "POST", endpoint, [item]

        return await self._mutate(campaign_type, Operation.CREATE_NEGATIVE_KEYWORD, build)

    async def archive_negative_keyword(
        self, campaign_type: CampaignType, keyword_id: str, campaign_level: bool = False
    ) -> dict:
        def build(r: CampaignTypeRoutes):
            endpoint = r.campaign_negative_keywords if campaign_level else r.negative_keywords
            return "PUT", endpoint, [{"keywordId": keyword_id, "state": "ARCHIVED"}]

        return await self._mutate(campaign_type, Operation.ARCHIVE_NEGATIVE_KEYWORD, build)

    async def create_targets(self, campaign_type: CampaignType, targets: list[dict]) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.CREATE_TARGETS,
            lambda r: ("POST", r.targets, [r.target_body(t) for t in targets]),
        )

    async def archive_target(self, campaign_type: CampaignType, target_id: str) -> dict:
        return await self._mutate(
            campaign_type,
            Operation.ARCHIVE_TARGET,
            lambda r: ("PUT", r.targets, [{"targetId": target_id, "state": "ARCHIVED"}]),
        )
