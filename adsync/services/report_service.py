"""
Report Service - async performance reports from the Amazon Ads reporting API.

A report is a remote job: submit it, poll its status on a growing interval,
then download the gzip'd result. Polling is modelled as an explicit state
machine (ReportJob + ReportPoller.step) so each transition and the timeout
can be tested without real waiting.
"""

import asyncio
import enum
import gzip
import json
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from adsync.ads_client import FETCH_ERRORS, AmazonAdsClient
from adsync.models import CampaignType
from adsync.routing import ROUTES, get_routes
from adsync.utils import normalize_metric_date, utcnow

logger = logging.getLogger(__name__)

REPORT_MEDIA_TYPE = "application/vnd.createasyncreportrequest.v3+json"
METRIC_COLUMNS = ["impressions", "clicks", "cost", "purchases30d", "sales30d"]

# kind -> (id columns, groupBy, owner id column)
REPORT_SHAPES = {
    "campaigns": (["campaignId", "date"], ["campaign"], "campaignId"),
    "keywords": (["keywordId", "adGroupId", "campaignId", "date"], ["campaign", "keyword"], "keywordId"),
    "targets": (["targetId", "adGroupId", "campaignId", "date"], ["campaign", "targeting"], "targetId"),
}

INITIAL_POLL_INTERVAL = 5.0
POLL_BACKOFF = 1.2
MAX_POLL_INTERVAL = 15.0


class ReportState(str, enum.Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = {ReportState.COMPLETED, ReportState.FAILED, ReportState.TIMED_OUT}


@dataclass
class ReportJob:
    report_id: str
    report_type: str
    started_at: float
    state: ReportState = ReportState.SUBMITTED
    interval: float = INITIAL_POLL_INTERVAL
    url: Optional[str] = None
    error: Optional[str] = None
    polls: int = 0

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES


def build_report_request(campaign_type: CampaignType, kind: str, start_date: str, end_date: str) -> dict:
    routes = get_routes(campaign_type)
    report_type = routes.report_types[kind]
    id_columns, group_by, _ = REPORT_SHAPES[kind]
    return {
        "name": f"{report_type}_{int(utcnow().timestamp() * 1000)}",
        "startDate": start_date,
        "endDate": end_date,
        "configuration": {
            "adProduct": routes.ad_product,
            "groupBy": group_by,
            "columns": id_columns + METRIC_COLUMNS,
            "reportTypeId": report_type,
            "timeUnit": "DAILY",
            "format": "GZIP_JSON",
        },
    }


def parse_report_payload(content: bytes) -> list[dict]:
    """Gunzip if needed, then parse a JSON array or JSON lines."""
    if content[:2] == b"\x1f\x8b":
        content = gzip.decompress(content)
    text = content.decode("utf-8")
    try:
        data = json.loads(text)
        return data if isinstance(data, list) else [data]
    except json.JSONDecodeError:
        return [json.loads(line) for line in text.splitlines() if line.strip()]


def to_metric_row(raw: dict, owner_column: str) -> Optional[dict]:
    owner_id = raw.get(owner_column)
    if owner_id is None or not raw.get("date"):
        return None
    return {
        "owner_id": str(owner_id),
        "date": normalize_metric_date(raw["date"]),
        "impressions": int(raw.get("impressions") or 0),
        "clicks": int(raw.get("clicks") or 0),
        "cost": float(raw.get("cost") or 0),
        "orders": int(raw.get("purchases30d") or 0),
        "sales": float(raw.get("sales30d") or 0),
    }


class ReportPoller:
    def __init__(
        self,
        client: AmazonAdsClient,
        timeout: float = 600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client = client
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._http = http_client

    async def submit(self, campaign_type: CampaignType, kind: str, start_date: str, end_date: str) -> ReportJob:
        body = build_report_request(campaign_type, kind, start_date, end_date)
        data = await self.client.request("POST", "/reporting/reports", body, REPORT_MEDIA_TYPE)
        report_type = body["configuration"]["reportTypeId"]
        logger.info(f"Report {report_type} submitted: {data['reportId']} ({start_date} → {end_date})")
        return ReportJob(report_id=data["reportId"], report_type=report_type, started_at=self._clock())

    async def _poll(self, job: ReportJob) -> None:
        data = await self.client.request("GET", f"/reporting/reports/{job.report_id}", None, REPORT_MEDIA_TYPE)
        job.polls += 1
        status = (data or {}).get("status")
        if status == "COMPLETED" and data.get("url"):
            job.state = ReportState.COMPLETED
            job.url = data["url"]
        elif status in ("FAILED", "CANCELLED"):
            job.state = ReportState.FAILED
            job.error = data.get("failureReason") or data.get("statusDetails") or "Unknown error"
            logger.error(f"Report {job.report_id} failed: {job.error}")
        else:
            job.state = ReportState.POLLING

    async def step(self, job: ReportJob) -> ReportJob:
        """Advance the job by one transition."""
        if job.done:
            return job

        if job.state == ReportState.SUBMITTED:
            await self._poll(job)
            return job

        if self._clock() - job.started_at >= self.timeout:
            job.state = ReportState.TIMED_OUT
            logger.warning(f"Report {job.report_id} timed out after {self.timeout}s")
            return job

        await self._sleep(job.interval)
        job.interval = min(job.interval * POLL_BACKOFF, MAX_POLL_INTERVAL)
        await self._poll(job)
        return job

    async def wait(self, job: ReportJob) -> ReportJob:
        while not job.done:
            await self.step(job)
        return job

    async def download(self, url: str) -> list[dict]:
        # Presigned URL: no API auth headers, no rate limiting
        if self._http is not None:
            response = await self._http.get(url, timeout=60)
        else:
            async with httpx.AsyncClient(timeout=60) as client:
                response = await client.get(url)
        response.raise_for_status()
        return parse_report_payload(response.content)

    async def run(self, campaign_type: CampaignType, kind: str, start_date: str, end_date: str) -> list[dict]:
        """Submit, wait and download. Failure or timeout yields an empty list."""
        try:
            job = await self.wait(await self.submit(campaign_type, kind, start_date, end_date))
            if job.state != ReportState.COMPLETED:
                return []
            rows = await self.download(job.url)
        except FETCH_ERRORS as e:
            logger.warning(f"{campaign_type.value} {kind} report failed: {e}")
            return []

        _, _, owner_column = REPORT_SHAPES[kind]
        parsed = [row for row in (to_metric_row(r, owner_column) for r in rows) if row is not None]
        logger.info(f"{campaign_type.value} {kind} report: {len(parsed)} rows")
        return parsed

    async def fetch_metrics(self, kind: str, start_date: str, end_date: str) -> list[dict]:
        """Run the `kind` report for every campaign type that has one."""
        rows: list[dict] = []
        for campaign_type, routes in ROUTES.items():
            if kind in routes.report_types:
                rows.extend(await self.run(campaign_type, kind, start_date, end_date))
        return rows
