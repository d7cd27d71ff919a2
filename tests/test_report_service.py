"""
Tests for the report polling state machine and payload parsing.
"""

import gzip
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from adsync.ads_client import AmazonAdsClient
from adsync.models import CampaignType
from adsync.rate_limiter import TokenBucket
from adsync.services.report_service import (
    ReportPoller,
    ReportState,
    build_report_request,
    parse_report_payload,
    to_metric_row,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class ReportAPI:
    """Serves report create/status calls and the presigned download."""

    def __init__(self, statuses, rows=None):
        self.statuses = list(statuses)
        self.rows = rows or []
        self.status_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/reporting/reports":
            return httpx.Response(200, json={"reportId": "rep-1", "status": "PENDING"})
        if request.url.path == "/reporting/reports/rep-1":
            self.status_calls += 1
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            body = {"reportId": "rep-1", "status": status}
            if status == "COMPLETED":
                body["url"] = "https://downloads.example.com/rep-1.json.gz"
            if status == "FAILED":
                body["failureReason"] = "Report generation failed"
            return httpx.Response(200, json=body)
        if request.url.host == "downloads.example.com":
            return httpx.Response(200, content=gzip.compress(json.dumps(self.rows).encode()))
        return httpx.Response(404, json={"message": "unexpected"})


def make_poller(api: ReportAPI, clock: FakeClock, sleep, timeout: float = 600.0) -> ReportPoller:
    http = httpx.AsyncClient(transport=httpx.MockTransport(api))
    client = AmazonAdsClient(
        client_id="cid", profile_id="1", access_token="tok", http_client=http,
        rate_limiter=TokenBucket(capacity=100, refill_rate=100), sleep=AsyncMock(),
    )
    return ReportPoller(client, timeout=timeout, sleep=sleep, clock=clock, http_client=http)


def test_report_request_shape():
    body = build_report_request(CampaignType.SP, "keywords", "2024-01-01", "2024-01-30")
    config = body["configuration"]
    assert config["adProduct"] == "SPONSORED_PRODUCTS"
    assert config["reportTypeId"] == "spKeywords"
    assert config["groupBy"] == ["campaign", "keyword"]
    assert config["timeUnit"] == "DAILY"
    assert config["format"] == "GZIP_JSON"
    assert "keywordId" in config["columns"] and "sales30d" in config["columns"]


def test_parse_gzip_json_array():
    rows = [{"campaignId": 1, "date": "2024-01-02", "clicks": 3}]
    assert parse_report_payload(gzip.compress(json.dumps(rows).encode())) == rows


def test_parse_plain_json_lines():
    content = b'{"campaignId": 1}\n{"campaignId": 2}\n'
    assert parse_report_payload(content) == [{"campaignId": 1}, {"campaignId": 2}]


def test_metric_row_normalizes_date_and_defaults():
    row = to_metric_row({"keywordId": 42, "date": "2024-01-02", "clicks": "7", "sales30d": None}, "keywordId")
    assert row == {"owner_id": "42", "date": "20240102", "impressions": 0, "clicks": 7,
                   "cost": 0.0, "orders": 0, "sales": 0.0}
    assert to_metric_row({"date": "2024-01-02"}, "keywordId") is None


@pytest.mark.anyio
async def test_state_machine_polls_with_growing_interval():
    clock, sleep = FakeClock(), AsyncMock()
    poller = make_poller(ReportAPI(["PENDING", "PROCESSING", "COMPLETED"]), clock, sleep)

    job = await poller.submit(CampaignType.SP, "campaigns", "2024-01-01", "2024-01-30")
    assert job.state == ReportState.SUBMITTED
    assert job.report_type == "spCampaigns"

    await poller.step(job)
    assert job.state == ReportState.POLLING
    sleep.assert_not_awaited()

    await poller.step(job)
    assert job.state == ReportState.POLLING
    sleep.assert_awaited_with(5.0)
    assert job.interval == pytest.approx(6.0)

    await poller.step(job)
    assert job.state == ReportState.COMPLETED
    assert job.url.endswith("rep-1.json.gz")
    assert job.polls == 3

    # Terminal states do not move
    await poller.step(job)
    assert job.polls == 3


@pytest.mark.anyio
async def test_poll_interval_is_capped():
    clock, sleep = FakeClock(), AsyncMock()
    poller = make_poller(ReportAPI(["PENDING"] * 20 + ["COMPLETED"]), clock, sleep)
    job = await poller.submit(CampaignType.SP, "campaigns", "2024-01-01", "2024-01-30")
    for _ in range(15):
        await poller.step(job)
    assert job.interval == 15.0


@pytest.mark.anyio
async def test_failed_report():
    clock, sleep = FakeClock(), AsyncMock()
    poller = make_poller(ReportAPI(["FAILED"]), clock, sleep)
    job = await poller.wait(await poller.submit(CampaignType.SB, "campaigns", "2024-01-01", "2024-01-30"))
    assert job.state == ReportState.FAILED
    assert job.error == "Report generation failed"


@pytest.mark.anyio
async def test_report_times_out_without_another_poll():
    clock, sleep = FakeClock(), AsyncMock()
    api = ReportAPI(["PENDING"])
    poller = make_poller(api, clock, sleep, timeout=600.0)

    job = await poller.submit(CampaignType.SP, "campaigns", "2024-01-01", "2024-01-30")
    await poller.step(job)
    clock.now = 601.0
    await poller.step(job)

    assert job.state == ReportState.TIMED_OUT
    assert api.status_calls == 1


@pytest.mark.anyio
async def test_run_downloads_and_parses_rows():
    rows = [
        {"campaignId": 11, "date": "2024-01-02", "impressions": 100, "clicks": 5, "cost": 2.5,
         "purchases30d": 1, "sales30d": 20.0},
        {"date": "2024-01-02"},
    ]
    clock, sleep = FakeClock(), AsyncMock()
    poller = make_poller(ReportAPI(["COMPLETED"], rows=rows), clock, sleep)

    parsed = await poller.run(CampaignType.SP, "campaigns", "2024-01-01", "2024-01-30")

    assert parsed == [{"owner_id": "11", "date": "20240102", "impressions": 100, "clicks": 5,
                       "cost": 2.5, "orders": 1, "sales": 20.0}]


@pytest.mark.anyio
async def test_run_returns_nothing_on_failure():
    clock, sleep = FakeClock(), AsyncMock()
    poller = make_poller(ReportAPI(["FAILED"]), clock, sleep)
    assert await poller.run(CampaignType.SD, "targets", "2024-01-01", "2024-01-30") == []
