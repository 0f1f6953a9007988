"""Tests for the remote scrape service client."""

import json

import httpx
import pytest

from pricewatch.ingest.http_client import QuotaExhaustedError, RateLimitedError, ScrapeServiceError
from pricewatch.ingest.scrape_service import ScrapeServiceClient

API_URL = "https://scrape.test/v1"


def _client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ScrapeServiceClient(api_url=API_URL, api_key="test-key", client=http)


@pytest.mark.asyncio
async def test_scrape_sends_options_and_parses_page():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "markdown": "AirPods Pro i god stand\n1 500 kr",
                    "links": ["https://www.finn.no/bap/forsale/item/1"],
                    "metadata": {"sourceURL": "https://www.finn.no/bap/forsale/search.html?q=x"},
                },
            },
        )

    page = await _client(handler).scrape(
        "https://www.finn.no/bap/forsale/search.html?q=x",
        formats=["markdown", "links"],
        timeout_seconds=30,
        wait_ms=2000,
    )

    assert seen["url"] == f"{API_URL}/scrape"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["formats"] == ["markdown", "links"]
    assert seen["body"]["timeout"] == 30000
    assert seen["body"]["waitFor"] == 2000
    assert page.markdown.startswith("AirPods Pro")
    assert page.links == ["https://www.finn.no/bap/forsale/item/1"]
    assert page.source == "scrape_service"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, error",
    [(402, QuotaExhaustedError), (429, RateLimitedError), (500, ScrapeServiceError)],
)
async def test_scrape_maps_status_codes(status_code, error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, headers={"Retry-After": "7"}, text="nope")

    with pytest.raises(error) as exc_info:
        await _client(handler).scrape("https://www.elkjop.no/a")

    assert exc_info.value.status_code == status_code
    if status_code == 429:
        assert exc_info.value.retry_after == 7


@pytest.mark.asyncio
async def test_transport_error_is_service_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ScrapeServiceError):
        await _client(handler).scrape("https://www.elkjop.no/a")


@pytest.mark.asyncio
async def test_missing_api_key_is_service_error():
    client = ScrapeServiceClient(api_url=API_URL, api_key="")

    with pytest.raises(ScrapeServiceError):
        await client.scrape("https://www.elkjop.no/a")


@pytest.mark.asyncio
async def test_batch_submit_and_poll():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            assert json.loads(request.content)["urls"] == ["https://www.elkjop.no/a"]
            return httpx.Response(200, json={"success": True, "id": "job-42"})
        assert request.url.path.endswith("/batch/scrape/job-42")
        return httpx.Response(
            200,
            json={
                "status": "completed",
                "completed": 1,
                "total": 1,
                "data": [{"markdown": "x", "metadata": {"sourceURL": "https://www.elkjop.no/a"}}],
            },
        )

    client = _client(handler)
    job_id = await client.batch_scrape(["https://www.elkjop.no/a"])
    status = await client.poll_status(job_id)

    assert job_id == "job-42"
    assert status.is_done
    assert (status.completed, status.total) == (1, 1)
    assert status.results[0].url == "https://www.elkjop.no/a"
