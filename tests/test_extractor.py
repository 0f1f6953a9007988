"""Tests for listing extraction with budget admission and fallback."""

from datetime import date
from unittest.mock import AsyncMock

import httpx
import pytest

from pricewatch.config import settings
from pricewatch.ingest.base import PageContent
from pricewatch.ingest.extractor import ListingExtractor, marketplace_search_url
from pricewatch.ingest.http_client import FetchPolicy, QuotaExhaustedError, ScrapeServiceError
from pricewatch.ingest.scrape_budget import BudgetAllocator
from pricewatch.ingest.scrape_service import BatchStatus

RETAILER_URL = "https://www.elkjop.no/mobil/iphone-15-pro"
RETAILER_MARKDOWN = "iPhone 15 Pro 128GB Svart\n12 999 kr\n"
RETAILER_HTML = (
    "<html><body><div><h2>iPhone 15 Pro 128GB Svart</h2>"
    "<span>12 999 kr</span></div></body></html>"
)


def _allocator(session_factory, total=10):
    return BudgetAllocator(
        session_factory=session_factory, daily_total=total, today=lambda: date(2024, 5, 1)
    )


def _direct_client(html=RETAILER_HTML, status_code=200, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        return httpx.Response(status_code, text=html)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_extract_uses_scrape_service(session_factory):
    scrape_client = AsyncMock()
    scrape_client.scrape.return_value = PageContent(url=RETAILER_URL, markdown=RETAILER_MARKDOWN)
    extractor = ListingExtractor(
        allocator=_allocator(session_factory),
        scrape_client=scrape_client,
        http_client=_direct_client(),
    )

    listings = await extractor.extract(RETAILER_URL, "Elkjøp", "new")

    assert len(listings) == 1
    assert listings[0].price == 12999
    assert listings[0].merchant_name == "Elkjøp"
    assert listings[0].url == RETAILER_URL
    scrape_client.scrape.assert_awaited_once()

    budget = await extractor.allocator.get()
    assert budget.used == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [QuotaExhaustedError(), ScrapeServiceError("boom", status_code=500)],
)
async def test_extract_falls_back_to_direct_fetch(session_factory, error):
    calls = []
    scrape_client = AsyncMock()
    scrape_client.scrape.side_effect = error
    extractor = ListingExtractor(
        allocator=_allocator(session_factory),
        scrape_client=scrape_client,
        http_client=_direct_client(calls=calls),
    )

    listings = await extractor.extract(RETAILER_URL, "Elkjøp", "new")

    assert calls == [RETAILER_URL]
    assert len(listings) == 1
    assert listings[0].title == "iPhone 15 Pro 128GB Svart"
    assert listings[0].price == 12999


@pytest.mark.asyncio
async def test_extract_returns_empty_when_both_paths_fail(session_factory):
    scrape_client = AsyncMock()
    scrape_client.scrape.side_effect = ScrapeServiceError("down")
    extractor = ListingExtractor(
        allocator=_allocator(session_factory),
        scrape_client=scrape_client,
        http_client=_direct_client(status_code=404),
        fetch_policy=FetchPolicy(max_attempts=1),
    )

    assert await extractor.extract(RETAILER_URL, "Elkjøp", "new") == []


@pytest.mark.asyncio
async def test_exhausted_budget_makes_no_network_call(session_factory):
    allocator = _allocator(session_factory, total=100)
    await allocator.allocate(100)

    calls = []
    scrape_client = AsyncMock()
    extractor = ListingExtractor(
        allocator=allocator,
        scrape_client=scrape_client,
        http_client=_direct_client(calls=calls),
    )

    assert await extractor.extract(RETAILER_URL, "Elkjøp", "new") == []
    assert extractor.budget_exhausted
    assert await extractor.extract_marketplace("AirPods Pro") == []

    scrape_client.scrape.assert_not_called()
    assert calls == []


@pytest.mark.asyncio
async def test_marketplace_extraction_uses_listing_links(session_factory):
    markdown = (
        "AirPods Pro som ny, lite brukt\n1 800 kr\n\n\n\n"
        "AirPods Pro i god stand\n1 500 kr\n"
    )
    links = [
        "https://www.finn.no/bap/forsale/search.html?q=AirPods",
        "https://www.finn.no/bap/forsale/item/111",
        "https://www.finn.no/bap/forsale/item/222",
    ]
    scrape_client = AsyncMock()
    scrape_client.scrape.return_value = PageContent(url="x", markdown=markdown, links=links)
    extractor = ListingExtractor(
        allocator=_allocator(session_factory),
        scrape_client=scrape_client,
        http_client=_direct_client(),
    )

    listings = await extractor.extract_marketplace("AirPods Pro")

    assert [x.condition for x in listings] == ["used", "used"]
    assert [x.merchant_name for x in listings] == ["Finn.no", "Finn.no"]
    assert [x.url for x in listings] == links[1:]
    called_url = scrape_client.scrape.await_args.args[0]
    assert called_url == marketplace_search_url("AirPods Pro")
    assert called_url.endswith("?q=AirPods+Pro")


@pytest.mark.asyncio
async def test_extract_batch_drops_urls_beyond_budget(session_factory, monkeypatch):
    monkeypatch.setattr("pricewatch.ingest.extractor.settings.batch_poll_interval_seconds", 0)
    urls = [
        ("https://www.elkjop.no/a", "Elkjøp"),
        ("https://www.power.no/b", "Power"),
        ("https://www.komplett.no/c", "Komplett"),
    ]
    scrape_client = AsyncMock()
    scrape_client.batch_scrape.return_value = "job-1"
    scrape_client.poll_status.side_effect = [
        BatchStatus(status="scraping", completed=0, total=2),
        BatchStatus(
            status="completed",
            completed=2,
            total=2,
            results=[
                PageContent(url="https://www.elkjop.no/a/", markdown=RETAILER_MARKDOWN),
                PageContent(url="https://www.power.no/b", markdown="Ingen priser her\n"),
            ],
        ),
    ]
    extractor = ListingExtractor(
        allocator=_allocator(session_factory, total=2),
        scrape_client=scrape_client,
        http_client=_direct_client(),
    )

    listings = await extractor.extract_batch(urls)

    submitted = scrape_client.batch_scrape.await_args.args[0]
    assert submitted == ["https://www.elkjop.no/a", "https://www.power.no/b"]
    assert scrape_client.poll_status.await_count == 2
    assert len(listings) == 1
    assert listings[0].merchant_name == "Elkjøp"
    assert extractor.budget_exhausted


@pytest.mark.asyncio
async def test_extract_batch_falls_back_per_url_on_submit_failure(session_factory):
    scrape_client = AsyncMock()
    scrape_client.batch_scrape.side_effect = ScrapeServiceError("batch unsupported")
    scrape_client.scrape.return_value = PageContent(url="x", markdown=RETAILER_MARKDOWN)
    extractor = ListingExtractor(
        allocator=_allocator(session_factory),
        scrape_client=scrape_client,
        http_client=_direct_client(),
    )

    listings = await extractor.extract_batch(
        [("https://www.elkjop.no/a", "Elkjøp"), ("https://www.power.no/b", "Power")],
        max_concurrency=1,
    )

    assert sorted(x.merchant_name for x in listings) == ["Elkjøp", "Power"]
    assert scrape_client.scrape.await_count == 2
    budget = await extractor.allocator.get()
    assert budget.used == 2


@pytest.mark.asyncio
async def test_budget_reset_lifts_exhaustion(session_factory):
    scrape_client = AsyncMock()
    scrape_client.scrape.return_value = PageContent(url=RETAILER_URL, markdown=RETAILER_MARKDOWN)
    allocator = _allocator(session_factory, total=1)
    extractor = ListingExtractor(
        allocator=allocator,
        scrape_client=scrape_client,
        http_client=_direct_client(),
    )

    assert len(await extractor.extract(RETAILER_URL, "Elkjøp", "new")) == 1
    assert await extractor.extract(RETAILER_URL, "Elkjøp", "new") == []
    assert extractor.budget_exhausted

    await allocator.reset()

    assert not extractor.budget_exhausted
    assert len(await extractor.extract(RETAILER_URL, "Elkjøp", "new")) == 1
    assert scrape_client.scrape.await_count == 2
    budget = await allocator.get()
    assert budget.used == 1


@pytest.mark.asyncio
async def test_clear_budget_exhausted_asks_allocator_again(session_factory):
    allocator = _allocator(session_factory, total=1)
    await allocator.allocate(1)
    extractor = ListingExtractor(
        allocator=allocator,
        scrape_client=AsyncMock(),
        http_client=_direct_client(),
    )

    assert await extractor.extract(RETAILER_URL, "Elkjøp", "new") == []
    assert extractor.budget_exhausted

    extractor.clear_budget_exhausted()

    assert not extractor.budget_exhausted


@pytest.mark.asyncio
async def test_extract_batch_uses_partial_results_after_max_wait(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "batch_max_wait_seconds", 0.05)
    monkeypatch.setattr(settings, "batch_poll_interval_seconds", 0.01)

    scrape_client = AsyncMock()
    scrape_client.batch_scrape.return_value = "job-slow"
    scrape_client.poll_status.return_value = BatchStatus(
        status="scraping",
        completed=1,
        total=2,
        results=[PageContent(url="https://www.elkjop.no/a", markdown=RETAILER_MARKDOWN)],
    )
    extractor = ListingExtractor(
        allocator=_allocator(session_factory),
        scrape_client=scrape_client,
        http_client=_direct_client(),
    )

    listings = await extractor.extract_batch(
        [("https://www.elkjop.no/a", "Elkjøp"), ("https://www.power.no/b", "Power")]
    )

    assert [x.merchant_name for x in listings] == ["Elkjøp"]
    assert listings[0].price == 12999
    assert scrape_client.poll_status.await_count >= 2
