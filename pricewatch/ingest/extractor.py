"""Listing extraction: budget admission, remote scrape, direct-fetch fallback, parsing."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.ingest.base import (
    CONDITION_NEW,
    CONDITION_USED,
    ExtractOptions,
    PageContent,
    ScrapedListing,
)
from pricewatch.ingest.http_client import (
    DirectFetchError,
    FetchPolicy,
    QuotaExhaustedError,
    RateLimitedError,
    ScrapeServiceError,
    fetch_direct,
)
from pricewatch.ingest.listing_parser import (
    extract_links,
    html_to_text,
    parse_listings,
    select_listing_links,
)
from pricewatch.ingest.scrape_budget import BudgetAllocator, InsufficientBudget, budget_allocator
from pricewatch.ingest.scrape_service import ScrapeServiceClient

logger = logging.getLogger(__name__)


def marketplace_search_url(product_name: str) -> str:
    """Search URL on the classifieds marketplace for a product name."""
    return f"{settings.marketplace_search_url}?{urlencode({'q': product_name})}"


def _fallback_reason(exc: ScrapeServiceError) -> str:
    if isinstance(exc, QuotaExhaustedError):
        return "quota_exhausted"
    if isinstance(exc, RateLimitedError):
        return "rate_limited"
    return "service_error"


class ListingExtractor:
    """
    Fetches pages and extracts listing candidates.

    Every page costs one unit of the daily scrape budget. Once an allocation
    is denied, scraping is treated as unavailable until the day rolls over,
    the budget is reset or the pipeline starts a new run, and no further
    allocation or network call is attempted.
    """

    def __init__(
        self,
        allocator: Optional[BudgetAllocator] = None,
        scrape_client: Optional[ScrapeServiceClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_policy: Optional[FetchPolicy] = None,
    ):
        self.allocator = allocator or budget_allocator
        self.scrape_client = scrape_client or ScrapeServiceClient()
        self._http_client = http_client
        self.fetch_policy = fetch_policy or FetchPolicy(
            max_attempts=settings.direct_fetch_max_attempts,
            timeout=httpx.Timeout(settings.direct_fetch_timeout_seconds, connect=10.0),
        )
        self._exhausted_on: Optional[tuple[date, int]] = None

    @property
    def budget_exhausted(self) -> bool:
        """True once an allocation has been denied since the last budget reset today."""
        return self._exhausted_on == self._budget_epoch()

    def _budget_epoch(self) -> tuple[date, int]:
        return self.allocator.today(), self.allocator.generation

    def clear_budget_exhausted(self):
        """Forget a denied allocation so the next call asks the allocator again."""
        self._exhausted_on = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(follow_redirects=True)
        return self._http_client

    async def _allocate(self) -> bool:
        """Reserve one scrape call. False when the day's budget is gone."""
        if self.budget_exhausted:
            return False
        try:
            await self.allocator.allocate(1)
            return True
        except InsufficientBudget as e:
            self._exhausted_on = self._budget_epoch()
            logger.info(f"Scraping budget exhausted for today ({e.remaining} left), skipping")
            return False

    async def extract(
        self,
        url: str,
        merchant_name: str,
        condition: str = CONDITION_NEW,
        options: Optional[ExtractOptions] = None,
        on_admit: Optional[Callable[[str], None]] = None,
    ) -> list[ScrapedListing]:
        """
        Extract listings from one page.

        Args:
            url: Page to extract from
            merchant_name: Merchant the listings belong to
            condition: "new" (retailer) or "used" (marketplace)
            options: wait/format/timeout overrides for the scrape service
            on_admit: Called with the url once its budget unit is reserved

        Returns:
            Extracted listings; empty if the budget is exhausted or the page
            could not be fetched by either path
        """
        if not await self._allocate():
            return []
        if on_admit:
            on_admit(url)
        return await self._fetch_and_parse(url, merchant_name, condition, options)

    async def extract_marketplace(
        self,
        product_name: str,
        options: Optional[ExtractOptions] = None,
    ) -> list[ScrapedListing]:
        """Extract used listings from the marketplace search page for a product."""
        url = marketplace_search_url(product_name)
        logger.info(f"Scraping {settings.marketplace_name} for: {product_name}")
        return await self.extract(url, settings.marketplace_name, CONDITION_USED, options)

    async def fetch_page(self, url: str, options: Optional[ExtractOptions] = None) -> Optional[PageContent]:
        """
        Fetch a page via the scrape service, falling back to a direct GET.

        Does not touch the budget; callers allocate first.
        """
        options = options or ExtractOptions()
        started = time.monotonic()
        try:
            page = await self.scrape_client.scrape(
                url,
                formats=options.formats or settings.scrape_formats,
                timeout_seconds=options.timeout_seconds or settings.scrape_timeout_seconds,
                wait_ms=options.wait_ms if options.wait_ms is not None else settings.scrape_wait_ms,
            )
            metrics.record_scrape("scrape_service", True, time.monotonic() - started)
            return page
        except ScrapeServiceError as e:
            metrics.record_scrape("scrape_service", False, time.monotonic() - started)
            metrics.record_fallback(_fallback_reason(e))
            logger.warning(f"Scrape service failed for {url} ({e}), falling back to direct fetch")

        started = time.monotonic()
        try:
            client = await self._get_http_client()
            html = await fetch_direct(client, url, self.fetch_policy)
        except DirectFetchError as e:
            metrics.record_scrape("direct_fetch", False, time.monotonic() - started)
            logger.error(f"Direct fetch failed for {url}: {e}")
            return None

        metrics.record_scrape("direct_fetch", True, time.monotonic() - started)
        return PageContent(
            url=url,
            markdown="",
            html=html,
            links=extract_links(html, url),
            source="direct_fetch",
        )

    def parse_page(
        self,
        page: PageContent,
        merchant_name: str,
        condition: str,
        page_url: Optional[str] = None,
    ) -> list[ScrapedListing]:
        """Run the pure parser over a fetched page."""
        text = page.markdown or html_to_text(page.html or "")
        links = select_listing_links(page.links) if condition == CONDITION_USED else []
        listings = parse_listings(
            text,
            merchant_name=merchant_name,
            condition=condition,
            page_url=page_url or page.url,
            listing_links=links,
        )
        metrics.record_listings(condition, len(listings))
        logger.info(f"Found {len(listings)} listings on {merchant_name} ({page.source})")
        return listings

    async def _fetch_and_parse(
        self,
        url: str,
        merchant_name: str,
        condition: str,
        options: Optional[ExtractOptions],
    ) -> list[ScrapedListing]:
        page = await self.fetch_page(url, options)
        if page is None or page.is_empty:
            logger.info(f"No content from {merchant_name} ({url})")
            return []
        return self.parse_page(page, merchant_name, condition, page_url=url)

    async def extract_batch(
        self,
        sources: list[tuple[str, str]],
        condition: str = CONDITION_NEW,
        options: Optional[ExtractOptions] = None,
        max_concurrency: Optional[int] = None,
        on_admit: Optional[Callable[[str], None]] = None,
    ) -> list[ScrapedListing]:
        """
        Extract listings from several pages with one batch scrape job.

        Each URL costs one budget unit; URLs beyond the budget are dropped.
        The job is polled at a fixed interval up to a maximum wait, after
        which whatever results have arrived are used.

        Args:
            sources: (url, merchant_name) pairs
            condition: Condition for all listings
            options: wait/format overrides
            max_concurrency: Concurrency for the per-URL fallback
            on_admit: Called with each url whose budget unit is reserved

        Returns:
            Listings from every page that produced results
        """
        options = options or ExtractOptions()
        admitted: list[tuple[str, str]] = []
        for url, merchant_name in sources:
            if not await self._allocate():
                break
            admitted.append((url, merchant_name))
            if on_admit:
                on_admit(url)

        if not admitted:
            return []

        try:
            job_id = await self.scrape_client.batch_scrape(
                [url for url, _ in admitted],
                formats=options.formats or settings.scrape_formats,
                wait_ms=options.wait_ms,
            )
        except ScrapeServiceError as e:
            metrics.record_fallback(_fallback_reason(e))
            logger.warning(f"Batch scrape submit failed ({e}), extracting {len(admitted)} urls one by one")
            return await self._extract_each(admitted, condition, options, max_concurrency)

        pages = await self._poll_batch(job_id)
        by_url = {page.url.rstrip("/"): page for page in pages}

        listings: list[ScrapedListing] = []
        for url, merchant_name in admitted:
            page = by_url.get(url.rstrip("/"))
            if page is None or page.is_empty:
                logger.info(f"No batch result for {merchant_name} ({url})")
                continue
            listings.extend(self.parse_page(page, merchant_name, condition, page_url=url))
        return listings

    async def _extract_each(
        self,
        sources: list[tuple[str, str]],
        condition: str,
        options: Optional[ExtractOptions],
        max_concurrency: Optional[int],
    ) -> list[ScrapedListing]:
        """Per-URL extraction for already-admitted URLs."""
        semaphore = asyncio.Semaphore(max_concurrency or settings.pipeline_max_concurrent_extractions)

        async def run(url: str, merchant_name: str) -> list[ScrapedListing]:
            async with semaphore:
                return await self._fetch_and_parse(url, merchant_name, condition, options)

        results = await asyncio.gather(*(run(url, name) for url, name in sources))
        return [listing for batch in results for listing in batch]

    async def _poll_batch(self, job_id: str) -> list[PageContent]:
        """Poll a batch job until done or the maximum wait elapses."""
        deadline = time.monotonic() + settings.batch_max_wait_seconds
        latest: list[PageContent] = []

        while True:
            try:
                status = await self.scrape_client.poll_status(job_id)
            except RateLimitedError:
                logger.warning(f"Rate limited while polling batch job {job_id}")
            except ScrapeServiceError as e:
                logger.error(f"Polling batch job {job_id} failed: {e}")
                return latest
            else:
                latest = status.results
                logger.debug(
                    f"Batch job {job_id}: {status.status} ({status.completed}/{status.total})"
                )
                if status.is_done:
                    return latest

            if time.monotonic() + settings.batch_poll_interval_seconds > deadline:
                logger.warning(
                    f"Batch job {job_id} not finished after {settings.batch_max_wait_seconds}s, "
                    f"using {len(latest)} partial results"
                )
                return latest
            await asyncio.sleep(settings.batch_poll_interval_seconds)

    async def close(self):
        """Close HTTP clients."""
        await self.scrape_client.close()
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
