"""Client for the remote scrape service (Firecrawl-compatible v1 API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from pricewatch.config import settings
from pricewatch.ingest.base import PageContent
from pricewatch.ingest.http_client import (
    QuotaExhaustedError,
    RateLimitedError,
    ScrapeServiceError,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

BATCH_DONE_STATUSES = {"completed", "failed", "cancelled"}


@dataclass
class BatchStatus:
    """Status snapshot of a batch scrape job."""

    status: str
    completed: int = 0
    total: int = 0
    results: list[PageContent] = field(default_factory=list)

    @property
    def is_done(self) -> bool:
        return self.status in BATCH_DONE_STATUSES


def _page_from_payload(data: dict[str, Any], fallback_url: str = "") -> PageContent:
    """Build PageContent from a scrape service document."""
    metadata = data.get("metadata") or {}
    url = metadata.get("sourceURL") or metadata.get("url") or data.get("url") or fallback_url
    links = [link for link in (data.get("links") or []) if isinstance(link, str)]
    return PageContent(
        url=url,
        markdown=data.get("markdown") or "",
        html=data.get("html") or data.get("rawHtml"),
        links=links,
        source="scrape_service",
    )


class ScrapeServiceClient:
    """
    Thin async client for the remote scrape service.

    Surfaces distinct exceptions so callers can pick a fallback:
    - QuotaExhaustedError: out of credits (402)
    - RateLimitedError: too many requests (429)
    - ScrapeServiceError: anything else, including transport failures
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = (api_url or settings.scrape_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.scrape_api_key
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.scrape_timeout_seconds + 15.0, connect=10.0),
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _ensure_configured(self):
        if not self.api_key:
            raise ScrapeServiceError("Scrape service API key not configured")

    @staticmethod
    def _raise_for_status(resp: httpx.Response, url: str):
        sc = resp.status_code
        if 200 <= sc < 300:
            return
        if sc == 402:
            raise QuotaExhaustedError(f"Scrape service quota exhausted while requesting {url}")
        if sc == 429:
            raise RateLimitedError(retry_after=parse_retry_after(resp.headers.get("Retry-After")))
        raise ScrapeServiceError(
            f"Scrape service returned {sc} for {url}: {resp.text[:200]}",
            status_code=sc,
        )

    async def _request(self, method: str, path: str, target: str, **kwargs) -> dict[str, Any]:
        self._ensure_configured()
        client = await self._get_client()
        try:
            resp = await client.request(
                method,
                f"{self.api_url}{path}",
                headers=self._headers(),
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise ScrapeServiceError(
                f"Scrape service transport error for {target}: {type(e).__name__}"
            ) from e

        self._raise_for_status(resp, target)

        try:
            body = resp.json()
        except ValueError as e:
            raise ScrapeServiceError(f"Scrape service returned invalid JSON for {target}") from e

        if body.get("success") is False:
            raise ScrapeServiceError(
                f"Scrape service reported failure for {target}: {body.get('error', 'unknown error')}"
            )
        return body

    async def scrape(
        self,
        url: str,
        formats: Optional[list[str]] = None,
        timeout_seconds: Optional[float] = None,
        wait_ms: Optional[int] = None,
    ) -> PageContent:
        """
        Scrape a single page.

        Args:
            url: Page to scrape
            formats: Output formats (markdown, html, links)
            timeout_seconds: Service-side timeout
            wait_ms: Settle delay before capture, for client-rendered pages

        Returns:
            PageContent with markdown, optional html and outbound links
        """
        timeout_seconds = timeout_seconds or settings.scrape_timeout_seconds
        payload: dict[str, Any] = {
            "url": url,
            "formats": formats or settings.scrape_formats,
            "onlyMainContent": True,
            "timeout": int(timeout_seconds * 1000),
        }
        if wait_ms:
            payload["waitFor"] = wait_ms

        body = await self._request(
            "POST",
            "/scrape",
            url,
            json=payload,
            timeout=timeout_seconds + 15.0,
        )
        return _page_from_payload(body.get("data") or {}, fallback_url=url)

    async def batch_scrape(
        self,
        urls: list[str],
        formats: Optional[list[str]] = None,
        wait_ms: Optional[int] = None,
    ) -> str:
        """Submit a batch scrape job and return its id."""
        payload: dict[str, Any] = {
            "urls": urls,
            "formats": formats or settings.scrape_formats,
            "onlyMainContent": True,
        }
        if wait_ms:
            payload["waitFor"] = wait_ms

        body = await self._request("POST", "/batch/scrape", f"batch of {len(urls)} urls", json=payload)
        job_id = body.get("id")
        if not job_id:
            raise ScrapeServiceError("Scrape service did not return a batch job id")
        logger.info(f"Submitted batch scrape job {job_id} for {len(urls)} urls")
        return job_id

    async def poll_status(self, job_id: str) -> BatchStatus:
        """Get status and results so far for a batch scrape job."""
        body = await self._request("GET", f"/batch/scrape/{job_id}", f"batch job {job_id}")
        results = [
            _page_from_payload(doc)
            for doc in (body.get("data") or [])
            if isinstance(doc, dict)
        ]
        return BatchStatus(
            status=body.get("status", "unknown"),
            completed=int(body.get("completed") or 0),
            total=int(body.get("total") or 0),
            results=results,
        )

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
