"""Direct HTTP fetching with status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)

# Upper bound for honouring Retry-After on the direct path
MAX_RETRY_AFTER_SECONDS = 10.0


class ScrapeServiceError(RuntimeError):
    """Raised when the remote scrape service fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QuotaExhaustedError(ScrapeServiceError):
    """Raised when the scrape service reports the account is out of credits (402)."""

    def __init__(self, message: str = "Scrape service quota exhausted"):
        super().__init__(message, status_code=402)


class RateLimitedError(ScrapeServiceError):
    """Raised when rate limited (429)."""

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Rate limited", status_code=429)
        self.retry_after = retry_after


class DirectFetchError(RuntimeError):
    """Raised when the direct-fetch fallback fails."""
    pass


class BlockedError(DirectFetchError):
    """Raised when access is blocked (403, 401)."""
    pass


class PermanentURLError(DirectFetchError):
    """Raised when URL is permanently invalid (404)."""
    pass


@dataclass(frozen=True)
class FetchPolicy:
    """Retry and timeout policy for direct fetches."""

    max_attempts: int = 2
    timeout: httpx.Timeout = None  # Will be set to default if None

    def __post_init__(self):
        if self.timeout is None:
            object.__setattr__(
                self,
                'timeout',
                httpx.Timeout(connect=10.0, read=20.0, write=10.0, pool=10.0)
            )


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Accept": "text/html, application/xhtml+xml, application/xml; q=0.9, */*; q=0.8",
        "Accept-Language": "nb-NO, nb; q=0.9, no; q=0.8, en; q=0.6",
        "Connection": "keep-alive",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


async def fetch_direct(
    client: httpx.AsyncClient,
    url: str,
    policy: Optional[FetchPolicy] = None,
) -> str:
    """
    Fetch a page with a plain unauthenticated GET.

    Args:
        client: httpx AsyncClient instance
        url: URL to fetch
        policy: Retry/timeout policy

    Returns:
        Response body text

    Raises:
        BlockedError: If access is blocked (403, 401)
        PermanentURLError: If URL is permanently invalid (404)
        DirectFetchError: If fetch fails after retries
    """
    policy = policy or FetchPolicy()
    last_exc: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            resp = await client.get(
                url,
                headers=default_headers(),
                timeout=policy.timeout,
                follow_redirects=True,
            )
        except RETRYABLE_EXC as e:
            last_exc = e
            if attempt < policy.max_attempts:
                sleep_s = (2 ** attempt) + random.random()
                logger.warning(
                    f"Direct fetch transport error ({type(e).__name__}) for {url}, "
                    f"retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue
            raise DirectFetchError(
                f"Transport error after {policy.max_attempts} attempts: {url}"
            ) from e
        except httpx.HTTPError as e:
            raise DirectFetchError(f"HTTP error for {url}: {e}") from e

        sc = resp.status_code

        if 200 <= sc < 300:
            return resp.text

        if sc == 404:
            raise PermanentURLError(f"404 for {url}")

        if sc in (401, 403):
            raise BlockedError(f"{sc} for {url}")

        if sc == 429:
            retry_seconds = parse_retry_after(resp.headers.get("Retry-After"))
            sleep_s = min(
                float(retry_seconds) if retry_seconds is not None else (2 ** attempt) + random.random(),
                MAX_RETRY_AFTER_SECONDS,
            )
        else:
            sleep_s = (2 ** attempt) + random.random()

        last_exc = DirectFetchError(f"status {sc} for {url}")
        if attempt < policy.max_attempts:
            logger.warning(
                f"Direct fetch got {sc} for {url}, retrying in {sleep_s:.1f}s "
                f"(attempt {attempt}/{policy.max_attempts})"
            )
            await asyncio.sleep(sleep_s)
            continue

    raise DirectFetchError(
        f"Direct fetch failed after {policy.max_attempts} attempts: {url}"
    ) from last_exc
