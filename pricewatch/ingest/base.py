"""Shared data types for listing extraction."""

from dataclasses import dataclass, field
from typing import Optional

CONDITION_NEW = "new"
CONDITION_USED = "used"


@dataclass
class ScrapedListing:
    """One raw price observation extracted from a page. Never persisted as-is."""

    merchant_name: str
    price: int
    condition: str
    url: str
    title: str


@dataclass
class PageContent:
    """Text returned for a page by the scrape service or the direct fetch."""

    url: str
    markdown: str = ""
    html: Optional[str] = None
    links: list[str] = field(default_factory=list)
    source: str = "scrape_service"  # scrape_service, direct_fetch

    @property
    def is_empty(self) -> bool:
        return not self.markdown and not self.html


@dataclass
class ExtractOptions:
    """Per-call options for the remote scrape service."""

    wait_ms: Optional[int] = None
    formats: Optional[list[str]] = None
    timeout_seconds: Optional[float] = None
