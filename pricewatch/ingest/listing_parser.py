"""Heuristic price/title extraction from page text.

Everything in this module is a pure function of its inputs: no I/O, no budget,
no transport. The extractor supplies the text.
"""

import logging
import re
from typing import Iterable, Optional
from urllib.parse import urljoin

from selectolax.parser import HTMLParser

from pricewatch.config import settings
from pricewatch.ingest.base import ScrapedListing

logger = logging.getLogger(__name__)

# Digit groups separated by space, NBSP, narrow NBSP or period: "12 999", "12.999", "1299"
_AMOUNT = r"\d{1,3}(?:[ .\u00a0\u202f]\d{3})+|\d+"
# Optional øre part: "12 999,00" or "12 999,-"
_DECIMALS = r"(?:,(?:\d{2}|-))?"

PRICE_PATTERN = re.compile(
    rf"(?P<before>{_AMOUNT}){_DECIMALS}\s*(?:kr\b|NOK\b|,-)"
    rf"|(?:\bkr\.?|\bNOK)\s*(?P<after>{_AMOUNT}){_DECIMALS}",
    re.IGNORECASE,
)

# Lines that mention the currency at all are never used as titles
CURRENCY_MARKER = re.compile(r"\bkr\b|\bNOK\b|\d,-", re.IGNORECASE)

MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
MARKDOWN_LINK = re.compile(r"\[([^\]]*)\]\([^)]*\)")
MARKDOWN_DECORATION = re.compile(r"^[#>*\-+\s|]+|[*_`|]+$")

# Per-listing links on the classifieds marketplace
LISTING_LINK_PATTERNS = [
    re.compile(r"finn\.no/.*/item/\d+", re.IGNORECASE),
    re.compile(r"finn\.no/.*[?&]finnkode=\d+", re.IGNORECASE),
]


def parse_price(line: str) -> Optional[int]:
    """
    Parse the first Norwegian-currency price on a line.

    Args:
        line: A single line of page text

    Returns:
        Price in whole kroner, or None if the line has no price
    """
    match = PRICE_PATTERN.search(line)
    if not match:
        return None
    raw = match.group("before") or match.group("after")
    digits = re.sub(r"[^\d]", "", raw)
    if not digits:
        return None
    return int(digits)


def is_price_in_range(price: int) -> bool:
    """Reject garbage numbers (years, phone numbers, article ids)."""
    return settings.listing_min_price < price < settings.listing_max_price


def clean_line(line: str) -> str:
    """Strip markdown images, links and decoration from a line."""
    text = MARKDOWN_IMAGE.sub("", line)
    text = MARKDOWN_LINK.sub(r"\1", text)
    text = MARKDOWN_DECORATION.sub("", text.strip())
    return text.strip()


def is_title_candidate(line: str) -> bool:
    """A plausible title is length-bounded and is not itself a price line."""
    if not (settings.listing_title_min_length < len(line) < settings.listing_title_max_length):
        return False
    return not CURRENCY_MARKER.search(line)


def find_title(lines: list[str], index: int, window: Optional[int] = None) -> str:
    """Search neighbouring lines (above first, then below) for a title."""
    window = window if window is not None else settings.listing_title_window
    start = max(0, index - window)
    end = min(len(lines), index + window)
    for j in range(start, end):
        if j == index:
            continue
        candidate = clean_line(lines[j])
        if is_title_candidate(candidate):
            return candidate
    return ""


def is_listing_link(url: str) -> bool:
    """True for marketplace per-listing URLs (item pages)."""
    return any(pattern.search(url) for pattern in LISTING_LINK_PATTERNS)


def select_listing_links(links: Iterable[str]) -> list[str]:
    """Keep per-listing links in document order, dropping duplicates."""
    seen = set()
    selected = []
    for link in links:
        if not link or link in seen or not is_listing_link(link):
            continue
        seen.add(link)
        selected.append(link)
    return selected


def parse_listings(
    text: str,
    merchant_name: str,
    condition: str,
    page_url: str,
    listing_links: Optional[list[str]] = None,
) -> list[ScrapedListing]:
    """
    Extract (price, title) candidates from page text.

    Scans line by line for a price; for every accepted price looks for a
    title in a small window of neighbouring lines. Duplicates are kept.

    Args:
        text: Markdown or plain text of the page
        merchant_name: Merchant to attribute listings to
        condition: "new" for retailers, "used" for the marketplace
        page_url: URL of the page itself (fallback listing URL)
        listing_links: Per-listing URLs in document order, assigned to
            prices in order until exhausted

    Returns:
        Extracted listings; empty when nothing recognizable is found
    """
    if not text:
        return []

    lines = [line.strip() for line in text.splitlines()]
    links = list(listing_links or [])
    listings: list[ScrapedListing] = []

    for i, line in enumerate(lines):
        if not line:
            continue
        price = parse_price(line)
        if price is None or not is_price_in_range(price):
            continue

        title = find_title(lines, i)
        if not title:
            continue

        url = links[len(listings)] if len(listings) < len(links) else page_url
        listings.append(
            ScrapedListing(
                merchant_name=merchant_name,
                price=price,
                condition=condition,
                url=url,
                title=title,
            )
        )

    return listings


def html_to_text(html: str) -> str:
    """Flatten raw markup to newline-separated text for parse_listings."""
    if not html:
        return ""
    tree = HTMLParser(html)
    for node in tree.css("script, style, noscript, svg, head"):
        node.decompose()
    root = tree.body or tree.root
    if root is None:
        return ""
    return root.text(separator="\n", strip=True)


def extract_links(html: str, base_url: str) -> list[str]:
    """Absolute hrefs from raw markup in document order."""
    if not html:
        return []
    tree = HTMLParser(html)
    links = []
    for node in tree.css("a[href]"):
        href = node.attributes.get("href")
        if href and not href.startswith(("#", "javascript:", "mailto:")):
            links.append(urljoin(base_url, href))
    return links
