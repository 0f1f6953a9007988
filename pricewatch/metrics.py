"""Prometheus metrics for the price pipeline."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pricewatch", "Price pipeline application info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Scrape metrics
scrape_requests_total = Counter(
    "scrape_requests_total",
    "Total number of page fetches",
    ["source", "status"],
)

scrape_fallbacks_total = Counter(
    "scrape_fallbacks_total",
    "Scrape service failures that fell back to a direct fetch",
    ["reason"],
)

listings_extracted_total = Counter(
    "listings_extracted_total",
    "Total number of listings extracted from pages",
    ["condition"],
)

scrape_duration_seconds = Histogram(
    "scrape_duration_seconds",
    "Time spent fetching a page",
    ["source"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Budget metrics
budget_allocations_total = Counter(
    "scrape_budget_allocations_total",
    "Scrape budget allocation attempts",
    ["status"],
)

budget_remaining = Gauge(
    "scrape_budget_remaining",
    "Scrape calls remaining today",
)

budget_used = Gauge(
    "scrape_budget_used",
    "Scrape calls used today",
)

# Matcher metrics
match_requests_total = Counter(
    "match_requests_total",
    "Listing matcher calls",
    ["status"],
)

match_listings_total = Counter(
    "match_listings_total",
    "Listings seen by the matcher",
    ["outcome"],
)

# Pipeline metrics
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total number of pipeline runs",
    ["trigger", "status"],
)

pipeline_last_run_timestamp = Gauge(
    "pipeline_last_run_timestamp",
    "Timestamp of last pipeline run",
)

pipeline_products_total = Counter(
    "pipeline_products_total",
    "Products handled by the pipeline",
    ["status"],
)

pipeline_variants_updated_total = Counter(
    "pipeline_variants_updated_total",
    "Variants whose listings and prices were replaced",
)

pipeline_run_duration_seconds = Histogram(
    "pipeline_run_duration_seconds",
    "Wall-clock duration of pipeline runs",
    buckets=[10, 30, 60, 120, 300, 600, 1200, 3600],
)

# AI job metrics
ai_jobs_total = Counter(
    "ai_jobs_total",
    "AI jobs processed",
    ["kind", "status"],
)

ai_cache_hits_total = Counter(
    "ai_cache_hits_total",
    "AI jobs served from cache",
    ["kind"],
)

llm_calls_total = Counter(
    "llm_calls_total",
    "Calls to the LLM provider",
    ["function", "status"],
)


def record_scrape(source: str, success: bool, duration: float):
    """Record a page fetch."""
    status = "success" if success else "error"
    scrape_requests_total.labels(source=source, status=status).inc()
    scrape_duration_seconds.labels(source=source).observe(duration)


def record_fallback(reason: str):
    """Record a fallback from the scrape service to a direct fetch."""
    scrape_fallbacks_total.labels(reason=reason).inc()


def record_listings(condition: str, count: int):
    """Record extracted listings."""
    if count:
        listings_extracted_total.labels(condition=condition).inc(count)


def record_budget_allocation(success: bool):
    """Record a budget allocation attempt."""
    status = "granted" if success else "denied"
    budget_allocations_total.labels(status=status).inc()


def update_budget(used: int, remaining: int):
    """Update budget gauges."""
    budget_used.set(used)
    budget_remaining.set(remaining)


def record_match(status: str, matched: int = 0, unmatched: int = 0):
    """Record a matcher call and its listing outcomes."""
    match_requests_total.labels(status=status).inc()
    if matched:
        match_listings_total.labels(outcome="matched").inc(matched)
    if unmatched:
        match_listings_total.labels(outcome="unmatched").inc(unmatched)


def record_pipeline_run(trigger: str, success: bool, duration: float):
    """Record a pipeline run."""
    status = "success" if success else "error"
    pipeline_runs_total.labels(trigger=trigger, status=status).inc()
    pipeline_last_run_timestamp.set(time.time())
    pipeline_run_duration_seconds.observe(duration)


def record_product(status: str):
    """Record a product outcome (processed, skipped, failed)."""
    pipeline_products_total.labels(status=status).inc()


def record_variant_updated():
    pipeline_variants_updated_total.inc()


def record_ai_job(kind: str, status: str, cached: bool = False):
    """Record an AI job outcome."""
    ai_jobs_total.labels(kind=kind, status=status).inc()
    if cached:
        ai_cache_hits_total.labels(kind=kind).inc()


def record_llm_call(function: str, success: bool):
    """Record an LLM call."""
    status = "success" if success else "error"
    llm_calls_total.labels(function=function, status=status).inc()
