"""Tests for the price pipeline orchestrator."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricewatch.ai.listing_matcher import ListingMatcher
from pricewatch.ai.llm_service import OracleError
from pricewatch.db.models import MerchantListing, MerchantUrl, Product, ProductVariant
from pricewatch.ingest.base import ScrapedListing
from pricewatch.worker.pipeline import CatalogUnavailableError, PricePipeline

NOW = datetime(2024, 5, 1, 12, 0, 0)


async def _seed_product(session_factory, last_scraped_at=None, category="headphones"):
    async with session_factory() as db:
        product = Product(
            name="AirPods Pro",
            category=category,
            priority_score=50,
            scrape_frequency_hours=24,
            last_scraped_at=last_scraped_at,
        )
        product.variants = [ProductVariant(id=1, model="AirPods Pro 2")]
        db.add(product)
        await db.commit()
        return product.id


def _extractor(marketplace=None, retailer=None, exhausted=False):
    extractor = Mock()
    extractor.budget_exhausted = exhausted
    extractor.extract_marketplace = AsyncMock(return_value=marketplace or [])
    extractor.extract = AsyncMock(return_value=retailer or [])
    extractor.extract_batch = AsyncMock(return_value=retailer or [])
    return extractor


def _matcher(response=None, error=None):
    llm = AsyncMock()
    if error is not None:
        llm.call_llm_structured.side_effect = error
    else:
        llm.call_llm_structured.return_value = response
    return ListingMatcher(llm=llm)


def _pipeline(session_factory, extractor, matcher, **kwargs):
    return PricePipeline(
        session_factory=session_factory,
        extractor=extractor,
        matcher=matcher,
        now=lambda: NOW,
        **kwargs,
    )


async def _listings(session_factory, variant_id=1):
    async with session_factory() as db:
        result = await db.execute(
            select(MerchantListing).where(MerchantListing.variant_id == variant_id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_airpods_pass_updates_variant(session_factory, airpods_listings, airpods_oracle_response):
    product_id = await _seed_product(session_factory)
    pipeline = _pipeline(
        session_factory,
        _extractor(marketplace=airpods_listings),
        _matcher(airpods_oracle_response),
    )

    summary = await pipeline.run(force=True)

    assert summary.products_processed == 1
    assert summary.variants_updated == 1
    assert summary.listings_scraped == 3
    assert summary.results[0]["price_used"] == 1500

    async with session_factory() as db:
        variant = await db.get(ProductVariant, 1)
        product = await db.get(Product, product_id)

    assert variant.price_used == 1500
    assert variant.price_new is None
    tiers = variant.price_data["used"]["tiers"]
    assert set(tiers) == {"excellent", "good", "poor"}
    assert all(t["count"] == 1 for t in tiers.values())
    assert variant.price_data["new"] is None
    assert variant.price_data["market_insights"]["price_trend"] == "stable"
    assert product.last_scraped_at == NOW

    rows = await _listings(session_factory)
    assert sorted(r.price_tier for r in rows) == ["excellent", "good", "poor"]
    assert len({r.listing_group_id for r in rows}) == 1


@pytest.mark.asyncio
async def test_new_pass_replaces_previous_listing_group(
    session_factory, airpods_listings, airpods_oracle_response
):
    await _seed_product(session_factory)
    async with session_factory() as db:
        db.add(
            MerchantListing(
                variant_id=1,
                merchant_name="Finn.no",
                price=999,
                condition="used",
                confidence=0.9,
                price_tier="good",
                listing_group_id="previous-group",
            )
        )
        await db.commit()

    pipeline = _pipeline(
        session_factory,
        _extractor(marketplace=airpods_listings),
        _matcher(airpods_oracle_response),
    )

    await pipeline.run(force=True)
    first_group = {r.listing_group_id for r in await _listings(session_factory)}
    await pipeline.run(force=True)
    rows = await _listings(session_factory)

    assert len(rows) == 3
    group_ids = {r.listing_group_id for r in rows}
    assert len(group_ids) == 1
    assert "previous-group" not in group_ids
    assert group_ids != first_group


@pytest.mark.asyncio
async def test_new_and_used_prices(session_factory, airpods_listings, airpods_oracle_response):
    await _seed_product(session_factory)
    retailer = [
        ScrapedListing("Elkjøp", 2990, "new", "https://www.elkjop.no/airpods", "AirPods Pro 2 USB-C"),
        ScrapedListing("Power", 2790, "new", "https://www.power.no/airpods", "AirPods Pro 2 USB-C"),
    ]
    async with session_factory() as db:
        db.add_all(
            [
                MerchantUrl(category="headphones", merchant_name="Elkjøp", url="https://www.elkjop.no/a"),
                MerchantUrl(category="headphones", merchant_name="Power", url="https://www.power.no/b"),
            ]
        )
        await db.commit()

    response = airpods_oracle_response
    response["matched_listings"][0]["listings"].extend(
        [
            {"listing_index": 3, "confidence": 0.95, "condition_quality": "excellent", "price": 2990},
            {"listing_index": 4, "confidence": 0.95, "condition_quality": "excellent", "price": 2790},
        ]
    )
    extractor = _extractor(marketplace=airpods_listings)

    async def batch(sources, condition="new", options=None, max_concurrency=None, on_admit=None):
        for url, _ in sources:
            on_admit(url)
        return retailer

    extractor.extract_batch = AsyncMock(side_effect=batch)
    pipeline = _pipeline(session_factory, extractor, _matcher(response), use_batch_scrape=True)

    await pipeline.run(force=True)

    async with session_factory() as db:
        variant = await db.get(ProductVariant, 1)
        urls = (await db.execute(select(MerchantUrl))).scalars().all()

    assert variant.price_new == 2890
    assert variant.price_used == 1500
    assert variant.price_data["new"]["merchants"] == ["Elkjøp", "Power"]
    assert variant.price_data["used"]["total_listings"] == 3
    assert all(u.last_scraped_at == NOW for u in urls)
    sources = extractor.extract_batch.await_args.args[0]
    assert [name for _, name in sources] == ["Elkjøp", "Power"]


@pytest.mark.asyncio
async def test_product_not_due_is_skipped(session_factory):
    await _seed_product(session_factory, last_scraped_at=NOW - timedelta(hours=1))
    extractor = _extractor()
    pipeline = _pipeline(session_factory, extractor, _matcher({}))

    summary = await pipeline.run()

    assert summary.products_skipped == 1
    assert summary.products[0].reason == "not_due"
    extractor.extract_marketplace.assert_not_called()


@pytest.mark.asyncio
async def test_match_failure_still_touches_product(session_factory, airpods_listings):
    product_id = await _seed_product(session_factory)
    pipeline = _pipeline(
        session_factory,
        _extractor(marketplace=airpods_listings),
        _matcher(error=OracleError("timeout")),
    )

    summary = await pipeline.run(force=True)

    assert summary.variants_updated == 0
    assert summary.products[0].reason == "match_failed"
    assert await _listings(session_factory) == []
    async with session_factory() as db:
        product = await db.get(Product, product_id)
    assert product.last_scraped_at == NOW


@pytest.mark.asyncio
async def test_exhausted_budget_skips_without_touching(session_factory):
    product_id = await _seed_product(session_factory)
    extractor = _extractor(exhausted=True)
    pipeline = _pipeline(session_factory, extractor, _matcher({}))

    summary = await pipeline.run(force=True)

    assert summary.products_skipped == 1
    assert summary.products[0].reason == "budget_exhausted"
    extractor.extract_marketplace.assert_not_called()
    async with session_factory() as db:
        product = await db.get(Product, product_id)
    assert product.last_scraped_at is None


@pytest.mark.asyncio
async def test_failing_extraction_step_does_not_fail_product(session_factory):
    await _seed_product(session_factory)
    extractor = _extractor()
    extractor.extract_marketplace = AsyncMock(side_effect=RuntimeError("boom"))
    pipeline = _pipeline(session_factory, extractor, _matcher({}))

    summary = await pipeline.run(force=True)

    assert summary.products_failed == 0
    assert summary.products[0].reason == "no_listings"


@pytest.mark.asyncio
async def test_unreadable_catalog_raises(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    pipeline = _pipeline(factory, _extractor(), _matcher({}))

    with pytest.raises(CatalogUnavailableError):
        await pipeline.run()

    await engine.dispose()


async def _slow_extraction(*args, **kwargs):
    await asyncio.sleep(5)
    return []


@pytest.mark.asyncio
async def test_timed_out_step_yields_no_listings(session_factory):
    await _seed_product(session_factory)
    matcher = _matcher({})
    extractor = _extractor()
    extractor.extract_marketplace = AsyncMock(side_effect=_slow_extraction)
    pipeline = _pipeline(session_factory, extractor, matcher, step_timeout=0.05)

    summary = await pipeline.run(force=True)

    assert summary.products_failed == 0
    assert summary.products[0].reason == "no_listings"
    assert summary.listings_scraped == 0
    matcher.llm.call_llm_structured.assert_not_called()


@pytest.mark.asyncio
async def test_run_timeout_fails_unfinished_products(session_factory):
    product_id = await _seed_product(session_factory)
    extractor = _extractor()
    extractor.extract_marketplace = AsyncMock(side_effect=_slow_extraction)
    pipeline = _pipeline(
        session_factory, extractor, _matcher({}), step_timeout=30, run_timeout=0.05
    )

    summary = await pipeline.run(force=True)

    assert summary.products_failed == 1
    assert summary.products[0].status == "failed"
    assert summary.products[0].reason == "run_timeout"
    async with session_factory() as db:
        product = await db.get(Product, product_id)
    assert product.last_scraped_at is None


@pytest.mark.asyncio
async def test_only_admitted_merchant_urls_are_touched(session_factory):
    await _seed_product(session_factory)
    async with session_factory() as db:
        db.add_all(
            [
                MerchantUrl(category="headphones", merchant_name="Elkjøp", url="https://www.elkjop.no/a"),
                MerchantUrl(category="headphones", merchant_name="Power", url="https://www.power.no/b"),
                MerchantUrl(category="headphones", merchant_name="Komplett", url="https://www.komplett.no/c"),
            ]
        )
        await db.commit()

    async def extract(url, merchant_name, condition="new", options=None, on_admit=None):
        if merchant_name == "Elkjøp":
            on_admit(url)
            return []
        if merchant_name == "Komplett":
            on_admit(url)
            await asyncio.sleep(5)
        return []

    extractor = _extractor()
    extractor.extract = AsyncMock(side_effect=extract)
    pipeline = _pipeline(
        session_factory, extractor, _matcher({}), step_timeout=0.05, use_batch_scrape=False
    )

    await pipeline.run(force=True)

    async with session_factory() as db:
        urls = {
            u.merchant_name: u.last_scraped_at
            for u in (await db.execute(select(MerchantUrl))).scalars().all()
        }
    assert urls == {"Elkjøp": NOW, "Power": None, "Komplett": None}
