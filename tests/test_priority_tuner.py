"""Tests for priority tuning and listing revalidation."""

import pytest
from sqlalchemy import select

from pricewatch.db.models import MerchantListing, Product, ProductVariant
from pricewatch.worker.listing_validation import is_price_valid, revalidate_listings
from pricewatch.worker.priority_tuner import tune, tune_priorities


def test_low_confidence_raises_priority():
    assert tune(50, 24, 0.6) == (60, 12)
    assert tune(95, 1.5, 0.5) == (100, 1)


def test_high_confidence_lowers_priority():
    assert tune(50, 24, 0.97) == (40, 36)
    assert tune(15, 150, 0.99) == (10, 168)


def test_medium_confidence_is_unchanged():
    assert tune(50, 24, 0.8) == (50, 24)


def test_price_bounds():
    assert is_price_valid("smartphone", 12999)
    assert is_price_valid("Smartphone", 3000)
    assert not is_price_valid("smartphone", 1500)
    assert not is_price_valid("smartphone", 45000)
    assert is_price_valid("headphones", 150)
    assert is_price_valid(None, 150)


def _listing(variant_id, price, confidence, is_valid=True):
    return MerchantListing(
        variant_id=variant_id,
        merchant_name="Finn.no",
        price=price,
        condition="used",
        confidence=confidence,
        price_tier="good",
        listing_group_id="g1",
        is_valid=is_valid,
    )


async def _seed(session_factory, confidences, category="smartphone", prices=None):
    prices = prices or [9000] * len(confidences)
    async with session_factory() as db:
        product = Product(name="iPhone 15", category=category, priority_score=50, scrape_frequency_hours=24)
        variant = ProductVariant(storage_gb=128)
        product.variants = [variant]
        db.add(product)
        await db.flush()
        db.add_all(_listing(variant.id, p, c) for p, c in zip(prices, confidences))
        await db.commit()
        return product.id


@pytest.mark.asyncio
async def test_tune_priorities_updates_products(session_factory):
    product_id = await _seed(session_factory, [0.5, 0.7])

    async with session_factory() as db:
        updates = await tune_priorities(db)

    assert updates == [
        {
            "product_id": product_id,
            "avg_confidence": 0.6,
            "priority_score": 60,
            "scrape_frequency_hours": 12,
        }
    ]
    async with session_factory() as db:
        product = await db.get(Product, product_id)
    assert (product.priority_score, product.scrape_frequency_hours) == (60, 12)


@pytest.mark.asyncio
async def test_tune_priorities_skips_unchanged(session_factory):
    await _seed(session_factory, [0.8, 0.9])

    async with session_factory() as db:
        assert await tune_priorities(db) == []


@pytest.mark.asyncio
async def test_revalidate_listings(session_factory):
    await _seed(session_factory, [0.9, 0.9, 0.9], prices=[9000, 1200, 50000])

    async with session_factory() as db:
        counts = await revalidate_listings(db)

    assert counts == {"checked": 3, "invalidated": 2, "revalidated": 0}
    async with session_factory() as db:
        rows = (await db.execute(select(MerchantListing).order_by(MerchantListing.price))).scalars().all()
    assert [r.is_valid for r in rows] == [False, True, False]
