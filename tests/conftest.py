"""Shared fixtures."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricewatch.db.models import Base
from pricewatch.ingest.base import ScrapedListing


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


FINN_ITEM_URL = "https://www.finn.no/bap/forsale/item/"

MARKET_INSIGHTS = {
    "summary": "Stabilt bruktmarked",
    "price_trend": "stable",
    "best_value_tier": "good",
    "recommendation": "Kjøp i god stand for best verdi",
}


@pytest.fixture
def airpods_listings():
    """Three marketplace listings for AirPods Pro in different condition."""
    return [
        ScrapedListing("Finn.no", 1800, "used", f"{FINN_ITEM_URL}1", "AirPods Pro som ny"),
        ScrapedListing("Finn.no", 1500, "used", f"{FINN_ITEM_URL}2", "AirPods Pro god stand"),
        ScrapedListing(
            "Finn.no", 600, "used", f"{FINN_ITEM_URL}3", "AirPods Pro defekt høyre øretelefon"
        ),
    ]


@pytest.fixture
def airpods_oracle_response():
    """Oracle output assigning the AirPods listings to variant 1."""
    return {
        "matched_listings": [
            {
                "variant_id": 1,
                "listings": [
                    {"listing_index": 0, "confidence": 0.9, "condition_quality": "excellent", "price": 1800},
                    {"listing_index": 1, "confidence": 0.85, "condition_quality": "good", "price": 1500},
                    {"listing_index": 2, "confidence": 0.8, "condition_quality": "poor", "price": 600},
                ],
                "price_range": {"min": 600, "max": 1800, "median": 1500},
                "quality_tiers": {
                    "excellent": {"min": 1800, "max": 1800, "count": 1},
                    "good": {"min": 1500, "max": 1500, "count": 1},
                    "poor": {"min": 600, "max": 600, "count": 1},
                },
            }
        ],
        "unmatched_listings": [],
        "market_insights": dict(MARKET_INSIGHTS),
    }
