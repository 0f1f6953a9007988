"""Adjust product scrape priority and frequency from listing confidence."""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import MerchantListing, Product, ProductVariant

logger = logging.getLogger(__name__)

MAX_PRIORITY = 100.0
MIN_PRIORITY = 10.0
PRIORITY_STEP = 10.0
MIN_FREQUENCY_HOURS = 1.0
MAX_FREQUENCY_HOURS = 168.0


@dataclass
class PriorityUpdate:
    product_id: int
    avg_confidence: float
    priority_score: float
    scrape_frequency_hours: float


def tune(
    priority: float,
    frequency_hours: float,
    avg_confidence: float,
    low: Optional[float] = None,
    high: Optional[float] = None,
) -> tuple[float, float]:
    """
    New (priority, frequency) for a product given its mean listing confidence.

    Poorly matched products are scraped sooner and more often; well matched
    ones less often.
    """
    low = low if low is not None else settings.priority_low_confidence
    high = high if high is not None else settings.priority_high_confidence

    if avg_confidence < low:
        return (
            min(MAX_PRIORITY, priority + PRIORITY_STEP),
            max(MIN_FREQUENCY_HOURS, frequency_hours / 2),
        )
    if avg_confidence > high:
        return (
            max(MIN_PRIORITY, priority - PRIORITY_STEP),
            min(MAX_FREQUENCY_HOURS, frequency_hours * 1.5),
        )
    return priority, frequency_hours


async def tune_priorities(db: AsyncSession) -> list[dict]:
    """
    Re-tune every product that has stored listings.

    Returns:
        List of applied updates
    """
    avg_confidence = (
        select(
            ProductVariant.product_id.label("product_id"),
            func.avg(MerchantListing.confidence).label("avg_confidence"),
        )
        .join(MerchantListing, MerchantListing.variant_id == ProductVariant.id)
        .group_by(ProductVariant.product_id)
        .subquery()
    )
    result = await db.execute(
        select(Product, avg_confidence.c.avg_confidence).join(
            avg_confidence, avg_confidence.c.product_id == Product.id
        )
    )

    updates: list[PriorityUpdate] = []
    for product, confidence in result.all():
        priority, frequency = tune(
            product.priority_score, product.scrape_frequency_hours, float(confidence)
        )
        if priority == product.priority_score and frequency == product.scrape_frequency_hours:
            continue
        product.priority_score = priority
        product.scrape_frequency_hours = frequency
        updates.append(
            PriorityUpdate(
                product_id=product.id,
                avg_confidence=round(float(confidence), 3),
                priority_score=priority,
                scrape_frequency_hours=frequency,
            )
        )

    await db.commit()
    logger.info(f"Priority tuning updated {len(updates)} products")
    return [asdict(u) for u in updates]
