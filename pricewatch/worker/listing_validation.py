"""Category price sanity checks for stored listings."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import MerchantListing, Product, ProductVariant

logger = logging.getLogger(__name__)


def is_price_valid(category: Optional[str], price: float) -> bool:
    """
    Check a listing price against the category's sanity range.

    Categories without a configured range accept any price.
    """
    bounds = settings.listing_price_bounds.get((category or "").lower())
    if not bounds:
        return True
    low, high = bounds
    return low <= price <= high


async def revalidate_listings(db: AsyncSession) -> dict:
    """
    Recompute is_valid on every stored listing.

    Returns:
        Counts of checked, invalidated and revalidated listings
    """
    result = await db.execute(
        select(MerchantListing, Product.category)
        .join(ProductVariant, MerchantListing.variant_id == ProductVariant.id)
        .join(Product, ProductVariant.product_id == Product.id)
    )

    checked = invalidated = revalidated = 0
    for listing, category in result.all():
        checked += 1
        valid = is_price_valid(category, listing.price)
        if valid == listing.is_valid:
            continue
        if valid:
            revalidated += 1
        else:
            invalidated += 1
            logger.info(
                f"Listing {listing.id} ({listing.merchant_name}, {listing.price:.0f} kr) "
                f"outside {category} range, marking invalid"
            )
        listing.is_valid = valid

    await db.commit()
    logger.info(
        f"Revalidated {checked} listings: {invalidated} invalidated, {revalidated} revalidated"
    )
    return {"checked": checked, "invalidated": invalidated, "revalidated": revalidated}
