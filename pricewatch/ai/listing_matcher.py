"""Batch listing-to-variant matching via the LLM oracle."""

import logging
import statistics
from typing import Optional, Sequence

from pydantic import ValidationError

from pricewatch import metrics
from pricewatch.ai.llm_service import LLMService, OracleError, llm_service
from pricewatch.ai.prompts import (
    BATCH_MATCH_SCHEMA,
    MATCH_FUNCTION_NAME,
    MATCH_SYSTEM_PROMPT,
    ListingMatchPrompt,
    PromptListing,
)
from pricewatch.ai.schemas import (
    QUALITY_TIERS,
    BatchMatchResult,
    MatchedListing,
    PriceRange,
    TierStats,
    VariantMatch,
    VariantSpec,
)
from pricewatch.config import settings
from pricewatch.ingest.base import CONDITION_NEW, CONDITION_USED, ScrapedListing

logger = logging.getLogger(__name__)


def compute_price_range(prices: Sequence[float]) -> PriceRange:
    """min/max/median over a non-empty set of prices."""
    return PriceRange(
        min=min(prices),
        max=max(prices),
        median=statistics.median(prices),
    )


def compute_quality_tiers(listings: Sequence[MatchedListing]) -> dict[str, TierStats]:
    """Per-tier {min, max, count}, tiers in canonical order."""
    tiers: dict[str, TierStats] = {}
    for tier in QUALITY_TIERS:
        prices = [x.price for x in listings if x.condition_quality == tier]
        if prices:
            tiers[tier] = TierStats(min=min(prices), max=max(prices), count=len(prices))
    return tiers


def _stats_basis(
    listings: Sequence[MatchedListing],
    source: Sequence[ScrapedListing],
) -> list[MatchedListing]:
    """Used listings drive the stats when present, otherwise all listings."""
    used = [x for x in listings if source[x.listing_index].condition == CONDITION_USED]
    return used or list(listings)


def validate_match_result(
    result: BatchMatchResult,
    variants: Sequence[VariantSpec],
    listings: Sequence[ScrapedListing],
    min_confidence: Optional[float] = None,
) -> BatchMatchResult:
    """
    Enforce the matching contract on an oracle result.

    Pure function. Listings below the confidence threshold, with indices
    outside the input, assigned to more than one group, or assigned to an
    unknown variant are moved to unmatched_listings. New-condition listings
    are forced to tier "excellent" and price/url/title are taken from the
    scraped listing. Groups whose listings changed get their price range and
    tiers recomputed; groups left empty are dropped. Every input index ends
    up in exactly one place.

    Args:
        result: Schema-valid oracle output
        variants: Variants that were offered to the oracle
        listings: Listings that were offered to the oracle, by index
        min_confidence: Threshold (defaults to settings.match_min_confidence)

    Returns:
        A new, validated BatchMatchResult
    """
    min_confidence = (
        min_confidence if min_confidence is not None else settings.match_min_confidence
    )
    known_variants = {v.id for v in variants}
    n = len(listings)

    # An index claimed by more than one listing entry cannot be trusted anywhere
    claims: dict[int, int] = {}
    for group in result.matched_listings:
        for item in group.listings:
            claims[item.listing_index] = claims.get(item.listing_index, 0) + 1

    unmatched: set[int] = {i for i in result.unmatched_listings if 0 <= i < n}
    groups: dict[int, tuple[list[MatchedListing], bool, VariantMatch]] = {}

    for group in result.matched_listings:
        if group.variant_id not in known_variants:
            logger.warning(f"Oracle returned unknown variant {group.variant_id}, unmatching its listings")
            unmatched.update(
                item.listing_index for item in group.listings if 0 <= item.listing_index < n
            )
            continue

        kept, changed, first = groups.get(group.variant_id, ([], False, group))
        if group is not first:
            changed = True

        for item in group.listings:
            idx = item.listing_index
            if not 0 <= idx < n:
                changed = True
                continue
            if claims[idx] > 1 or item.confidence < min_confidence:
                unmatched.add(idx)
                changed = True
                continue

            source = listings[idx]
            tier = "excellent" if source.condition == CONDITION_NEW else item.condition_quality
            fixed = item.model_copy(
                update={
                    "condition_quality": tier,
                    "price": float(source.price),
                    "url": source.url,
                    "title": source.title,
                }
            )
            if tier != item.condition_quality or float(source.price) != item.price:
                changed = True
            kept.append(fixed)

        groups[group.variant_id] = (kept, changed, first)

    matched_groups: list[VariantMatch] = []
    matched_indices: set[int] = set()
    for variant_id, (kept, changed, first) in groups.items():
        if not kept:
            continue
        matched_indices.update(x.listing_index for x in kept)
        if changed:
            basis = _stats_basis(kept, listings)
            matched_groups.append(
                VariantMatch(
                    variant_id=variant_id,
                    listings=kept,
                    price_range=compute_price_range([x.price for x in basis]),
                    quality_tiers=compute_quality_tiers(basis),
                )
            )
        else:
            matched_groups.append(first.model_copy(update={"listings": kept}))

    # Indices the oracle forgot about are unmatched too
    unmatched.update(i for i in range(n) if i not in matched_indices)
    unmatched -= matched_indices

    return BatchMatchResult(
        matched_listings=matched_groups,
        unmatched_listings=sorted(unmatched),
        market_insights=result.market_insights,
    )


class ListingMatcher:
    """
    Assigns scraped listings to product variants.

    The fuzzy judgment (which variant, which quality tier) is made by the
    oracle in function-calling mode; the result is then validated here so
    the thresholds hold regardless of what the oracle returned.
    """

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or llm_service

    async def match(
        self,
        product_name: str,
        category: str,
        variants: Sequence[VariantSpec],
        listings: Sequence[ScrapedListing],
    ) -> Optional[BatchMatchResult]:
        """
        Match listings to variants.

        Args:
            product_name: Catalog product name
            category: Product category
            variants: Candidate variants
            listings: Scraped listings, referenced by index in the result

        Returns:
            Validated BatchMatchResult, or None when there is nothing to
            match, the oracle call fails, or its output does not fit the schema
        """
        if not listings or not variants:
            return None

        prompt = ListingMatchPrompt(
            product_name=product_name,
            category=category,
            variants=list(variants),
            listings=[
                PromptListing(
                    index=i,
                    merchant=listing.merchant_name,
                    condition=listing.condition,
                    title=listing.title,
                    price=listing.price,
                    url=listing.url,
                )
                for i, listing in enumerate(listings)
            ],
        )

        try:
            data = await self.llm.call_llm_structured(
                prompt=prompt.to_prompt(),
                response_schema=BATCH_MATCH_SCHEMA,
                system_prompt=MATCH_SYSTEM_PROMPT,
                function_name=MATCH_FUNCTION_NAME,
                function_description="Return normalized and matched listings with price tiers and insights",
            )
        except OracleError as e:
            metrics.record_match("oracle_error")
            logger.error(f"Matching failed for {product_name}: {e}")
            return None

        try:
            result = BatchMatchResult.model_validate(data)
        except ValidationError as e:
            metrics.record_match("schema_error")
            logger.error(
                f"Oracle output for {product_name} does not match schema: "
                f"{e.error_count()} errors"
            )
            return None

        validated = validate_match_result(result, variants, listings)
        matched = sum(len(g.listings) for g in validated.matched_listings)
        metrics.record_match("success", matched, len(validated.unmatched_listings))
        logger.info(
            f"Matched {matched}/{len(listings)} listings for {product_name} "
            f"into {len(validated.matched_listings)} variants"
        )
        return validated


# Global listing matcher instance
listing_matcher = ListingMatcher()
