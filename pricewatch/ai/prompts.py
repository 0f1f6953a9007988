"""Centralized prompt templates and response schemas for oracle calls."""

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel

from pricewatch.ai.schemas import OfferCandidate, VariantSpec
from pricewatch.config import settings

# Title cues (Norwegian) for classifying used marketplace listings
TIER_KEYWORDS: Dict[str, list[str]] = {
    "excellent": ["ny", "ubrukt", "perfekt", "som ny", "i eske"],
    "good": ["lite brukt", "god stand", "fungerer perfekt"],
    "acceptable": ["brukt", "normal slitasje"],
    "poor": ["defekt", "ødelagt", "trenger reparasjon"],
}
DEFAULT_TIER = "acceptable"

MATCH_FUNCTION_NAME = "return_normalized_listings"

MATCH_SYSTEM_PROMPT = (
    "You are a product matching AI for a Norwegian price comparison platform. "
    f"Always answer by calling {MATCH_FUNCTION_NAME}."
)


class PromptListing(BaseModel):
    """Listing as shown to the oracle."""

    index: int
    merchant: str
    condition: str
    title: str
    price: int
    url: str


class ListingMatchPrompt(BaseModel):
    """Prompt schema for batch listing-to-variant matching."""

    product_name: str
    category: str
    variants: list[VariantSpec]
    listings: list[PromptListing]

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        variants_json = json.dumps(
            [v.model_dump() for v in self.variants], indent=2, ensure_ascii=False
        )
        listings_json = json.dumps(
            [listing.model_dump() for listing in self.listings], indent=2, ensure_ascii=False
        )
        tier_lines = "\n".join(
            f'  - "{tier}": ' + ", ".join(f'"{kw}"' for kw in keywords)
            for tier, keywords in TIER_KEYWORDS.items()
        )
        high = settings.match_exact_confidence
        low = settings.match_min_confidence

        return f"""Product: {self.product_name}
Category: {self.category}

Available Variants:
{variants_json}

Scraped Product Listings:
{listings_json}

Tasks:
1. Match each listing to one of the available variants. If no suitable variant is found, mark the listing as unmatched.
2. For each matched listing, assess its condition and quality based on its title.
3. Group the matched listings by their assigned variant.
4. For each variant, calculate price ranges (min, max, median) and per-tier min, max and count.
5. Generate overall market insights in Norwegian.

Condition & Quality Assessment Guidelines:
- Listings with condition "new" come from retailers and always have quality "excellent".
- For listings from {settings.marketplace_name} (used marketplace), use these title keywords:
{tier_lines}
- If no keywords are present, default to "{DEFAULT_TIER}".

Matching Rules:
- Match on storage size (e.g. 128, 256, 512, 1024 GB).
- Match on color (both Norwegian and English names are possible).
- Confidence >{high}: requires an exact match on both storage and color.
- Confidence {low}-{high}: requires a match on either storage or color.
- Confidence <{low}: the listing must be put in unmatched_listings.
- Every listing index appears exactly once: in one variant group or in unmatched_listings.

Return the analysis with matched listings grouped by variant, including price tiers and market insights."""


class OfferNormalizationPrompt(BaseModel):
    """Prompt schema for resolving a merchant offer to a catalog product."""

    merchant_title: str
    merchant_name: str
    price: float
    url: Optional[str] = None
    candidates: list[OfferCandidate] = []

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        return json.dumps(
            {
                "merchant_title": self.merchant_title,
                "merchant_name": self.merchant_name,
                "price": self.price,
                "url": self.url,
                "candidates": [c.model_dump() for c in self.candidates],
            },
            ensure_ascii=False,
        )


class AttributeExtractionPrompt(BaseModel):
    """Prompt schema for attribute extraction."""

    text: str

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        return f"Product text: {self.text}"


class AlertEmailPrompt(BaseModel):
    """Prompt schema for price alert copy."""

    product_name: str
    target_price: float
    current_price: float
    merchant_name: Optional[str] = None

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        return json.dumps(self.model_dump(exclude_none=True), ensure_ascii=False)


NORMALIZE_OFFER_SYSTEM_PROMPT = (
    "Match the merchant offer to one of the candidate products. "
    'Use "no_match" as match if unsure. Give a confidence between 0.0 and 1.0 '
    "and a brief reason."
)

EXTRACT_ATTRIBUTES_SYSTEM_PROMPT = (
    "Extract product attributes from the text. "
    "Common keys: storage, color, model, generation."
)

ALERT_EMAIL_SYSTEM_PROMPT = (
    "Write a short Norwegian price alert email (2-3 sentences) telling the user "
    "that the product has reached their target price."
)


# Response schemas for structured output
_TIER_STATS_SCHEMA = {
    "type": "object",
    "properties": {
        "min": {"type": "number"},
        "max": {"type": "number"},
        "count": {"type": "integer"},
    },
    "required": ["min", "max", "count"],
}

BATCH_MATCH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "matched_listings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "variant_id": {"type": "integer"},
                    "listings": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "listing_index": {"type": "integer"},
                                "confidence": {"type": "number"},
                                "condition_quality": {
                                    "type": "string",
                                    "enum": list(TIER_KEYWORDS),
                                },
                                "price": {"type": "number"},
                                "url": {"type": "string"},
                                "title": {"type": "string"},
                            },
                            "required": [
                                "listing_index",
                                "confidence",
                                "condition_quality",
                                "price",
                                "url",
                                "title",
                            ],
                        },
                    },
                    "price_range": {
                        "type": "object",
                        "properties": {
                            "min": {"type": "number"},
                            "max": {"type": "number"},
                            "median": {"type": "number"},
                        },
                        "required": ["min", "max", "median"],
                    },
                    "quality_tiers": {
                        "type": "object",
                        "additionalProperties": _TIER_STATS_SCHEMA,
                    },
                },
                "required": ["variant_id", "listings", "price_range", "quality_tiers"],
            },
        },
        "unmatched_listings": {"type": "array", "items": {"type": "integer"}},
        "market_insights": {
            "type": "object",
            "properties": {
                "summary": {"type": "string"},
                "price_trend": {"type": "string"},
                "best_value_tier": {"type": "string"},
                "recommendation": {"type": "string"},
            },
            "required": ["summary", "price_trend", "best_value_tier", "recommendation"],
        },
    },
    "required": ["matched_listings", "unmatched_listings", "market_insights"],
}

NORMALIZE_OFFER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "match": {"type": "string", "description": "Candidate product_id or no_match"},
        "confidence": {"type": "number"},
        "reason": {"type": "string"},
    },
    "required": ["match", "confidence", "reason"],
}

EXTRACT_ATTRIBUTES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "attributes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "key": {"type": "string"},
                    "value": {"type": "string"},
                },
                "required": ["key", "value"],
            },
        },
    },
    "required": ["attributes"],
}

ALERT_EMAIL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "subject": {"type": "string"},
        "body": {"type": "string"},
    },
    "required": ["subject", "body"],
}
