"""Typed payloads crossing the oracle and persistence boundaries."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

QualityTier = Literal["excellent", "good", "acceptable", "poor"]
QUALITY_TIERS: tuple[str, ...] = ("excellent", "good", "acceptable", "poor")


# =============================================================================
# Batch listing matching
# =============================================================================


class PriceRange(BaseModel):
    min: float
    max: float
    median: float


class TierStats(BaseModel):
    min: float
    max: float
    count: int


class MatchedListing(BaseModel):
    """A listing assigned to a variant, referenced by its index in the input list."""

    listing_index: int
    confidence: float = Field(ge=0.0, le=1.0)
    condition_quality: QualityTier
    price: float
    url: str = ""
    title: str = ""


class VariantMatch(BaseModel):
    variant_id: int
    listings: list[MatchedListing]
    price_range: PriceRange
    quality_tiers: dict[QualityTier, TierStats] = Field(default_factory=dict)


class MarketInsights(BaseModel):
    summary: str
    price_trend: str
    best_value_tier: str
    recommendation: str


class BatchMatchResult(BaseModel):
    """Oracle output for one product: matched groups, unmatched indices, insights."""

    matched_listings: list[VariantMatch]
    unmatched_listings: list[int] = Field(default_factory=list)
    market_insights: MarketInsights


class VariantSpec(BaseModel):
    """Variant attributes shown to the oracle."""

    id: int
    storage_gb: Optional[int] = None
    color: Optional[str] = None
    model: Optional[str] = None


# =============================================================================
# Stored price data (product_variants.price_data)
# =============================================================================


class NewPriceSummary(BaseModel):
    source: Literal["retailers"] = "retailers"
    avg_price: int
    total_listings: int
    merchants: list[str]
    updated_at: datetime


class UsedPriceSummary(BaseModel):
    source: str
    tiers: dict[QualityTier, TierStats]
    total_listings: int
    median_price: float
    price_range: PriceRange
    recommendation: str
    updated_at: datetime


class PriceData(BaseModel):
    new: Optional[NewPriceSummary] = None
    used: Optional[UsedPriceSummary] = None
    market_insights: MarketInsights


# =============================================================================
# AI job payloads (discriminated on kind)
# =============================================================================


class OfferCandidate(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    product_id: str
    name: str


class NormalizeOfferPayload(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    kind: Literal["normalize_offer"] = "normalize_offer"
    merchant_title: str
    merchant_name: str
    price: float
    url: Optional[str] = None
    merchant_offer_id: Optional[str] = None
    candidates: list[OfferCandidate] = Field(default_factory=list)


class ExtractAttributesPayload(BaseModel):
    kind: Literal["extract_attributes"] = "extract_attributes"
    product_id: int
    text: str


class AlertEmailPayload(BaseModel):
    kind: Literal["write_alert_email"] = "write_alert_email"
    product_name: str
    target_price: float
    current_price: float
    merchant_name: Optional[str] = None
    email: Optional[str] = None


JobPayload = Annotated[
    Union[NormalizeOfferPayload, ExtractAttributesPayload, AlertEmailPayload],
    Field(discriminator="kind"),
]

JOB_KINDS = ("normalize_offer", "extract_attributes", "write_alert_email")

_job_payload_adapter = TypeAdapter(JobPayload)


def parse_job_payload(kind: str, payload: dict[str, Any]) -> JobPayload:
    """
    Validate a raw job payload for the given kind.

    Raises:
        pydantic.ValidationError: If the kind is unknown or the payload does not fit it
    """
    return _job_payload_adapter.validate_python({**payload, "kind": kind})


# =============================================================================
# AI job results
# =============================================================================


class NormalizeOfferResult(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    match: str
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""

    @property
    def is_match(self) -> bool:
        return self.match != "no_match"


class AttributePair(BaseModel):
    key: str
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v):
        # Models sometimes return numbers ("storage": 128)
        return v if isinstance(v, str) else str(v)


class ExtractAttributesResult(BaseModel):
    attributes: list[AttributePair] = Field(default_factory=list)


class AlertEmailResult(BaseModel):
    subject: str
    body: str
