"""Single-offer normalization: resolve a merchant offer to a catalog product."""

import logging
from typing import Optional

from pricewatch.ai.llm_service import LLMService, llm_service
from pricewatch.ai.prompts import (
    NORMALIZE_OFFER_SCHEMA,
    NORMALIZE_OFFER_SYSTEM_PROMPT,
    OfferNormalizationPrompt,
)
from pricewatch.ai.schemas import NormalizeOfferPayload, NormalizeOfferResult

logger = logging.getLogger(__name__)

NO_MATCH = "no_match"


class OfferNormalizer:
    """Asks the LLM which candidate product (if any) a merchant offer is."""

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or llm_service

    async def run(self, payload: NormalizeOfferPayload) -> NormalizeOfferResult:
        """
        Handle a normalize_offer job.

        A match on an id outside the candidate list (or any match when there
        are no candidates) is downgraded to no_match.

        Raises:
            OracleError: If the call fails
            pydantic.ValidationError: If the response does not fit the schema
        """
        prompt = OfferNormalizationPrompt(
            merchant_title=payload.merchant_title,
            merchant_name=payload.merchant_name,
            price=payload.price,
            url=payload.url,
            candidates=payload.candidates,
        )
        data = await self.llm.call_llm_structured(
            prompt=prompt.to_prompt(),
            response_schema=NORMALIZE_OFFER_SCHEMA,
            system_prompt=NORMALIZE_OFFER_SYSTEM_PROMPT,
            function_name="return_offer_match",
        )
        result = NormalizeOfferResult.model_validate(data)

        candidate_ids = {c.product_id for c in payload.candidates}
        if result.is_match and result.match not in candidate_ids:
            logger.warning(
                f"Offer '{payload.merchant_title}' matched unknown product {result.match}, "
                f"treating as {NO_MATCH}"
            )
            result = NormalizeOfferResult(
                match=NO_MATCH,
                confidence=result.confidence,
                reason=f"Unknown candidate {result.match}: {result.reason}",
            )

        return result


# Global offer normalizer instance
offer_normalizer = OfferNormalizer()
