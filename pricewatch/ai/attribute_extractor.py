"""Attribute extraction from product text using rules and the LLM."""

import logging
import re
from typing import Dict, Optional

from pricewatch.ai.llm_service import LLMService, llm_service
from pricewatch.ai.prompts import (
    EXTRACT_ATTRIBUTES_SCHEMA,
    EXTRACT_ATTRIBUTES_SYSTEM_PROMPT,
    AttributeExtractionPrompt,
)
from pricewatch.ai.schemas import AttributePair, ExtractAttributesPayload, ExtractAttributesResult

logger = logging.getLogger(__name__)


class AttributeExtractor:
    """
    Extract key/value attributes (storage, color, model, generation) from product text.

    The LLM result is authoritative; rule-based matches only fill keys the
    LLM left out.
    """

    STORAGE_PATTERN = re.compile(r"\b(\d{2,4})\s*(GB|TB)\b", re.IGNORECASE)

    # Norwegian and English color names
    COLOR_PATTERN = re.compile(
        r"\b(svart|hvit|blå|grønn|rød|gul|lilla|rosa|grå|sølv|gull|"
        r"black|white|blue|green|red|yellow|purple|pink|gray|grey|silver|gold|"
        r"midnight|starlight|graphite)\b",
        re.IGNORECASE,
    )

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or llm_service

    def extract_with_rules(self, text: str) -> Dict[str, str]:
        """
        Extract attributes using regex patterns.

        Args:
            text: Product text

        Returns:
            Dictionary of extracted attributes
        """
        attributes: Dict[str, str] = {}

        storage = self.STORAGE_PATTERN.search(text)
        if storage:
            attributes["storage"] = f"{storage.group(1)}{storage.group(2).upper()}"

        color = self.COLOR_PATTERN.search(text)
        if color:
            attributes["color"] = color.group(1).lower()

        return attributes

    async def extract_with_llm(self, text: str) -> ExtractAttributesResult:
        """
        Extract attributes using the LLM.

        Raises:
            OracleError: If the call fails
            pydantic.ValidationError: If the response does not fit the schema
        """
        data = await self.llm.call_llm_structured(
            prompt=AttributeExtractionPrompt(text=text).to_prompt(),
            response_schema=EXTRACT_ATTRIBUTES_SCHEMA,
            system_prompt=EXTRACT_ATTRIBUTES_SYSTEM_PROMPT,
            function_name="return_attributes",
        )
        return ExtractAttributesResult.model_validate(data)

    async def run(self, payload: ExtractAttributesPayload) -> ExtractAttributesResult:
        """Handle an extract_attributes job."""
        result = await self.extract_with_llm(payload.text)

        present = {a.key.lower() for a in result.attributes}
        for key, value in self.extract_with_rules(payload.text).items():
            if key not in present:
                result.attributes.append(AttributePair(key=key, value=value))

        logger.debug(f"Extracted {len(result.attributes)} attributes for product {payload.product_id}")
        return result


# Global attribute extractor instance
attribute_extractor = AttributeExtractor()
