"""Price alert email copy (Norwegian). Delivery is handled elsewhere."""

from typing import Optional

from pricewatch.ai.llm_service import LLMService, llm_service
from pricewatch.ai.prompts import ALERT_EMAIL_SCHEMA, ALERT_EMAIL_SYSTEM_PROMPT, AlertEmailPrompt
from pricewatch.ai.schemas import AlertEmailPayload, AlertEmailResult


class AlertWriter:
    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or llm_service

    async def run(self, payload: AlertEmailPayload) -> AlertEmailResult:
        """Handle a write_alert_email job."""
        prompt = AlertEmailPrompt(
            product_name=payload.product_name,
            target_price=payload.target_price,
            current_price=payload.current_price,
            merchant_name=payload.merchant_name,
        )
        data = await self.llm.call_llm_structured(
            prompt=prompt.to_prompt(),
            response_schema=ALERT_EMAIL_SCHEMA,
            system_prompt=ALERT_EMAIL_SYSTEM_PROMPT,
            function_name="return_alert_email",
        )
        return AlertEmailResult.model_validate(data)


# Global alert writer instance
alert_writer = AlertWriter()
