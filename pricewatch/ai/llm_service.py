"""LLM service for OpenAI integration (the text-reasoning oracle)."""

import json
import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from pricewatch import metrics
from pricewatch.config import settings

logger = logging.getLogger(__name__)


class OracleError(RuntimeError):
    """Raised when the LLM call fails (transport, timeout, provider error)."""
    pass


class OracleSchemaError(OracleError):
    """Raised when the LLM response is not the structure that was asked for."""
    pass


def _strip_json_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class LLMService:
    """
    Service for LLM interactions with OpenAI.

    Features:
    - OpenAI API integration (any OpenAI-compatible endpoint)
    - Structured output via forced function calling
    - Error mapping to OracleError / OracleSchemaError
    """

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not settings.openai_api_key:
                raise OracleError("OpenAI API key not configured")
            kwargs: Dict[str, Any] = {"api_key": settings.openai_api_key}
            if settings.openai_base_url:
                kwargs["base_url"] = settings.openai_base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    @staticmethod
    def _messages(prompt: str, system_prompt: str) -> list[dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def call_llm_structured(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        system_prompt: str = "",
        function_name: str = "return_result",
        function_description: str = "Return the structured result",
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Call LLM in function-calling mode and return the function arguments.

        The model is forced to call a single function whose parameters are
        the response schema. Providers that answer in plain content instead
        are tolerated if the content is a JSON object.

        Args:
            prompt: User prompt
            response_schema: JSON schema describing expected response structure
            system_prompt: System prompt/instructions
            function_name: Name of the function the model must call
            function_description: Description shown to the model
            temperature: Temperature (defaults to settings.llm_temperature)
            model: Model name (defaults to settings.llm_model)

        Returns:
            Parsed arguments as dictionary

        Raises:
            OracleError: If the call fails
            OracleSchemaError: If no parseable JSON object comes back
        """
        model = model or settings.llm_model
        temperature = temperature if temperature is not None else settings.llm_temperature
        client = await self._get_client()

        try:
            response = await client.chat.completions.create(
                model=model,
                messages=self._messages(prompt, system_prompt),
                temperature=temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=settings.llm_timeout_seconds,
                tools=[
                    {
                        "type": "function",
                        "function": {
                            "name": function_name,
                            "description": function_description,
                            "parameters": response_schema,
                        },
                    }
                ],
                tool_choice={"type": "function", "function": {"name": function_name}},
            )
        except Exception as e:
            metrics.record_llm_call(function_name, success=False)
            logger.error(f"LLM function call {function_name} failed: {e}")
            raise OracleError(f"LLM API call failed: {e}") from e

        message = response.choices[0].message

        raw: Optional[str] = None
        for tool_call in message.tool_calls or []:
            if tool_call.function.name == function_name:
                raw = tool_call.function.arguments
                break
        if raw is None:
            raw = _strip_json_fence(message.content or "")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            metrics.record_llm_call(function_name, success=False)
            logger.error(f"Failed to parse LLM JSON response: {e}\nResponse: {raw[:200]}")
            raise OracleSchemaError(f"Invalid JSON response from LLM: {e}") from e

        if not isinstance(data, dict):
            metrics.record_llm_call(function_name, success=False)
            raise OracleSchemaError(
                f"Expected a JSON object from {function_name}, got {type(data).__name__}"
            )

        metrics.record_llm_call(function_name, success=True)
        return data

    async def close(self):
        """Close connections."""
        if self._client:
            await self._client.close()
            self._client = None


# Global LLM service instance
llm_service = LLMService()
