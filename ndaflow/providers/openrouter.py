"""OpenRouter chat-completions client."""

from typing import Any, Dict, Optional, Tuple

import httpx

from ndaflow.core.config import settings
from ndaflow.core.exceptions import APIClientError
from ndaflow.pipeline.usage import TokenUsage
from ndaflow.prompts.system_prompts import PROMPT_VERSION
from ndaflow.providers.http import BaseHTTPClient
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class OpenRouterClient:
    """Wrapper around the OpenRouter chat-completions API.

    Each call makes exactly one request and reports the token usage the
    provider metered for it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model or settings.llm.openrouter_model
        self.client = BaseHTTPClient(
            api_key=api_key if api_key is not None else settings.llm.openrouter_api_key,
            base_url=base_url or settings.llm.openrouter_api_url,
            timeout=timeout or settings.llm.timeout_seconds,
            transport=transport,
        )
        LOGGER.info(f"Initialized OpenRouter client with model {self.model}")

    async def generate_content(
        self,
        contents: str,
        system_instruction: Optional[str] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, TokenUsage]:
        """Generate a completion.

        Args:
            contents: User message
            system_instruction: Optional system message
            generation_config: Optional temperature / max_output_tokens

        Returns:
            Tuple of the response text and its token usage

        Raises:
            APIClientError: If the response is malformed
        """
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": contents})

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.0,
            "response_format": {"type": "json_object"},
            "metadata": {"prompt_version": PROMPT_VERSION},
        }
        if generation_config:
            if "temperature" in generation_config:
                payload["temperature"] = generation_config["temperature"]
            if "max_output_tokens" in generation_config:
                payload["max_tokens"] = generation_config["max_output_tokens"]

        response = await self.client.call_api(endpoint="", method="POST", payload=payload)

        choices = response.get("choices") or []
        if not choices:
            LOGGER.error(f"Unexpected OpenRouter response format: {str(response)[:500]}")
            raise APIClientError("Invalid response format from OpenRouter")

        content = choices[0].get("message", {}).get("content") or ""
        if not content:
            LOGGER.warning("Empty response from OpenRouter")

        usage = response.get("usage") or {}
        return content, TokenUsage(
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
        )
