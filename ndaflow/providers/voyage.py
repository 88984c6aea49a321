from typing import List, Optional, Sequence, Tuple

import httpx

from ndaflow.core.config import settings
from ndaflow.core.exceptions import APIClientError
from ndaflow.pipeline.usage import TokenUsage
from ndaflow.providers.http import BaseHTTPClient
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class VoyageEmbedder:
    """Voyage AI embeddings for legal text (voyage-law-2 by default)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model or settings.embeddings.model
        self.client = BaseHTTPClient(
            api_key=api_key if api_key is not None else settings.embeddings.voyage_api_key,
            base_url=base_url or settings.embeddings.voyage_api_url,
            timeout=timeout or settings.embeddings.timeout_seconds,
            transport=transport,
        )

    async def embed(self, texts: Sequence[str]) -> Tuple[List[List[float]], TokenUsage]:
        """Embed ``texts`` as documents, preserving input order."""
        if not texts:
            return [], TokenUsage()

        response = await self.client.call_api(
            payload={"model": self.model, "input": list(texts), "input_type": "document"},
        )

        data = response.get("data")
        if not isinstance(data, list):
            raise APIClientError("Invalid response format from Voyage embeddings API")

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        vectors = [item["embedding"] for item in ordered]

        total_tokens = int((response.get("usage") or {}).get("total_tokens", 0))
        LOGGER.debug(
            f"Embedded {len(vectors)} texts",
            extra={"model": self.model, "total_tokens": total_tokens},
        )
        return vectors, TokenUsage(input_tokens=total_tokens)
