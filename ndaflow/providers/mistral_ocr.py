"""Mistral OCR engine."""

from typing import List, Optional, Sequence

import httpx

from ndaflow.core.config import settings
from ndaflow.core.exceptions import APIClientError, ValidationError
from ndaflow.providers.base import OcrPage, SourceDocument
from ndaflow.providers.http import BaseHTTPClient
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Mistral does not report a confidence; pages that came back with text get this one
DEFAULT_CONFIDENCE = 95.0


class MistralOcrEngine:
    """Recognize text on selected pages of a document via Mistral's OCR API.

    Mistral downloads the document itself from ``file_url``, so the document
    must be reachable by URL.

    Attributes:
        model: Model name to use (default: mistral-ocr-latest)
        client: HTTP client for the OCR endpoint
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model or settings.ocr.model
        self.client = BaseHTTPClient(
            api_key=api_key if api_key is not None else settings.ocr.mistral_api_key,
            base_url=api_url or settings.ocr.mistral_api_url,
            timeout=timeout or settings.ocr.timeout_seconds,
            transport=transport,
        )

        LOGGER.info(
            "Initialized Mistral OCR engine",
            extra={"model": self.model, "timeout": self.client.timeout},
        )

    async def recognize(self, document: SourceDocument, page_numbers: Sequence[int]) -> List[OcrPage]:
        """Run OCR on 1-based ``page_numbers``.

        Raises:
            ValidationError: If the document has no URL to fetch it from
            APIClientError: If the response is malformed
        """
        if not document.file_url:
            raise ValidationError(f"Document {document.document_id} has no file URL for OCR")

        payload = {
            "model": self.model,
            "document": {"type": "document_url", "document_url": document.file_url},
            # Mistral page indexes are 0-based
            "pages": [page - 1 for page in page_numbers],
            "include_image_base64": False,
        }

        LOGGER.debug(
            "Calling Mistral OCR API",
            extra={"model": self.model, "document_id": str(document.document_id), "pages": list(page_numbers)},
        )
        result = await self.client.call_api(payload=payload)

        pages = result.get("pages")
        if not isinstance(pages, list):
            raise APIClientError("Invalid response format from Mistral OCR API")

        recognized = []
        for position, page in enumerate(pages):
            text = (page.get("markdown") or page.get("text") or "").strip()
            if "index" in page:
                page_number = int(page["index"]) + 1
            else:
                page_number = page_numbers[position]
            confidence = page.get("confidence")
            if confidence is None:
                confidence = DEFAULT_CONFIDENCE if text else 0.0
            elif confidence <= 1:
                confidence = confidence * 100
            recognized.append(OcrPage(page_number=page_number, text=text, confidence=confidence))

        LOGGER.debug(
            "Mistral OCR API call successful",
            extra={"document_id": str(document.document_id), "pages_processed": len(recognized)},
        )
        return recognized
