from typing import Any, Dict, Optional

import httpx
from httpx import HTTPStatusError, TimeoutException

from ndaflow.core.exceptions import (
    APIClientError,
    APIRateLimitError,
    APIServerError,
    APITimeoutError,
    ConfigurationError,
)
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class BaseHTTPClient:
    """Base client for provider API calls.

    Makes a single request per call and translates failures into the
    application's exception hierarchy. Transient failures (timeouts, 429, 5xx)
    raise retryable errors; retrying is left to the pipeline orchestrator,
    which owns backoff and attempt accounting for every step.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_key: API key for bearer authentication
            base_url: Endpoint URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport, e.g. a MockTransport in tests
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.logger = LOGGER

    async def call_api(
        self,
        endpoint: str = "",
        method: str = "POST",
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Call the API once.

        Returns:
            Parsed JSON response

        Raises:
            APIRateLimitError: On HTTP 429
            APIServerError: On HTTP 5xx
            APITimeoutError: If the request times out
            APIClientError: On any other failure
        """
        if not self.api_key:
            raise ConfigurationError(f"No API key configured for {self.base_url}")

        url = f"{self.base_url}{endpoint}" if endpoint else self.base_url
        default_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if headers:
            default_headers.update(headers)

        self.logger.debug(f"Calling provider API: {url}", extra={"method": method, "timeout": self.timeout})

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                if method.upper() == "GET":
                    response = await client.get(url, headers=default_headers, params=payload)
                else:
                    response = await client.post(url, headers=default_headers, json=payload)
                response.raise_for_status()
            except HTTPStatusError as e:
                self._raise_for_status(e, url)
            except TimeoutException as e:
                self.logger.warning("Provider API timeout", extra={"url": url})
                raise APITimeoutError(f"API timeout calling {url}", original_error=e) from e

        try:
            return response.json()
        except ValueError as e:
            raise APIClientError(f"Provider returned a non-JSON body from {url}", original_error=e) from e

    def _raise_for_status(self, error: HTTPStatusError, url: str) -> None:
        status_code = error.response.status_code
        error_body = error.response.text[:500]

        self.logger.warning(
            "Provider API HTTP error",
            extra={"url": url, "status_code": status_code, "error_body": error_body},
        )

        if status_code == 429:
            raise APIRateLimitError(
                f"Provider rate limit hit at {url}",
                retry_after=_retry_after(error.response),
                original_error=error,
            ) from error
        if status_code >= 500:
            raise APIServerError(f"API Server Error {status_code}: {error_body}", original_error=error) from error
        raise APIClientError(f"API Client Error {status_code}: {error_body}", original_error=error) from error
