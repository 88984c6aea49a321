"""Shared Temporal client for the API dispatcher and the worker."""

import logging
from typing import Optional

from temporalio.client import Client as TemporalClient
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_fixed

from ndaflow.core.config import settings
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


async def connect_temporal(max_attempts: int = 1, retry_delay: float = 5.0) -> TemporalClient:
    """Connect to the configured server, trying up to ``max_attempts`` times."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(retry_delay),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            LOGGER.info(
                f"Connecting to Temporal at {settings.temporal.address} "
                f"(attempt {attempt.retry_state.attempt_number}/{max_attempts})"
            )
            return await TemporalClient.connect(
                settings.temporal.address,
                namespace=settings.temporal.namespace,
            )


class TemporalClientManager:
    """Connects on first use and keeps the client for the life of the process."""

    _client: Optional[TemporalClient] = None

    async def get_client(self) -> TemporalClient:
        if self._client is None:
            self._client = await connect_temporal()
        return self._client

    async def close(self) -> None:
        # temporalio clients hold no closable resources of their own
        self._client = None


_temporal_manager = TemporalClientManager()


async def get_temporal_client() -> TemporalClient:
    return await _temporal_manager.get_client()


async def close_temporal_client() -> None:
    await _temporal_manager.close()
