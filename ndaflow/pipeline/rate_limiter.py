"""Per-provider rate limiting shared by all runs in a process.

Each provider gets an ``aiolimiter.AsyncLimiter`` sized from its requests per
minute. Callers never get an error for exceeding a limit: ``acquire`` waits
until the limiter has capacity. Waiters are served in arrival order, and a
caller that has to wait learns its position in the queue through an optional
callback so the run can surface it as progress.

With the default burst of one, grants are spaced at least
``60 / requests_per_minute`` seconds apart, so no sixty-second window ever sees
more than ``requests_per_minute`` acquisitions. A larger burst trades that
strict ceiling for throughput.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Mapping, Optional

from aiolimiter import AsyncLimiter

from ndaflow.core.config import RateLimitSettings
from ndaflow.core.exceptions import ConfigurationError
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

QueueCallback = Callable[[int], Awaitable[None]]


def create_async_limiter(provider: str, requests_per_minute: int, burst: int = 1) -> AsyncLimiter:
    """Build an AsyncLimiter allowing ``burst`` requests per ``burst * 60 / rpm`` seconds."""
    if requests_per_minute <= 0:
        raise ConfigurationError(f"requests_per_minute for '{provider}' must be positive")
    if burst < 1:
        raise ConfigurationError(f"burst for '{provider}' must be at least 1")
    return AsyncLimiter(burst, time_period=burst * 60.0 / requests_per_minute)


@dataclass(frozen=True)
class RateLimitToken:
    """Receipt for one granted request against a provider."""

    provider: str
    acquired_at: float
    waited_seconds: float
    queue_position: int


class ProviderRateLimiter:
    """FIFO wrapper around one provider's AsyncLimiter.

    A caller's place in line is reserved before anything is awaited, so the
    queue callback cannot reorder callers.
    """

    def __init__(self, provider: str, limiter: AsyncLimiter):
        self.provider = provider
        self.limiter = limiter
        self._queue: Deque[asyncio.Future] = deque()

    @classmethod
    def per_minute(cls, provider: str, requests_per_minute: int, burst: int = 1) -> "ProviderRateLimiter":
        return cls(provider, create_async_limiter(provider, requests_per_minute, burst))

    @property
    def requests_per_minute(self) -> float:
        return self.limiter.max_rate * 60.0 / self.limiter.time_period

    @property
    def waiting(self) -> int:
        """Callers currently queued or holding the head of the queue."""
        return len(self._queue)

    async def acquire(self, on_queued: Optional[QueueCallback] = None) -> RateLimitToken:
        """Wait for capacity.

        Args:
            on_queued: Awaited with the caller's 1-based queue position when the
                caller cannot be served immediately.

        Returns:
            RateLimitToken describing the grant
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        turn = loop.create_future()
        ahead = len(self._queue)
        self._queue.append(turn)
        if not ahead:
            turn.set_result(None)

        position = 0
        try:
            if ahead or not self.limiter.has_capacity():
                position = ahead + 1
                if on_queued is not None:
                    await on_queued(position)
                LOGGER.debug(
                    f"Waiting for {self.provider} rate limit",
                    extra={"provider": self.provider, "queue_position": position},
                )
            await turn
            await self.limiter.acquire()
        finally:
            self._leave(turn)

        now = loop.time()
        return RateLimitToken(
            provider=self.provider,
            acquired_at=now,
            waited_seconds=now - started,
            queue_position=position,
        )

    def _leave(self, turn: asyncio.Future) -> None:
        self._queue.remove(turn)
        if not turn.done():
            turn.cancel()
        if self._queue and not self._queue[0].done():
            self._queue[0].set_result(None)


class RateLimiterRegistry:
    """Holds one limiter per external provider.

    One registry is built per worker process and passed by reference to every
    orchestrator, which makes it the only state shared between runs.
    """

    def __init__(self, limiters: Optional[Mapping[str, ProviderRateLimiter]] = None):
        self._limiters: Dict[str, ProviderRateLimiter] = dict(limiters or {})

    @classmethod
    def from_settings(cls, rate_limits: RateLimitSettings) -> "RateLimiterRegistry":
        registry = cls()
        for provider, rpm in rate_limits.as_mapping().items():
            registry.register(ProviderRateLimiter.per_minute(provider, rpm, burst=rate_limits.burst))
        return registry

    def register(self, limiter: ProviderRateLimiter) -> None:
        self._limiters[limiter.provider] = limiter

    def get(self, provider: str) -> ProviderRateLimiter:
        try:
            return self._limiters[provider]
        except KeyError:
            raise ConfigurationError(f"No rate limiter configured for provider '{provider}'") from None

    async def acquire(self, provider: str, on_queued: Optional[QueueCallback] = None) -> RateLimitToken:
        return await self.get(provider).acquire(on_queued)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {"requests_per_minute": limiter.requests_per_minute, "waiting": limiter.waiting}
            for name, limiter in self._limiters.items()
        }
