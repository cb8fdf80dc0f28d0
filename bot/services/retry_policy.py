"""Retry and backoff policy for calls to the Riot API."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

from config import Config
from errors import RiotRateLimited, RiotTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (RiotTransientError, aiohttp.ClientError, asyncio.TimeoutError)


class RetryPolicy:
    """Exponential backoff that honours the provider's Retry-After delay.

    Only the call being retried waits; the rest of the poll cycle is not
    paused. Errors outside ``RETRYABLE_ERRORS`` are raised immediately.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.max_attempts = max(1, max_attempts or Config.RIOT_MAX_ATTEMPTS)
        self.base_delay = base_delay if base_delay is not None else Config.RIOT_BACKOFF_BASE_SECONDS
        self.max_delay = max_delay if max_delay is not None else Config.RIOT_BACKOFF_MAX_SECONDS
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int, error: BaseException) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if isinstance(error, RiotRateLimited) and error.retry_after is not None:
            return min(error.retry_after, self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "request") -> T:
        """Run ``operation`` until it succeeds or the attempts are exhausted."""
        attempt = 1
        while True:
            try:
                return await operation()
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise

                delay = self.delay_for(attempt, e)
                logger.info(f"Retrying {description} in {delay:.1f}s (attempt {attempt}/{self.max_attempts}): {e}")
                await self._sleep(delay)
                attempt += 1
