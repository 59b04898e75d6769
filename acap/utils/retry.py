"""Exponential backoff for transient classifier failures."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a call."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        delay = min(self.initial_delay * (self.backoff_factor**attempt), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay


async def retry_with_exponential_backoff(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[Exception], ...],
    operation: str = "call",
) -> T:
    """
    Await ``call()`` until it succeeds or ``policy.max_retries`` retries are spent.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. After the last retry the final exception is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except retry_on as e:
            if attempt >= policy.max_retries:
                logger.error("retry_exhausted", operation=operation, attempts=attempt + 1, error=str(e))
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)
            attempt += 1
