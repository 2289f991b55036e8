"""Bounded retry for credit mutations (transient lock / serialization failures)."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Linear backoff: attempt ``n`` failing waits ``n * base_delay`` seconds.

    With the defaults that is 1s then 2s, and the third failure is re-raised.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        attempts = max(self.max_attempts, 1)
        attempt = 1
        while True:
            try:
                result = await operation()
            except Exception as e:
                if attempt >= attempts:
                    logger.error("%s failed after %d attempts", description, attempts)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed for %s: %s — retrying in %.1fs",
                    attempt, attempts, description, e, delay,
                )
                await self.sleep(delay)
                attempt += 1
            else:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", description, attempt)
                return result
