"""
Bounded retry with exponential backoff for persistence calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from app.utils.error_handling import PerEmployeeCalculationError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, and how long to wait in between (seconds)."""
    attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Await ``operation()``, retrying only on TransientStorageError.

    After ``policy.attempts`` failures the last error is escalated to a
    PerEmployeeCalculationError. Any other exception propagates untouched.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except TransientStorageError as exc:
            if attempt >= policy.attempts:
                raise PerEmployeeCalculationError(
                    f"{description} failed after {attempt} attempts: {exc.message}",
                    original_error=exc,
                ) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{policy.attempts}), retrying in {delay:.2f}s: {exc.message}"
            )
            await sleep(delay)
