from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from shared.contracts.errors import StoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retries(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (StoreError,),
    description: str = "store operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` up to ``attempts`` times with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; the last one is
    re-raised once the ceiling is reached.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, exc)
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                attempts,
                delay,
                exc,
            )
            sleep(delay)
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.2
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_settings(cls, settings, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            attempts=settings.STORE_RETRY_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
            sleep=sleep,
        )

    def call(self, operation: Callable[[], T], description: str = "store operation") -> T:
        return call_with_retries(
            operation,
            attempts=self.attempts,
            base_delay=self.base_delay,
            description=description,
            sleep=self.sleep,
        )
