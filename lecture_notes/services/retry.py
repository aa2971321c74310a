"""Bounded retry with exponential backoff for flaky external calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar


T = TypeVar("T")
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """``retries`` extra attempts, sleeping ``base_delay * 2**attempt`` between them."""

    retries: int = 0
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *operation*, retrying errors accepted by *is_retryable*.

    Non-retryable errors and the error of the final attempt propagate
    unchanged.
    """

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:
            if attempt >= policy.retries or not is_retryable(error):
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            LOGGER.warning(
                "%s failed (%s); retrying in %.1fs (attempt %d/%d)",
                description,
                error,
                delay,
                attempt,
                policy.retries,
            )
            sleep(delay)


__all__ = ["RetryPolicy", "call_with_retry"]
