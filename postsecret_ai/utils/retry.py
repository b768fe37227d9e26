"""
Retry policy for outbound HTTP calls.

Exponential backoff with jitter, a hard cap on any single delay, and an
injectable sleep/random source so tests never wait on a real clock.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

RETRIABLE_STATUS = frozenset({429})


def is_retriable_status(status_code: int) -> bool:
    """429 and every 5xx are worth another attempt; other codes are final."""
    return status_code in RETRIABLE_STATUS or 500 <= status_code < 600


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


@dataclass
class RetryPolicy:
    """
    Backoff schedule for a bounded number of retries.

    delay(n) = min(max_delay, backoff_factor * 2**n + jitter * random())
    A server-supplied Retry-After replaces the computed delay but is capped
    at the same max_delay.
    """
    max_retries: int = 3
    backoff_factor: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rand: Callable[[], float] = field(default=random.random, repr=False)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            return min(self.max_delay, retry_after)
        base = self.backoff_factor * (2 ** attempt)
        return min(self.max_delay, base + self.jitter * self.rand())

    def wait(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.delay_for(attempt, retry_after)
        logger.debug(f"Retry {attempt + 1}/{self.max_retries}: sleeping {delay:.2f}s")
        self.sleep(delay)
        return delay
