from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff: base, 2*base, 4*base ... capped at max_delay."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        # attempt is 1-based: the delay after the first failure is base_delay.
        return min(self.base_delay_seconds * (2 ** max(0, attempt - 1)), self.max_delay_seconds)

    def run(self, fn: Callable[[], T], *, name: str = "task", sleep: Callable[[float], None] = time.sleep) -> T:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception:
                if attempt >= attempts:
                    logger.exception("%s failed after %s attempts", name, attempt)
                    raise
                delay = self.delay_for(attempt)
                logger.warning("%s failed (attempt %s/%s), retrying in %.1fs", name, attempt, attempts, delay)
                sleep(delay)
        raise AssertionError("unreachable")

