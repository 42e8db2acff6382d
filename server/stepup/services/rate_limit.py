from __future__ import annotations

import threading
from dataclasses import dataclass

from .time_utils import Clock, now_utc


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    remaining: int


class FixedWindowRateLimiter:
    """In-memory fixed-window limiter (single process).

    Used for the per-IP verification throttle; per-user limits that must hold
    across workers are counted in the database instead.
    """

    def __init__(self, *, limit: int, window_seconds: int, clock: Clock = now_utc):
        self.limit = int(limit)
        self.window_seconds = max(1, int(window_seconds))
        self.clock = clock
        # key -> (window_start_epoch, count)
        self._buckets: dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()

    def _now(self) -> int:
        return int(self.clock().timestamp())

    def check(self, key: str) -> RateLimitResult:
        now = self._now()
        window_start = now - (now % self.window_seconds)

        with self._lock:
            prev = self._buckets.get(key)
            if not prev or prev[0] != window_start:
                self._buckets[key] = (window_start, 1)
                return RateLimitResult(True, 0, self.limit - 1)

            count = prev[1]
            if count >= self.limit:
                retry_after = (window_start + self.window_seconds) - now
                return RateLimitResult(False, max(1, retry_after), 0)

            self._buckets[key] = (window_start, count + 1)
            return RateLimitResult(True, 0, self.limit - (count + 1))

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def cleanup(self, *, max_age_seconds: int | None = None) -> int:
        now = self._now()
        cutoff = now - int(max_age_seconds or (self.window_seconds * 10))
        removed = 0
        with self._lock:
            for k, (ws, _c) in list(self._buckets.items()):
                if ws < cutoff:
                    self._buckets.pop(k, None)
                    removed += 1
        return removed
