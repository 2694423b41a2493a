# rate_limit.py
"""Client-side throttle for Backpack REST calls.

Every request of :class:`gateway.BackpackGateway` takes one token before it is
sent.  A full ladder placement issues one request per level back to back, so
the bucket lets the first ``capacity`` through and spaces the rest at the
refill rate.
"""
import asyncio
import os
import time

from utils import logger


def _env_int(name, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


class TokenBucket:
    """Waiters are served in arrival order (``asyncio.Lock`` is FIFO)."""

    def __init__(self, capacity: int, refill_per_sec: float):
        if capacity < 1 or refill_per_sec <= 0:
            raise ValueError("capacity must be >= 1 and refill_per_sec > 0")
        self.capacity = capacity
        self.refill_per_sec = refill_per_sec
        self.tokens = float(capacity)
        # number of acquires that had to sleep
        self.throttled = 0
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self._updated) * self.refill_per_sec)
        self._updated = now

    async def acquire(self, n: int = 1) -> None:
        if n > self.capacity:
            raise ValueError(f"cannot take {n} tokens from a bucket of {self.capacity}")
        async with self._lock:
            self._refill()
            if self.tokens < n:
                self.throttled += 1
            while self.tokens < n:
                wait = (n - self.tokens) / self.refill_per_sec
                logger.debug("rate limited | wait=%.3fs tokens=%.2f", wait, self.tokens)
                await asyncio.sleep(wait)
                self._refill()
            self.tokens -= n


def build_rate_limiter():
    """Create a :class:`TokenBucket` from ``GRID_RATE_LIMIT_RPS`` / ``GRID_RATE_LIMIT_BURST``.

    Defaults to 10 requests per second with a burst of twice that.
    """
    rps = max(_env_int("GRID_RATE_LIMIT_RPS", 10), 1)
    burst = max(_env_int("GRID_RATE_LIMIT_BURST", rps * 2), 1)
    return TokenBucket(capacity=burst, refill_per_sec=float(rps))
