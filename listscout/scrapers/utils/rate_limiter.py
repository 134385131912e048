"""Jittered delay rate limiter for detail page visits."""

import asyncio
import random
import time
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Randomized delay limiter consumed before every remote page visit.

    Each wait samples a base delay uniformly from [min_delay_ms, max_delay_ms]
    and applies +/-10% jitter. If the previous request was recent, only the
    remainder of the sampled delay is slept; after an idle period the floor is
    slept instead, so requests never burst back-to-back. Limiters built from
    settings never use a floor below IDLE_FLOOR_MS.

    The throttle flag is advisory. Callers check ``is_throttled`` themselves
    before calling wait().
    """

    JITTER_RATIO = 0.1
    IDLE_FLOOR_MS = 2000

    def __init__(
        self,
        min_delay_ms: float = 5000,
        max_delay_ms: float = 10000,
        floor_ms: float = 2000,
    ):
        """Initialize rate limiter.

        Args:
            min_delay_ms: Lower bound of the base delay
            max_delay_ms: Upper bound of the base delay
            floor_ms: Delay applied after idle periods
        """
        self.update_delays(min_delay_ms, max_delay_ms)
        self.floor_ms = max(0.0, float(floor_ms))
        self.last_request_time: float = 0.0  # monotonic seconds, 0 = never
        self._throttled_until: Optional[float] = None
        self._lock = asyncio.Lock()

    def next_delay(self) -> float:
        """Sample the next delay in milliseconds (never negative)."""
        base = random.uniform(self.min_delay_ms, self.max_delay_ms)
        jitter = base * self.JITTER_RATIO * random.uniform(-1.0, 1.0)
        return max(0.0, base + jitter)

    async def wait(self) -> float:
        """Sleep for the computed delay and record the request time.

        Returns:
            Milliseconds actually slept
        """
        async with self._lock:
            delay = self.next_delay()

            if self.last_request_time:
                elapsed_ms = (time.monotonic() - self.last_request_time) * 1000
            else:
                elapsed_ms = float("inf")

            if elapsed_ms < delay:
                actual = delay - elapsed_ms
            else:
                actual = self.floor_ms

            if actual > 0:
                logger.debug("rate_limit_wait", delay_ms=round(actual))
                await asyncio.sleep(actual / 1000)

            self.last_request_time = time.monotonic()
            return actual

    def throttle(self, duration_ms: float = 60000) -> None:
        """Mark the limiter throttled for duration_ms, after which it clears itself."""
        if duration_ms <= 0:
            self._throttled_until = None
            return
        self._throttled_until = time.monotonic() + duration_ms / 1000
        logger.warning("rate_limiter_throttled", duration_ms=duration_ms)

    @property
    def is_throttled(self) -> bool:
        if self._throttled_until is None:
            return False
        if time.monotonic() >= self._throttled_until:
            self._throttled_until = None
            return False
        return True

    def throttle_remaining(self) -> float:
        """Seconds until the throttle clears (0 when not throttled)."""
        if not self.is_throttled:
            return 0.0
        return max(0.0, self._throttled_until - time.monotonic())

    def update_delays(self, min_delay_ms: float, max_delay_ms: float) -> None:
        if min_delay_ms < 0 or max_delay_ms < 0:
            raise ValueError("Delays must be non-negative")
        if min_delay_ms > max_delay_ms:
            raise ValueError("min_delay_ms must not exceed max_delay_ms")
        self.min_delay_ms = float(min_delay_ms)
        self.max_delay_ms = float(max_delay_ms)

    def reset(self) -> None:
        self.last_request_time = 0.0
        self._throttled_until = None

    def get_settings(self) -> Dict[str, Any]:
        return {
            "min_delay_ms": self.min_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "floor_ms": self.floor_ms,
            "is_throttled": self.is_throttled,
            "last_request_time": self.last_request_time,
        }

    @classmethod
    def from_settings(cls) -> "RateLimiter":
        from listscout.config import settings

        return cls(
            min_delay_ms=settings.MIN_DELAY_MS,
            max_delay_ms=settings.MAX_DELAY_MS,
            floor_ms=max(settings.MIN_DELAY_FLOOR_MS, cls.IDLE_FLOOR_MS),
        )
