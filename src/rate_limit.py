"""Minimum-interval rate limiter for backend calls."""
import asyncio
import logging
import time
from typing import Optional


logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: float):
        super().__init__(
            f"Rate limit exceeded. Please wait {retry_after:.1f} seconds before retrying."
        )
        self.retry_after = retry_after


class RateLimiter:
    """
    Enforces a minimum spacing between backend calls.

    With ``wait`` enabled, callers sleep until the interval has elapsed;
    otherwise a call arriving too early raises ``RateLimitExceeded``.
    """

    def __init__(self, interval_seconds: Optional[float], wait: bool = False):
        self.interval_seconds = interval_seconds
        self.wait = wait
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if not self.interval_seconds:
            return

        async with self._lock:
            now = time.monotonic()
            if self._last_request is not None:
                remaining = self._last_request + self.interval_seconds - now
                if remaining > 0:
                    if not self.wait:
                        logger.warning(f"Rate limit hit, {remaining:.1f}s remaining")
                        raise RateLimitExceeded(remaining)
                    logger.info(f"Rate limit: waiting {remaining:.1f}s")
                    await asyncio.sleep(remaining)
                    now = time.monotonic()
            self._last_request = now
