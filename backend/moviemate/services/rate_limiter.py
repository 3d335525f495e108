import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window limiter for outbound TMDB requests.

    At most ``max_requests`` slots are handed out per window. A caller that
    arrives after the quota is spent is suspended for the rest of the window,
    after which a fresh window starts. Waiters are served in arrival order
    by the underlying ``asyncio.Lock``.
    """

    def __init__(
        self,
        max_requests: int = 40,
        window_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive.")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._request_count = 0
        self._window_start: Optional[float] = None

    @property
    def request_count(self) -> int:
        return self._request_count

    async def acquire(self) -> None:
        """Wait until a request slot is available, then take it."""
        async with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.window_seconds:
                self._window_start = now
                self._request_count = 0

            if self._request_count >= self.max_requests:
                wait_time = self.window_seconds - (now - self._window_start)
                if wait_time > 0:
                    logger.info(f"TMDB rate limit reached, waiting {wait_time:.2f}s for a new window.")
                    await self._sleep(wait_time)
                self._window_start = self._clock()
                self._request_count = 0

            self._request_count += 1
