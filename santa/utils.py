"""
Service Utilities - Shared Components

COMPONENTS:
- RateLimiter: Per-client sliding window for the token routes
- CircuitBreaker: Stops hammering a mail transport that keeps failing
- HttpManager: Shared aiohttp session with connection pooling

USAGE:
    from . import utils

    # Rate limiting (reveal/wishlist routes, keyed by client address)
    limiter = utils.RateLimiter(limit=30, window=60)
    if not await limiter.check(remote):
        raise web.HTTPTooManyRequests(headers={"Retry-After": str(limiter.retry_after(remote))})

    # Circuit breaker (notification sweep)
    breaker = utils.CircuitBreaker(name="sendgrid", failure_threshold=5)
    if await breaker.can_attempt():
        # Try delivery
        await breaker.record_success()  # or record_failure()
"""

import asyncio
import logging
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

import aiohttp

logger = logging.getLogger("santa")

USER_AGENT = "secret-santa-exchange/1.0"


class RateLimiter:
    """
    Sliding window limiter keyed by client address.

    Each client keeps a deque of request times; expired entries are dropped
    from the left on every check. Clients idle for a whole window are pruned
    once max_clients addresses are tracked, so a scan from many addresses
    cannot grow the table without bound.
    """

    def __init__(self, limit: int, window: int, max_clients: int = 10_000,
                 clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self.max_clients = max_clients
        self.clock = clock
        self.hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def _expire(self, hits: Deque[float], now: float):
        while hits and now - hits[0] >= self.window:
            hits.popleft()

    def _prune(self, now: float):
        for client in [c for c, hits in self.hits.items() if not hits or now - hits[-1] >= self.window]:
            del self.hits[client]

    async def check(self, client: str) -> bool:
        """Count one request; False when the client is over its limit"""
        async with self._lock:
            now = self.clock()
            if client not in self.hits and len(self.hits) >= self.max_clients:
                self._prune(now)

            hits = self.hits.setdefault(client, deque())
            self._expire(hits, now)
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def retry_after(self, client: str) -> int:
        """Whole seconds until the client's oldest counted request expires"""
        hits = self.hits.get(client)
        if not hits:
            return 0
        return max(1, math.ceil(self.window - (self.clock() - hits[0])))

    async def reset(self, client: str):
        async with self._lock:
            self.hits.pop(client, None)


class CircuitBreaker:
    """
    Circuit breaker around one mail transport.

    STATES:
    - CLOSED: deliveries go out
    - OPEN: failure_threshold failures in a row; deliveries are skipped
      (and keep their attempt budget) until recovery_timeout has passed
    - HALF_OPEN: trial deliveries; success_threshold successes close the
      circuit, one failure opens it again
    """

    def __init__(self, name: str = "mail", failure_threshold: int = 5, recovery_timeout: float = 60,
                 success_threshold: int = 2, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN
        self.success_count = 0
        self._lock = asyncio.Lock()

    def _open(self):
        if self.state != "OPEN":
            logger.warning(f"Circuit breaker for {self.name} opened after {self.failures} failure(s)")
        self.state = "OPEN"
        self.opened_at = self.clock()
        self.success_count = 0

    async def record_success(self):
        async with self._lock:
            if self.state == "HALF_OPEN":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    logger.info(f"Circuit breaker for {self.name} closed")
                    self.state = "CLOSED"
                    self.failures = 0
                    self.success_count = 0
            else:
                self.failures = 0

    async def record_failure(self):
        async with self._lock:
            self.failures += 1
            if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
                self._open()

    async def can_attempt(self) -> bool:
        async with self._lock:
            if self.state == "OPEN":
                if self.clock() - self.opened_at < self.recovery_timeout:
                    return False
                self.state = "HALF_OPEN"
                self.success_count = 0
            return True

    def retry_after(self) -> float:
        """Seconds until an open circuit lets a trial delivery through"""
        if self.state != "OPEN":
            return 0.0
        return max(0.0, self.recovery_timeout - (self.clock() - self.opened_at))

    async def get_metrics(self) -> dict:
        async with self._lock:
            return {
                "name": self.name,
                "state": self.state,
                "current_failures": self.failures,
            }


class HttpManager:
    """Reusable HTTP session with connection pooling (SendGrid traffic)"""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=10, limit_per_host=5, ttl_dns_cache=300),
                headers={"User-Agent": USER_AGENT},
            )
        return self.session

    async def close(self):
        if self.session and not self.session.closed:
            try:
                await self.session.close()
            except (aiohttp.ClientError, OSError) as e:
                logger.debug(f"HTTP session close error: {e}")
        self.session = None
