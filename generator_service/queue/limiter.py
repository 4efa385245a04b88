"""
Activation Rate Limiter

Fixed-window counter in Redis shared by every worker of a queue: at most
`max_jobs` activations per `duration_ms` window. Callers over the limit get
back how long to wait; nothing is rejected.
"""

import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class RateLimiter:
    """Bounds how many jobs may transition to active per time window."""

    def __init__(self, redis: Redis, key: str, max_jobs: int, duration_ms: int):
        """
        Args:
            redis: Connected async Redis client
            key: Counter key for this queue's limiter
            max_jobs: Activations allowed per window
            duration_ms: Window length in milliseconds
        """
        self._redis = redis
        self.key = key
        self.max_jobs = max_jobs
        self.duration_ms = duration_ms

    async def acquire(self) -> int:
        """
        Take one activation slot from the current window.

        Returns:
            0 if the activation may proceed, otherwise milliseconds until
            the window resets.
        """
        count = await self._redis.incr(self.key)
        if count == 1:
            await self._redis.pexpire(self.key, self.duration_ms)

        if count <= self.max_jobs:
            return 0

        ttl = await self._redis.pttl(self.key)
        if ttl is None or ttl < 0:
            # Counter without expiry would block activations forever
            await self._redis.pexpire(self.key, self.duration_ms)
            ttl = self.duration_ms

        logger.debug(f"Rate limit reached ({count - 1}/{self.max_jobs}), wait {ttl}ms")
        return int(ttl)
