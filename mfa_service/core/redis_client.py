"""
Redis connection management
"""

from typing import Optional
from redis import Redis, ConnectionPool
from mfa_service.core.config import settings


class RedisClient:
    """Redis client wrapper for audit streams and attempt counters"""

    def __init__(self, url: str = None):
        self.pool = ConnectionPool.from_url(
            url or str(settings.REDIS_URL),
            max_connections=settings.REDIS_POOL_SIZE,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            decode_responses=True
        )
        self.client = Redis(connection_pool=self.pool)

    def incr(self, key: str) -> int:
        """Increment counter"""
        return self.client.incr(key)

    def ping(self) -> bool:
        """Check connectivity"""
        return self.client.ping()

    # Streams
    def xadd(self, stream: str, fields: dict, maxlen: Optional[int] = None) -> str:
        """Append entry to stream, trimming approximately to maxlen"""
        return self.client.xadd(stream, fields, maxlen=maxlen, approximate=True)

    def xrevrange(self, stream: str, count: Optional[int] = None) -> list:
        """Read stream newest first"""
        return self.client.xrevrange(stream, max="+", min="-", count=count)

    # Rate limiting
    def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """
        Check rate limit using a fixed window counter
        Returns (allowed, remaining)
        """
        count = self.incr(key)
        if count == 1:
            self.client.expire(key, window_seconds)

        if count > limit:
            return False, 0

        return True, limit - count

    def close(self):
        """Close Redis connection"""
        self.client.close()
        self.pool.disconnect()


# Global Redis client instance
redis_client = RedisClient()


def get_redis() -> RedisClient:
    """Dependency function to get Redis client"""
    return redis_client
