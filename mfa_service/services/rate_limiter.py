"""
Verification attempt limiting

MfaService asks the limiter before checking any submitted code. The
default limiter allows everything; RedisAttemptLimiter caps attempts per
(user, method) in a fixed window.
"""

import logging
from abc import ABC, abstractmethod

from redis.exceptions import RedisError

from mfa_service.core.config import settings
from mfa_service.core.exceptions import MfaInfrastructureError
from mfa_service.core.redis_client import RedisClient

logger = logging.getLogger(__name__)


class AttemptLimiter(ABC):
    """Decides whether another verification attempt is allowed"""

    @abstractmethod
    def allow(self, user_id: str, method: str) -> bool:
        """Record an attempt and return False once the cap is exceeded"""


class NoopAttemptLimiter(AttemptLimiter):
    """Limiter that never limits"""

    def allow(self, user_id: str, method: str) -> bool:
        return True


class RedisAttemptLimiter(AttemptLimiter):
    """Fixed-window attempt counter in Redis"""

    def __init__(self, redis: RedisClient, max_attempts: int = None, window_seconds: int = None):
        self.redis = redis
        self.max_attempts = max_attempts or settings.MFA_VERIFY_MAX_ATTEMPTS
        self.window_seconds = window_seconds or settings.MFA_VERIFY_WINDOW_SECONDS

    def allow(self, user_id: str, method: str) -> bool:
        key = f"mfa_attempts:{method}:{user_id}"
        try:
            allowed, remaining = self.redis.check_rate_limit(key, self.max_attempts, self.window_seconds)
        except RedisError as e:
            logger.error(f"Attempt limiter unavailable for {method}: {str(e)}")
            raise MfaInfrastructureError("Attempt limiter unavailable", operation="rate_limit") from e

        if not allowed:
            logger.warning(f"MFA {method} attempts exhausted for user {user_id}")
        return allowed


def build_attempt_limiter(redis: RedisClient) -> AttemptLimiter:
    """Limiter selected by MFA_RATELIMIT_ENABLED"""
    if settings.MFA_RATELIMIT_ENABLED:
        return RedisAttemptLimiter(redis)
    return NoopAttemptLimiter()
