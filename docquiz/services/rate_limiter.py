"""Sliding-window rate limits consulted by the upload and generation pipelines."""
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from docquiz.domain.models.db_models import UserTier
from docquiz.domain.repositories import IRateLimitStore
from dq_utils.logger_utils import logger

HOUR = 3600
MINUTE = 60

UPLOAD_LIMITS: Dict[UserTier, int] = {
    UserTier.FREE: 10,
    UserTier.BASIC: 50,
    UserTier.PREMIUM: 200,
}

# generation requests per hour
USER_LIMITS: Dict[UserTier, int] = {
    UserTier.FREE: 10,
    UserTier.BASIC: 50,
    UserTier.PREMIUM: 200,
}

# provider calls per minute
PROVIDER_LIMITS: Dict[str, int] = {
    "gemini": 60,
    "openai": 60,
}
DEFAULT_PROVIDER_LIMIT = 60

GLOBAL_LIMIT = 1000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None
    key: str = ""


class RateLimiter:
    def __init__(self, store: IRateLimitStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one request against `key` unless the window is already full."""
        now = self.clock()
        expires_at = datetime.fromtimestamp(now + window_seconds, tz=timezone.utc)
        recorded, requests = self.store.try_add(key, now, now - window_seconds, limit, expires_at)

        if not recorded:
            reset_at = (min(requests) if requests else now) + window_seconds
            retry_after = max(1, math.ceil(reset_at - now))
            logger.info("Rate limit hit", extra={"key": key, "limit": limit, "retry_after": retry_after})
            return RateLimitResult(False, 0, reset_at, retry_after, key)

        return RateLimitResult(True, max(0, limit - len(requests)), min(requests) + window_seconds, None, key)

    def check_upload(self, user_id: str, tier: UserTier) -> RateLimitResult:
        return self.check(f"rate:upload:{user_id}", UPLOAD_LIMITS[tier], HOUR)

    def check_generation(self, user_id: str, tier: UserTier, provider: str) -> RateLimitResult:
        """
        User, provider and global windows in that order. The first window
        that refuses decides the result; later windows are not charged.
        """
        checks = (
            (f"rate:user:{user_id}", USER_LIMITS[tier], HOUR),
            (f"rate:provider:{provider}", PROVIDER_LIMITS.get(provider, DEFAULT_PROVIDER_LIMIT), MINUTE),
            ("rate:global", GLOBAL_LIMIT, MINUTE),
        )
        result = None
        for key, limit, window in checks:
            result = self.check(key, limit, window)
            if not result.allowed:
                return result
        return result
