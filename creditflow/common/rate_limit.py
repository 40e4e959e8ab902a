"""Redis token bucket guarding the administrative and read APIs.

Webhook endpoints are not limited; providers retry on rejection.
"""

from time import time

import redis
from fastapi import HTTPException

from creditflow.common.config import settings
from creditflow.common.logging import logger


class TokenBucketLimiter:
    """Per-client token bucket (capacity = refill rate = limit per minute)."""

    def __init__(self, rdb: redis.Redis, limit_per_minute: int) -> None:
        self.rdb = rdb
        self.capacity = float(limit_per_minute)
        self.refill_per_sec = self.capacity / 60.0

    def check(self, client_key: str) -> None:
        key = f"tokenbucket:{client_key}"
        now = time()
        try:
            values = self.rdb.hmget(key, "tokens", "updated_at")
        except redis.RedisError as exc:
            # Fail open while redis is unavailable.
            logger.warning("rate_limit_unavailable error=%s", exc)
            return
        tokens = float(values[0]) if values[0] is not None else self.capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(self.capacity, tokens + elapsed * self.refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        try:
            self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
            self.rdb.expire(key, 120)
        except redis.RedisError as exc:
            logger.warning("rate_limit_unavailable error=%s", exc)
            return
        if not allowed:
            raise HTTPException(status_code=429, detail="rate limit exceeded")


def build_limiter() -> TokenBucketLimiter:
    rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return TokenBucketLimiter(rdb, settings.rate_limit_per_minute)
