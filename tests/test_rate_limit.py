"""Token bucket limiter in front of the ledger API."""

import pytest
import redis
from fastapi import HTTPException

from creditflow.common.rate_limit import TokenBucketLimiter


class _HashStore:
    """Just enough of the redis hash API for the limiter."""

    def __init__(self) -> None:
        self.data: dict[str, dict] = {}

    def hmget(self, key, *fields):
        row = self.data.get(key, {})
        return [row.get(field) for field in fields]

    def hset(self, key, mapping):
        self.data.setdefault(key, {}).update(mapping)

    def expire(self, key, seconds):
        return True


class _Down:
    def hmget(self, key, *fields):
        raise redis.ConnectionError("connection refused")


def test_bucket_allows_capacity_then_rejects():
    limiter = TokenBucketLimiter(_HashStore(), limit_per_minute=3)

    for _ in range(3):
        limiter.check("10.0.0.1")
    with pytest.raises(HTTPException) as exc:
        limiter.check("10.0.0.1")

    assert exc.value.status_code == 429
    limiter.check("10.0.0.2")


def test_limiter_outage_does_not_block_requests():
    TokenBucketLimiter(_Down(), limit_per_minute=1).check("10.0.0.1")


class _ReadOnly(_HashStore):
    def hset(self, key, mapping):
        raise redis.ConnectionError("connection reset")


def test_limiter_write_failure_does_not_block_requests():
    limiter = TokenBucketLimiter(_ReadOnly(), limit_per_minute=1)

    limiter.check("10.0.0.1")
    limiter.check("10.0.0.1")
