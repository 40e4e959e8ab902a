"""Database bootstrap helpers shared by all services."""

import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from creditflow.common.config import settings
from creditflow.common.errors import DependencyError
from creditflow.common.logging import logger
from creditflow.common.metrics import retries_total


T = TypeVar("T")

# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# JSONB on postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def run_with_retry(operation: Callable[[], T], dependency: str = "postgres") -> T:
    """Run `operation`, retrying transient store failures with exponential backoff.

    Non-transient errors propagate untouched. When all attempts fail a
    `DependencyError` is raised so callers can surface an unavailable store.
    """

    attempts = max(1, settings.store_retry_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except DBAPIError as exc:
            if not _is_transient(exc):
                raise
            if attempt == attempts:
                logger.error("store_retry_exhausted dependency=%s attempts=%s error=%s", dependency, attempts, exc)
                raise DependencyError(f"{dependency} unavailable after {attempts} attempts") from exc
            retries_total.labels(service=settings.service_name, dependency=dependency).inc()
            backoff_seconds = settings.store_retry_base_delay_seconds * (2 ** (attempt - 1))
            logger.warning(
                "store_retry dependency=%s attempt=%s/%s backoff_s=%s error=%s",
                dependency,
                attempt,
                attempts,
                backoff_seconds,
                exc,
            )
            time.sleep(backoff_seconds)
    raise AssertionError("unreachable")
