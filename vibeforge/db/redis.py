"""Shared Redis connection pool and store-level retry policy."""

import redis.asyncio as redis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vibeforge.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None

# Bounded retry for store I/O against a flaky connection. Callers translate the
# final RedisError into their own PersistenceError subclass.
store_retry = retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "redis_io_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)


async def init_redis(url: str | None = None) -> None:
    """Initialize the shared Redis connection pool."""
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    _redis = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )

    # Verify connectivity
    await _redis.ping()


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
