"""
Redis coordination layer

Provides short-lived markers used to coordinate concurrent requests
(e.g. idempotency claims). Includes graceful degradation if Redis is unavailable.
"""
import logging
from typing import Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        # Test connection
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Request coordination disabled.")
        _redis_client = None
        return None


def cache_key(prefix: str, *args, **kwargs) -> str:
    """Generate cache key from prefix and arguments."""
    key_parts = [prefix]

    # Add args (skip None values)
    for arg in args:
        if arg is not None:
            key_parts.append(str(arg))

    # Add kwargs (sorted for consistency, skip None values)
    for k, v in sorted(kwargs.items()):
        if v is not None:
            key_parts.append(f"{k}:{v}")

    return ":".join(key_parts)


def acquire_marker(key: str, ttl: int) -> Optional[bool]:
    """
    Atomically claim a marker key (SET NX EX).

    Returns:
        True if the marker was claimed, False if someone else holds it,
        None if Redis is unavailable (caller decides whether to fail open).
    """
    client = get_redis_client()
    if not client:
        return None

    try:
        return bool(client.set(key, "1", nx=True, ex=ttl))
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Marker acquire error for key {key}: {e}")
        return None


def release_marker(key: str) -> bool:
    """Release a marker. Returns True if successful, False otherwise."""
    client = get_redis_client()
    if not client:
        return False

    try:
        client.delete(key)
        return True
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Marker release error for key {key}: {e}")
        return False
