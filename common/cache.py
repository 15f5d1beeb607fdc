# common/cache.py
import json
import logging
import os
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.

    Caching is best-effort: when Redis is not reachable every helper in
    this module becomes a no-op and callers fall back to the database.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except redis.RedisError as exc:
        logger.warning(f"Redis unavailable at {redis_url}, caching disabled: {exc}")
        _redis_client = None
        return None

    _redis_client = client
    return _redis_client


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError:
        logger.warning(f"Cache read failed for {key}")
        return None
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.setex(key, ttl_seconds, json.dumps(value, default=str))
    except redis.RedisError:
        logger.warning(f"Cache write failed for {key}")


def delete_prefix(prefix: str) -> None:
    """
    Delete all keys starting with prefix.

    Example: prefix='availability:3:2025-04-07' or 'rooms:'.
    """
    client = get_redis_client()
    if client is None:
        return

    pattern = prefix + "*"
    try:
        for k in client.scan_iter(pattern):
            client.delete(k)
    except redis.RedisError:
        logger.warning(f"Cache invalidation failed for prefix {prefix}")


def get_version(key: str) -> Optional[int]:
    """
    Current value of a version counter, 0 if it was never bumped.

    Returns None when Redis is unavailable, meaning "do not cache".
    """
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError:
        logger.warning(f"Version read failed for {key}")
        return None
    return int(raw) if raw is not None else 0


def bump_version(key: str) -> None:
    """Advance a version counter so entries cached under older versions are never read again."""
    client = get_redis_client()
    if client is None:
        return

    try:
        client.incr(key)
    except redis.RedisError:
        logger.warning(f"Version bump failed for {key}")
