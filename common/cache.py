# common/cache.py
import json
import logging
import os
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

# Key prefixes for cached read models; writers invalidate them on commit.
AVAILABLE_BEDS_PREFIX = "beds:available:"
REPORTS_PREFIX = "reports:"
VIEWS_GENERATION_KEY = "allocation:views:generation"

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.
    Fails gracefully (no caching) if Redis is not reachable.
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
        logger.warning("Redis unavailable, caching disabled: %s", exc)
        _redis_client = None
        return None

    _redis_client = client
    return _redis_client


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    raw = client.get(key)
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    client.setex(key, ttl_seconds, json.dumps(value, default=str))


def delete_prefix(prefix: str) -> None:
    """
    Delete all keys starting with prefix.
    Example: prefix='beds:available:' or 'reports:'.
    """
    client = get_redis_client()
    if client is None:
        return

    for k in client.scan_iter(prefix + "*"):
        client.delete(k)


def views_generation() -> int:
    """
    Current generation of the cached allocation views (0 without Redis).
    """
    client = get_redis_client()
    if client is None:
        return 0

    raw = client.get(VIEWS_GENERATION_KEY)
    return int(raw) if raw is not None else 0


def view_key(prefix: str, name: str) -> str:
    """
    Build a cache key tied to the current view generation.

    Read the key before computing the value: a value computed before a
    write commits then lands under a generation that readers no longer use.
    """
    return f"{prefix}g{views_generation()}:{name}"


def invalidate_allocation_views() -> None:
    """
    Drop cached bed listings and reports after a booking or payment write.
    """
    client = get_redis_client()
    if client is None:
        return

    client.incr(VIEWS_GENERATION_KEY)
    delete_prefix(AVAILABLE_BEDS_PREFIX)
    delete_prefix(REPORTS_PREFIX)
