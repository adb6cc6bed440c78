"""
Redis client utilities.

Provides a lazily initialized Redis client for the optional Redis snapshot
backend, avoiding import-time connections.
"""

import functools

import redis

from ledger_sync.settings import get_settings


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """
    Get Redis client (cached).

    Responses are decoded to str since snapshot values are JSON text.
    """
    return redis.from_url(get_settings().REDIS_URL, decode_responses=True)
