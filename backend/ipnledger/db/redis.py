"""Redis client for tagged caching and short-lived customer hints"""
import redis
import redis.asyncio as aioredis
import logging
from typing import Optional
from ipnledger.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None
_async_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Get or create async Redis client (lazy initialization)

    Automatically recreates the client if it's tied to a different event loop,
    which can happen when tests create new event loops.
    """
    global _async_client
    import asyncio

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client


# Key prefixes
CACHE_TAG_PREFIX = "cache_tag:"
PROVIDER_PREFERENCE_PREFIX = "customer_latest_payment_provider_"


def cache_tag(cache_key: str, user_id: Optional[int]) -> str:
    """Tag name for a model cache key scoped to an owning user.

    The owner id is passed explicitly; an unknown owner yields the bare
    "{cache_key}_" tag that readers fall back to.
    """
    return f"{cache_key}_{user_id if user_id is not None else ''}"


def flush_tag(tag: str) -> int:
    """Delete every cache entry registered under a tag.

    Returns the number of entries removed.
    """
    client = get_redis_client()
    tag_key = f"{CACHE_TAG_PREFIX}{tag}"
    keys = list(client.smembers(tag_key))
    removed = 0
    if keys:
        removed = client.delete(*keys)
    client.delete(tag_key)
    logger.debug(f"Flushed cache tag {tag} ({removed} entries)")
    return removed


def set_latest_payment_provider(customer_id: int, provider: str, ttl: Optional[int] = None) -> None:
    """Remember which provider the customer last paid with"""
    key = f"{PROVIDER_PREFERENCE_PREFIX}{customer_id}"
    get_redis_client().setex(key, ttl or settings.PROVIDER_PREFERENCE_TTL, provider)
