"""
Shared Redis Cache

Holds values every worker process should agree on, currently the live
exchange-rate set. Metrics snapshots are stored in the relational store,
not here. Redis is optional: when it is not initialized each worker keeps
its own in-process rates.
"""

import json
from typing import Any, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis

from opmetrics.config import get_settings

logger = structlog.get_logger(__name__)

_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Open the pool and verify the server answers; raises if it does not."""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )
    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
    except Exception as e:
        logger.error("Redis ping failed", host=settings.redis.host, error=str(e))
        await close_redis()
        raise

    logger.info("Shared rate cache connected", host=settings.redis.host)
    return _redis_client


async def close_redis() -> None:
    global _redis_pool, _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None


def get_redis() -> Redis:
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


class CacheManager:
    """
    JSON values under a key namespace.

    Example:
        cache = CacheManager("fx", default_ttl=900)
        await cache.set("latest:BRL", {"rates": {"EUR": "6.37"}})
        payload = await cache.get("latest:BRL")

    Both calls raise RuntimeError when Redis was never initialized and
    RedisError when the server fails; callers decide whether that matters.
    """

    def __init__(self, namespace: str, default_ttl: int = 3600):
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await get_redis().get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable cache entry", key=self._key(key))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        # Decimals are written as strings so no precision is lost in transit
        payload = json.dumps(value, default=str)
        await get_redis().setex(self._key(key), ttl or self.default_ttl, payload)


# Live exchange rates, shared across workers
rates_cache = CacheManager("fx", default_ttl=900)
