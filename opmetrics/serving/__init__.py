"""
Serving Module
"""
from .cache import init_redis, close_redis, get_redis, redis_available, rates_cache, CacheManager

__all__ = [
    "init_redis",
    "close_redis",
    "get_redis",
    "redis_available",
    "rates_cache",
    "CacheManager",
]
