"""Cost cache gateway -- Redis-backed aggregate cost totals."""

from costsync.cache.client import CostCache
from costsync.cache.redis_cache import RedisCostCache, cache_key

__all__ = ["CostCache", "RedisCostCache", "cache_key"]
