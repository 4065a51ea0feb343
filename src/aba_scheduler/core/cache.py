"""
Caching layer for continuity scores and other frequently recomputed data
"""

import asyncio
import fnmatch
import logging
import pickle
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import redis

from ..config import Settings, get_settings
from ..models import ContinuityScore

logger = logging.getLogger(__name__)


class CacheManager:
    """Manages an in-memory cache with an optional Redis backend"""

    def __init__(self, settings: Optional[Settings] = None, redis_client: Optional[redis.Redis] = None):
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.memory_cache = {}
        self.cache_timestamps = {}
        self.cache_ttls = {}
        self.cache_stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "errors": 0,
        }

        if self.redis_client is None and self.settings.use_redis:
            self._initialize_redis()
        logger.info(
            f"Cache manager initialized (Redis: {'available' if self.redis_client else 'unavailable'})"
        )

    def _initialize_redis(self):
        """Initialize Redis connection"""
        try:
            self.redis_client = redis.Redis(
                host=self.settings.redis_host,
                port=self.settings.redis_port,
                db=self.settings.redis_db,
                password=self.settings.redis_password or None,
                decode_responses=False,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                max_connections=20,
            )

            # Test connection
            self.redis_client.ping()
            logger.info(
                f"Redis connected successfully to {self.settings.redis_host}:{self.settings.redis_port}"
            )

        except redis.RedisError as e:
            logger.warning(
                f"Redis connection failed: {str(e)}. Using in-memory cache only."
            )
            self.redis_client = None

    async def _run_redis(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    async def get(self, key: str) -> Any | None:
        """Get cached value"""

        try:
            if self.redis_client:
                cached_data = await self._redis_get(key)
                if cached_data is not None:
                    self.cache_stats["hits"] += 1
                    return cached_data

            if key in self.memory_cache:
                if not self._is_expired(key):
                    self.cache_stats["hits"] += 1
                    return self.memory_cache[key]
                self._remove_from_memory_cache(key)

            self.cache_stats["misses"] += 1
            return None

        except Exception as e:
            logger.error(f"Cache get error for key {key}: {str(e)}")
            self.cache_stats["errors"] += 1
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Set cached value"""

        if ttl is None:
            ttl = self.settings.cache_ttl

        try:
            success = False

            if self.redis_client:
                success = await self._redis_set(key, value, ttl)

            # Always store in memory cache as backup
            self._set_in_memory_cache(key, value, ttl)

            if success or not self.redis_client:
                self.cache_stats["sets"] += 1
                return True

            return False

        except Exception as e:
            logger.error(f"Cache set error for key {key}: {str(e)}")
            self.cache_stats["errors"] += 1
            return False

    async def delete(self, key: str) -> bool:
        """Delete cached value"""

        success = True

        if self.redis_client:
            try:
                await self._run_redis(self.redis_client.delete, key)
            except redis.RedisError as e:
                logger.warning(f"Redis delete failed for key {key}: {e}")
                success = False

        self._remove_from_memory_cache(key)

        if success:
            self.cache_stats["deletes"] += 1

        return success

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, returning how many were removed"""

        keys = await self.get_keys_by_pattern(pattern)
        deleted = 0
        for key in keys:
            if await self.delete(key):
                deleted += 1
        return deleted

    async def clear(self) -> bool:
        """Clear all cached values"""

        if self.redis_client:
            try:
                await self._run_redis(self.redis_client.flushdb)
            except redis.RedisError as e:
                logger.warning(f"Redis clear failed: {e}")

        self.memory_cache.clear()
        self.cache_timestamps.clear()
        self.cache_ttls.clear()

        logger.info("Cache cleared successfully")
        return True

    async def get_keys_by_pattern(self, pattern: str) -> list[str]:
        """Get keys matching a pattern"""

        keys = []

        if self.redis_client:
            try:
                redis_keys = await self._run_redis(self.redis_client.keys, pattern)
                keys.extend(
                    key.decode() if isinstance(key, bytes) else key
                    for key in redis_keys
                )
            except redis.RedisError as e:
                logger.warning(f"Redis keys lookup failed for pattern {pattern}: {e}")

        keys.extend(key for key in self.memory_cache if fnmatch.fnmatch(key, pattern))

        return sorted(set(keys))

    async def get_stats(self) -> dict[str, Any]:
        """Get cache statistics"""

        stats = self.cache_stats.copy()
        stats["memory_cache_size"] = len(self.memory_cache)
        stats["redis_available"] = self.redis_client is not None

        if self.redis_client:
            try:
                redis_info = await self._run_redis(self.redis_client.info)
                stats["redis_memory_usage"] = redis_info.get("used_memory_human", "unknown")
                stats["redis_keyspace_hits"] = redis_info.get("keyspace_hits", 0)
                stats["redis_keyspace_misses"] = redis_info.get("keyspace_misses", 0)
            except redis.RedisError as e:
                logger.warning(f"Failed to get Redis stats: {e}")

        return stats

    # Redis-specific operations
    async def _redis_get(self, key: str) -> Any | None:
        try:
            cached_data = await self._run_redis(self.redis_client.get, key)
            if cached_data:
                return pickle.loads(cached_data)
            return None

        except redis.RedisError as e:
            logger.warning(f"Redis get failed for key {key}: {e}")
            return None

    async def _redis_set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            serialized_data = pickle.dumps(value)
            result = await self._run_redis(self.redis_client.setex, key, ttl, serialized_data)
            return bool(result)

        except redis.RedisError as e:
            logger.warning(f"Redis set failed for key {key}: {e}")
            return False

    # Memory cache operations
    def _is_expired(self, key: str) -> bool:
        timestamp = self.cache_timestamps.get(key, 0)
        ttl = self.cache_ttls.get(key, self.settings.cache_ttl)
        return datetime.now().timestamp() - timestamp >= ttl

    def _set_in_memory_cache(self, key: str, value: Any, ttl: int):
        self.memory_cache[key] = value
        self.cache_timestamps[key] = datetime.now().timestamp()
        self.cache_ttls[key] = ttl
        self._cleanup_memory_cache()

    def _remove_from_memory_cache(self, key: str):
        self.memory_cache.pop(key, None)
        self.cache_timestamps.pop(key, None)
        self.cache_ttls.pop(key, None)

    def _cleanup_memory_cache(self):
        """Drop expired entries once the cache grows"""

        if len(self.memory_cache) < 100:
            return

        expired_keys = [key for key in list(self.memory_cache) if self._is_expired(key)]
        for key in expired_keys:
            self._remove_from_memory_cache(key)

        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} expired cache entries")


class ContinuityCache:
    """Continuity score cache keyed by client, caregiver and reference time"""

    def __init__(self, cache_manager: CacheManager):
        self.cache = cache_manager

    @staticmethod
    def _key(client_id: str, rbt_id: str, reference_date: datetime) -> str:
        return f"continuity:{client_id}:{rbt_id}:{reference_date.isoformat()}"

    async def get_or_compute(
        self,
        client_id: str,
        rbt_id: str,
        reference_date: datetime,
        compute: Callable[[], Awaitable[ContinuityScore]]
    ) -> ContinuityScore:
        key = self._key(client_id, rbt_id, reference_date)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        score = await compute()
        await self.cache.set(key, score)
        return score

    async def invalidate_client(self, client_id: str) -> int:
        """Drop every cached score involving the client"""
        return await self.cache.delete_pattern(f"continuity:{client_id}:*")
