# /app/services/cache_service.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional
import redis.asyncio as redis

from app.config.settings import settings
from app.utils.circuit_breaker import CircuitBreaker
from app.utils.metrics import cache_operations

# This service manages the Redis-backed coordination primitives: webhook
# de-duplication and the per-address lock that serializes inbound events
# for the same contact.

logger = logging.getLogger(__name__)

class CacheService:
    def __init__(self, redis_url: str):
        self._local_locks: Dict[str, asyncio.Lock] = {}
        self._local_lock_users: Dict[str, int] = {}
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker("redis")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None # Ensure redis is None if connection fails

    async def is_duplicate(self, key: str, ttl: int = 300) -> bool:
        """Marks `key` as seen. True when it had already been seen within `ttl` seconds."""
        if not self.redis: return False
        try:
            # set with nx=True returns None when the key already existed
            was_set = await self.circuit_breaker.call(self.redis.set, f"processed:{key}", "1", ex=ttl, nx=True)
            cache_operations.labels(operation="dedupe", status="duplicate" if not was_set else "new").inc()
            return not was_set
        except Exception as e:
            cache_operations.labels(operation="dedupe", status="error").inc()
            logger.warning(f"Dedupe check failed for key {key}: {e}")
            return False

    def _local_lock(self, name: str) -> asyncio.Lock:
        lock = self._local_locks.setdefault(name, asyncio.Lock())
        self._local_lock_users[name] = self._local_lock_users.get(name, 0) + 1
        return lock

    def _release_local_lock(self, name: str) -> None:
        """Drops the lock once nobody holds or waits on it."""
        users = self._local_lock_users.get(name, 1) - 1
        if users > 0:
            self._local_lock_users[name] = users
            return
        self._local_lock_users.pop(name, None)
        self._local_locks.pop(name, None)

    @asynccontextmanager
    async def address_lock(self, address: str, timeout: Optional[int] = None):
        """
        Serializes work for one channel address across workers.

        Falls back to an in-process lock when Redis is unavailable, which still
        serializes events handled by this worker.
        """
        name = f"lock:address:{address}"
        timeout = timeout or settings.address_lock_seconds
        redis_lock = None

        if self.redis:
            try:
                candidate = self.redis.lock(name, timeout=timeout, blocking_timeout=timeout)
                if await candidate.acquire():
                    redis_lock = candidate
                else:
                    logger.warning(f"Timed out waiting for Redis lock {name}; using local lock")
            except Exception as e:
                logger.warning(f"Redis lock unavailable for {name}: {e}; using local lock")

        if redis_lock is not None:
            try:
                yield
            finally:
                try:
                    await redis_lock.release()
                except Exception as e:
                    logger.warning(f"Failed to release Redis lock {name}: {e}")
            return

        lock = self._local_lock(name)
        try:
            async with lock:
                yield
        finally:
            self._release_local_lock(name)

# Globally accessible instance
cache_service = CacheService(settings.redis_url)
