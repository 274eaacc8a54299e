"""
Result cache abstraction.

Callers receive a ``ResultCache`` instance and never touch a module-level
cache directly. Keys are built with ``make_cache_key`` (tenant and
connection prefix + SHA-256 of the parameters); values are stored as
``{"timestamp": ms, "payload": ...}`` and evicted by TTL.
"""
import hashlib
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import redis.asyncio as redis
import structlog

from services.config import settings

logger = structlog.get_logger()

CACHE_NAMESPACE = "result:"


def connection_cache_prefix(tenant_id: str, connection_id: str) -> str:
    return f"{CACHE_NAMESPACE}{tenant_id}:{connection_id}:"


def make_cache_key(tenant_id: str, connection_id: str, **params: Any) -> str:
    digest = hashlib.sha256(json.dumps(params, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"{connection_cache_prefix(tenant_id, connection_id)}{digest}"


class ResultCache(ABC):
    def __init__(self, ttl_seconds: int = None):
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.CACHE_TTL_SECONDS

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Returns ``{"timestamp", "payload"}`` or None when missing/expired."""

    @abstractmethod
    async def set(self, key: str, payload: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def invalidate(self, prefix: str = CACHE_NAMESPACE) -> int:
        """Drop every entry whose key starts with ``prefix``. Returns the count."""

    async def connect(self):
        pass

    async def close(self):
        pass


class InMemoryResultCache(ResultCache):
    def __init__(self, ttl_seconds: int = None, clock=time.time):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry["expires_at"] <= self._clock():
            del self._entries[key]
            return None
        return {"timestamp": entry["timestamp"], "payload": entry["payload"]}

    async def set(self, key: str, payload: Any, ttl: Optional[int] = None) -> None:
        now = self._clock()
        self._entries[key] = {
            "timestamp": int(now * 1000),
            "payload": payload,
            "expires_at": now + (ttl or self.ttl),
        }

    async def invalidate(self, prefix: str = CACHE_NAMESPACE) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info("Result cache invalidated", prefix=prefix, count=len(keys))
        return len(keys)


class RedisResultCache(ResultCache):
    """
    Redis-backed cache. If Redis cannot be reached the cache disables
    itself and every call becomes a miss.
    """

    def __init__(self, url: str = None, ttl_seconds: int = None):
        super().__init__(ttl_seconds)
        self.url = url or settings.REDIS_URL
        self.redis_client: Optional[redis.Redis] = None
        self.enabled = True

    async def connect(self):
        try:
            self.redis_client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
            await self.redis_client.ping()
            logger.info("Redis cache connected", url=self.url)
        except Exception as e:
            logger.warning("Redis connection failed, caching disabled", error=str(e))
            self.enabled = False
            self.redis_client = None

    async def close(self):
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis cache disconnected")

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        if not self.enabled or not self.redis_client:
            return None
        try:
            cached = await self.redis_client.get(key)
            if cached:
                logger.debug("Result cache hit", key=key)
                return json.loads(cached)
            return None
        except Exception as e:
            logger.warning("Result cache get failed", error=str(e))
            return None

    async def set(self, key: str, payload: Any, ttl: Optional[int] = None) -> None:
        if not self.enabled or not self.redis_client:
            return
        try:
            value = json.dumps({"timestamp": int(time.time() * 1000), "payload": payload}, default=str)
            await self.redis_client.setex(key, ttl or self.ttl, value)
        except Exception as e:
            logger.warning("Result cache set failed", error=str(e))

    async def invalidate(self, prefix: str = CACHE_NAMESPACE) -> int:
        if not self.enabled or not self.redis_client:
            return 0
        try:
            count = 0
            async for key in self.redis_client.scan_iter(match=f"{prefix}*", count=500):
                await self.redis_client.delete(key)
                count += 1
            logger.info("Result cache invalidated", prefix=prefix, count=count)
            return count
        except Exception as e:
            logger.warning("Result cache invalidation failed", error=str(e))
            return 0


def build_result_cache() -> ResultCache:
    if settings.REDIS_ENABLED:
        return RedisResultCache()
    return InMemoryResultCache()
