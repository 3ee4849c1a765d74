from __future__ import annotations

"""
Exact-match response caching for the /query endpoint.

Two interchangeable backends satisfy the same ``ExactCache`` contract:

- ``InMemoryResponseCache``: process-local LRU with per-entry TTL
- ``RedisResponseCache``: shared store via ``redis.asyncio`` (SETEX + key prefix)

Cache key: rag:query:<namespace|default>:<mode>:<topK>:<sha256(trim+lowercase query)>
"""

import hashlib
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, Optional, Protocol

import orjson
from loguru import logger

from ragserve.metrics import cache_size

KEY_PREFIX = "rag:query"


def normalize_query(query: str) -> str:
    """Normalization applied before keying: trim + lowercase."""
    return query.strip().lower()


def make_cache_key(query: str, top_k: int, mode: str, namespace: Optional[str] = None) -> str:
    """
    Create deterministic cache key from query parameters.

    Args:
        query: Raw query text (normalized here)
        top_k: Number of passages requested
        mode: answer or retrieval
        namespace: Tenant namespace; keys never collide across tenants

    Returns:
        Key string safe for any key-value backend
    """
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:{namespace or 'default'}:{mode}:{int(top_k)}:{digest}"


class ExactCache(Protocol):
    """Key-value store of serialized responses."""

    backend: str

    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...

    def stats(self) -> Dict[str, Any]: ...


class CacheEntry:
    """Single cached response with TTL."""

    __slots__ = ("data", "created_at", "ttl")

    def __init__(self, data: Dict[str, Any], ttl: int, now: float):
        self.data = data
        self.created_at = now
        self.ttl = ttl

    def is_expired(self, now: float) -> bool:
        return (now - self.created_at) > self.ttl


class InMemoryResponseCache:
    """
    LRU cache for API responses with TTL-based expiration.

    Thread-safe with lock-based synchronization. The async methods never
    suspend, so a check-then-write on one key is atomic with respect to other
    request tasks.
    """

    backend = "memory"

    def __init__(self, max_size: int = 1000, default_ttl: int = 3600, clock=time.monotonic):
        """
        Initialize cache.

        Args:
            max_size: Maximum number of entries before LRU eviction
            default_ttl: Default time-to-live in seconds
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = Lock()
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            # Opportunistic cleanup: purge expired entries every 100 accesses
            if (self.hits + self.misses) % 100 == 0:
                self._cleanup_expired(now)

            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if entry.is_expired(now):
                del self._entries[key]
                self.expirations += 1
                self.misses += 1
                logger.debug(f"Cache hit but expired: {key}")
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return entry.data

    def _cleanup_expired(self, now: float) -> None:
        expired_keys = [k for k, v in self._entries.items() if v.is_expired(now)]
        for key in expired_keys:
            del self._entries[key]
        if expired_keys:
            self.expirations += len(expired_keys)
            logger.debug(f"Cache cleanup: removed {len(expired_keys)} expired entries")

    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        ttl = ttl or self.default_ttl
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(value, ttl=ttl, now=now)
            self._entries.move_to_end(key)

            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
            cache_size.labels(backend=self.backend).set(len(self._entries))

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            cache_size.labels(backend=self.backend).set(0)
        logger.info("Response cache cleared")

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            hit_rate = (self.hits / total * 100) if total > 0 else 0.0
            return {
                "backend": self.backend,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate_pct": round(hit_rate, 2),
                "size": len(self._entries),
                "capacity": self.max_size,
                "evictions": self.evictions,
                "expirations": self.expirations,
                "default_ttl": self.default_ttl,
            }

    def __repr__(self) -> str:
        return f"InMemoryResponseCache(size={len(self._entries)}/{self.max_size})"


class RedisResponseCache:
    """
    Redis-backed exact cache shared by every instance of the service.

    Errors are not handled here; callers wrap each call as best-effort so a
    Redis outage degrades to cache misses.
    """

    backend = "redis"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: str = "ragserve",
        default_ttl: int = 3600,
        client: Any = None,
    ):
        self.prefix = prefix
        self.default_ttl = default_ttl
        if client is None:
            import redis.asyncio as redis_asyncio

            client = redis_asyncio.from_url(
                redis_url,
                decode_responses=False,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            safe_url = redis_url.split("@")[-1] if redis_url and "@" in redis_url else redis_url
            logger.info(f"Redis response cache configured: {safe_url}")
        self._redis = client
        self.hits = 0
        self.misses = 0

    @property
    def client(self) -> Any:
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(self._make_key(key))
        if raw is None:
            self.misses += 1
            return None
        self.hits += 1
        return orjson.loads(raw)

    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> None:
        await self._redis.setex(self._make_key(key), int(ttl or self.default_ttl), orjson.dumps(value))

    async def clear(self) -> None:
        deleted = 0
        async for k in self._redis.scan_iter(match=f"{self.prefix}:{KEY_PREFIX}:*"):
            await self._redis.delete(k)
            deleted += 1
        logger.info(f"Redis response cache cleared ({deleted} keys)")

    async def close(self) -> None:
        await self._redis.aclose()

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "backend": self.backend,
            "prefix": self.prefix,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": round((self.hits / total * 100) if total else 0.0, 2),
            "default_ttl": self.default_ttl,
        }
