"""
Two-tier response cache as an ordered chain of layers.

Reads walk the layers in order (semantic first, then exact) and stop at the
first hit. Writes fan out to every layer. Each layer call is best-effort and
metered by backend, so a broken layer reads as a miss and a failed write is
only logged.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from ragserve.best_effort import run_best_effort
from ragserve.cache import ExactCache, make_cache_key
from ragserve.logging_config import log_cache_event
from ragserve.metrics import track_cache_operation, track_cache_write
from ragserve.semantic_cache import SemanticCache, make_scope

_FAILED = object()


@dataclass(frozen=True)
class CacheRequest:
    query: str
    top_k: int
    mode: str
    namespace: Optional[str] = None

    @property
    def key(self) -> str:
        return make_cache_key(self.query, self.top_k, self.mode, self.namespace)

    @property
    def scope(self) -> str:
        return make_scope(self.namespace, self.mode, self.top_k)


@dataclass(frozen=True)
class CacheHit:
    value: Dict[str, Any]
    backend: str


class CacheLayer(Protocol):
    backend: str

    async def read(self, req: CacheRequest) -> Optional[Dict[str, Any]]: ...

    async def write(self, req: CacheRequest, value: Dict[str, Any]) -> None: ...

    def stats(self) -> Dict[str, Any]: ...


class ExactLayer:
    def __init__(self, cache: ExactCache, ttl: Optional[int] = None):
        self.cache = cache
        self.ttl = ttl
        self.backend = cache.backend

    async def read(self, req: CacheRequest) -> Optional[Dict[str, Any]]:
        return await self.cache.get(req.key)

    async def write(self, req: CacheRequest, value: Dict[str, Any]) -> None:
        await self.cache.set(req.key, value, self.ttl)

    def stats(self) -> Dict[str, Any]:
        return self.cache.stats()


class SemanticLayer:
    backend = "semantic"

    def __init__(self, cache: SemanticCache):
        self.cache = cache

    async def read(self, req: CacheRequest) -> Optional[Dict[str, Any]]:
        return await self.cache.get(req.query, req.scope)

    async def write(self, req: CacheRequest, value: Dict[str, Any]) -> None:
        await self.cache.set(req.query, value, req.scope)

    def stats(self) -> Dict[str, Any]:
        return self.cache.stats()


class TieredResponseCache:
    def __init__(self, layers: List[CacheLayer]):
        self.layers = list(layers)

    @classmethod
    def build(
        cls,
        exact: Optional[ExactCache] = None,
        semantic: Optional[SemanticCache] = None,
        exact_ttl: Optional[int] = None,
    ) -> "TieredResponseCache":
        layers: List[CacheLayer] = []
        if semantic is not None:
            layers.append(SemanticLayer(semantic))
        if exact is not None:
            layers.append(ExactLayer(exact, exact_ttl))
        return cls(layers)

    async def lookup(self, req: CacheRequest, request_id: Optional[str] = None) -> Optional[CacheHit]:
        for layer in self.layers:
            started = time.perf_counter()
            value = await run_best_effort(layer.read(req), f"cache_get_{layer.backend}", None, request_id)
            elapsed = time.perf_counter() - started
            hit = value is not None
            track_cache_operation(layer.backend, "get", hit, elapsed)
            log_cache_event(layer.backend, "get", hit, elapsed * 1000)
            if hit:
                return CacheHit(value=value, backend=layer.backend)
        return None

    async def store(self, req: CacheRequest, value: Dict[str, Any], request_id: Optional[str] = None) -> Dict[str, bool]:
        """Write to every layer; returns backend -> success."""
        results: Dict[str, bool] = {}
        for layer in self.layers:
            started = time.perf_counter()
            outcome = await run_best_effort(
                _write(layer, req, value), f"cache_set_{layer.backend}", _FAILED, request_id
            )
            elapsed = time.perf_counter() - started
            ok = outcome is not _FAILED
            track_cache_operation(layer.backend, "set", None, elapsed)
            track_cache_write(layer.backend, ok)
            log_cache_event(layer.backend, "set", None, elapsed * 1000)
            results[layer.backend] = ok
        return results

    @property
    def semantic(self) -> Optional[SemanticCache]:
        for layer in self.layers:
            if isinstance(layer, SemanticLayer):
                return layer.cache
        return None

    def stats(self) -> Dict[str, Any]:
        return {layer.backend: layer.stats() for layer in self.layers}

    async def clear(self) -> None:
        for layer in self.layers:
            inner = getattr(layer, "cache", None)
            if inner is not None:
                await run_best_effort(inner.clear(), f"cache_clear_{layer.backend}")

    async def close(self) -> None:
        for layer in self.layers:
            inner = getattr(layer, "cache", None)
            closer = getattr(inner, "close", None)
            if closer is not None:
                await run_best_effort(closer(), f"cache_close_{layer.backend}")


async def _write(layer: CacheLayer, req: CacheRequest, value: Dict[str, Any]) -> bool:
    await layer.write(req, value)
    return True
