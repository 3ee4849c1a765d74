#!/usr/bin/env python3
"""
Semantic response cache.

Stores previous responses as vectors in a dedicated namespace of the vector
store, keyed by the query embedding. A lookup returns the single nearest
entry when its similarity reaches the threshold and it is younger than the
TTL.

Entries carry metadata:
    cachedResponse  serialized response (JSON text)
    timestamp       ISO-8601 UTC creation time
    ttlSeconds      TTL in force when written
    scope           tenant namespace + mode + topK; applied as a query filter
                    so one tenant is never served another tenant's response

Errors propagate; ``TieredResponseCache`` runs every call best-effort.
"""

import asyncio
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import orjson
from loguru import logger

from ragserve.embeddings import Embedder
from ragserve.vector_store import VectorRecord, VectorStore


def make_scope(namespace: Optional[str], mode: str, top_k: int) -> str:
    return f"{namespace or 'default'}|{mode}|{int(top_k)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SemanticCache:
    backend = "semantic"

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        namespace: str = "semantic-cache",
        threshold: float = 0.92,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            embedder: Embedding capability (shared with the retriever)
            store: Vector store holding the cache namespace
            namespace: Dedicated namespace for cache vectors
            threshold: Minimum cosine similarity for a hit, in [0, 1]
            ttl_seconds: Maximum entry age; <= 0 disables expiry
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be in [0, 1]")
        self.embedder = embedder
        self.store = store
        self.namespace = namespace
        self.threshold = threshold
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.expirations = 0
        self.writes = 0
        logger.info(
            f"Initialized SemanticCache (namespace={namespace}, threshold={threshold}, ttl={ttl_seconds}s)"
        )

    def _age_seconds(self, timestamp: Any, now: datetime) -> Optional[float]:
        if not isinstance(timestamp, str):
            return None
        try:
            created = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds()

    async def get(self, query: str, scope: str) -> Optional[Dict[str, Any]]:
        """Nearest cached response for ``query`` within ``scope``, or None."""
        vector = await self.embedder.embed(query)
        matches = await self.store.query(
            vector, top_k=1, namespace=self.namespace, filter={"scope": scope}, include_metadata=True
        )
        if not matches or matches[0].score < self.threshold:
            self.misses += 1
            logger.debug(f"Semantic cache miss (scope={scope}, threshold={self.threshold})")
            return None

        match = matches[0]
        cached = match.metadata.get("cachedResponse")
        if not isinstance(cached, str):
            self.misses += 1
            return None

        if self.ttl_seconds > 0:
            age = self._age_seconds(match.metadata.get("timestamp"), self._clock())
            if age is None or age > self.ttl_seconds:
                self.expirations += 1
                self.misses += 1
                logger.debug(f"Semantic cache entry expired: id={match.id} age={age} ttl={self.ttl_seconds}")
                await self.store.delete([match.id], namespace=self.namespace)
                return None

        self.hits += 1
        logger.info(f"Semantic cache hit: similarity={match.score:.4f} scope={scope}")
        return orjson.loads(cached)

    async def set(self, query: str, value: Dict[str, Any], scope: str) -> str:
        """Upsert the response under the query embedding. Returns the entry id."""
        vector = await self.embedder.embed(query)
        entry_id = f"semantic:{int(time.time() * 1000)}:{secrets.token_hex(4)}"
        await self.store.upsert(
            [
                VectorRecord(
                    id=entry_id,
                    values=vector,
                    metadata={
                        "cachedResponse": orjson.dumps(value).decode("utf-8"),
                        "timestamp": self._clock().isoformat(),
                        "ttlSeconds": self.ttl_seconds,
                        "scope": scope,
                    },
                )
            ],
            namespace=self.namespace,
        )
        self.writes += 1
        logger.debug(f"Semantic cache upserted: id={entry_id} scope={scope}")
        return entry_id

    async def sweep(self) -> int:
        """Delete every entry past the TTL or without a readable timestamp. Returns entries removed."""
        if self.ttl_seconds <= 0:
            return 0
        now = self._clock()
        expired = []
        for entry_id, meta in await self.store.scan(self.namespace):
            age = self._age_seconds(meta.get("timestamp"), now)
            if age is None or age > self.ttl_seconds:
                expired.append(entry_id)
        if expired:
            await self.store.delete(expired, namespace=self.namespace)
            self.expirations += len(expired)
            logger.info(f"Semantic cache sweep removed {len(expired)} expired entries")
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Background task body: sweep expired entries until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning(f"Semantic cache sweep failed: {e}")

    async def clear(self) -> None:
        await self.store.delete_namespace(self.namespace)
        logger.info(f"Semantic cache namespace '{self.namespace}' cleared")

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "backend": self.backend,
            "namespace": self.namespace,
            "threshold": self.threshold,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "writes": self.writes,
            "hit_rate_pct": round((self.hits / total * 100) if total else 0.0, 2),
        }
