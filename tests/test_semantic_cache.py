"""Tests for the vector-similarity response cache."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from ragserve.embeddings import HashingEmbedder
from ragserve.semantic_cache import SemanticCache, make_scope
from ragserve.vector_store import InMemoryVectorStore, VectorRecord

DIM = 128
NS = "semantic-cache"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _cache(threshold: float = 0.92, ttl: int = 3600, clock=None):
    store = InMemoryVectorStore(DIM)
    cache = SemanticCache(
        HashingEmbedder(DIM), store, namespace=NS, threshold=threshold, ttl_seconds=ttl, clock=clock or FakeClock()
    )
    return cache, store


SCOPE = make_scope("acme", "answer", 5)


class TestSemanticCache:
    """Lookup by similarity, scope and age."""

    @pytest.mark.asyncio
    async def test_same_query_hits(self):
        """An identical query has similarity 1.0 and is served."""
        cache, _ = _cache()
        await cache.set("What is the lease termination notice?", {"answer": "sixty days"}, SCOPE)
        assert await cache.get("What is the lease termination notice?", SCOPE) == {"answer": "sixty days"}
        assert cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_reordered_words_hit(self):
        """Bag-of-words embeddings make word order irrelevant."""
        cache, _ = _cache()
        await cache.set("lease termination notice", {"answer": "a"}, SCOPE)
        assert await cache.get("notice termination lease", SCOPE) == {"answer": "a"}

    @pytest.mark.asyncio
    async def test_below_threshold_misses(self):
        """A different query scores under the threshold."""
        cache, _ = _cache()
        await cache.set("lease termination notice", {"answer": "a"}, SCOPE)
        assert await cache.get("warranty liability limits for equipment", SCOPE) is None
        assert cache.stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_scope_isolation(self):
        """A tenant never sees another tenant's cached response."""
        cache, _ = _cache()
        await cache.set("lease termination notice", {"answer": "acme"}, make_scope("acme", "answer", 5))
        assert await cache.get("lease termination notice", make_scope("globex", "answer", 5)) is None
        assert await cache.get("lease termination notice", make_scope("acme", "retrieval", 5)) is None
        assert await cache.get("lease termination notice", make_scope("acme", "answer", 3)) is None

    @pytest.mark.asyncio
    async def test_ttl_expiry_deletes_entry(self):
        """Entries older than the TTL are misses and are removed from the store."""
        clock = FakeClock()
        cache, store = _cache(ttl=60, clock=clock)
        await cache.set("lease notice", {"answer": "a"}, SCOPE)
        clock.now += timedelta(seconds=61)
        assert await cache.get("lease notice", SCOPE) is None
        assert await store.count(NS) == 0
        assert cache.stats()["expirations"] == 1

    @pytest.mark.asyncio
    async def test_missing_timestamp_is_expired(self):
        """An entry without a timestamp is treated as expired."""
        cache, store = _cache()
        vec = HashingEmbedder(DIM).embed_sync("lease notice")
        await store.upsert(
            [VectorRecord(id="semantic:legacy", values=vec, metadata={"cachedResponse": '{"answer":"old"}', "scope": SCOPE})],
            namespace=NS,
        )
        assert await cache.get("lease notice", SCOPE) is None

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self):
        """ttl_seconds <= 0 disables expiry."""
        clock = FakeClock()
        cache, _ = _cache(ttl=0, clock=clock)
        await cache.set("lease notice", {"answer": "a"}, SCOPE)
        clock.now += timedelta(days=365)
        assert await cache.get("lease notice", SCOPE) == {"answer": "a"}

    @pytest.mark.asyncio
    async def test_entry_metadata_and_id(self):
        """Entries carry the serialized response, timestamp, TTL and scope."""
        cache, store = _cache(ttl=900)
        entry_id = await cache.set("lease notice", {"answer": "a"}, SCOPE)
        assert re.fullmatch(r"semantic:\d+:[0-9a-f]{8}", entry_id)
        matches = await store.query(HashingEmbedder(DIM).embed_sync("lease notice"), top_k=1, namespace=NS)
        meta = matches[0].metadata
        assert meta["cachedResponse"] == '{"answer":"a"}'
        assert meta["ttlSeconds"] == 900
        assert meta["scope"] == SCOPE
        assert datetime.fromisoformat(meta["timestamp"]).tzinfo is not None

    @pytest.mark.asyncio
    async def test_clear(self):
        """clear() drops the whole cache namespace."""
        cache, store = _cache()
        await cache.set("lease notice", {"answer": "a"}, SCOPE)
        await cache.clear()
        assert await store.count(NS) == 0

    def test_threshold_range(self):
        """Thresholds outside [0, 1] are rejected."""
        with pytest.raises(ValueError):
            _cache(threshold=1.5)


class TestSemanticCacheSweep:
    """Background removal of entries no query will ever read again."""

    @pytest.mark.asyncio
    async def test_sweep_empties_expired_namespace(self):
        """Entries past the TTL are deleted without any lookup touching them."""
        clock = FakeClock()
        cache, store = _cache(ttl=60, clock=clock)
        await cache.set("lease notice", {"answer": "a"}, SCOPE)
        await cache.set("nda confidentiality term", {"answer": "b"}, make_scope("globex", "answer", 5))
        clock.now += timedelta(seconds=61)
        assert await cache.sweep() == 2
        assert await store.count(NS) == 0
        assert cache.stats()["expirations"] == 2

    @pytest.mark.asyncio
    async def test_sweep_keeps_fresh_entries(self):
        """Only entries older than the TTL go."""
        clock = FakeClock()
        cache, store = _cache(ttl=60, clock=clock)
        await cache.set("lease notice", {"answer": "old"}, SCOPE)
        clock.now += timedelta(seconds=45)
        await cache.set("warranty liability", {"answer": "new"}, SCOPE)
        clock.now += timedelta(seconds=30)
        assert await cache.sweep() == 1
        assert await store.count(NS) == 1
        assert await cache.get("warranty liability", SCOPE) == {"answer": "new"}

    @pytest.mark.asyncio
    async def test_sweep_removes_entries_without_timestamp(self):
        """Unreadable entries are swept too."""
        cache, store = _cache()
        vec = HashingEmbedder(DIM).embed_sync("lease notice")
        await store.upsert(
            [VectorRecord(id="semantic:legacy", values=vec, metadata={"cachedResponse": "{}", "scope": SCOPE})],
            namespace=NS,
        )
        assert await cache.sweep() == 1
        assert await store.count(NS) == 0

    @pytest.mark.asyncio
    async def test_sweep_noop_without_ttl(self):
        """ttl_seconds <= 0 means nothing ever expires."""
        clock = FakeClock()
        cache, store = _cache(ttl=0, clock=clock)
        await cache.set("lease notice", {"answer": "a"}, SCOPE)
        clock.now += timedelta(days=30)
        assert await cache.sweep() == 0
        assert await store.count(NS) == 1
