"""Tests for namespace-scoped retrieval and the in-memory vector store."""

import numpy as np
import pytest

from ragserve.embeddings import HashingEmbedder
from ragserve.errors import EmbeddingError, RetrievalFailed, VectorStoreError
from ragserve.retriever import Retriever
from ragserve.vector_store import InMemoryVectorStore, VectorRecord

DIM = 64


def _unit(*idx):
    v = np.zeros(DIM, dtype=np.float32)
    for i in idx:
        v[i] = 1.0
    return v


class FailingEmbedder:
    dim = DIM

    async def embed(self, text):
        raise EmbeddingError("embedding server down")


class TestInMemoryVectorStore:
    """Cosine search, namespaces, filters and upsert semantics."""

    @pytest.mark.asyncio
    async def test_query_ranks_by_cosine(self):
        """Closest vectors come first with cosine scores."""
        store = InMemoryVectorStore(DIM)
        await store.upsert(
            [
                VectorRecord("a", _unit(0), {"text": "a"}),
                VectorRecord("b", _unit(0, 1), {"text": "b"}),
                VectorRecord("c", _unit(2), {"text": "c"}),
            ]
        )
        matches = await store.query(_unit(0), top_k=3)
        assert [m.id for m in matches] == ["a", "b", "c"]
        assert matches[0].score == pytest.approx(1.0)
        assert matches[1].score == pytest.approx(1 / np.sqrt(2), rel=1e-5)
        assert matches[2].score == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self):
        """A query only sees its own namespace."""
        store = InMemoryVectorStore(DIM)
        await store.upsert([VectorRecord("a", _unit(0))], namespace="acme")
        await store.upsert([VectorRecord("g", _unit(0))], namespace="globex")
        matches = await store.query(_unit(0), top_k=10, namespace="acme")
        assert [m.id for m in matches] == ["a"]
        assert await store.query(_unit(0), top_k=10, namespace="initech") == []

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_id(self):
        """Re-upserting an id replaces its vector and metadata."""
        store = InMemoryVectorStore(DIM)
        await store.upsert([VectorRecord("a", _unit(0), {"v": 1})])
        await store.upsert([VectorRecord("a", _unit(1), {"v": 2})])
        assert await store.count() == 1
        matches = await store.query(_unit(1), top_k=1)
        assert matches[0].metadata == {"v": 2}
        assert matches[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_batch(self):
        """The last record wins when a batch repeats an id."""
        store = InMemoryVectorStore(DIM)
        written = await store.upsert([VectorRecord("a", _unit(0), {"v": 1}), VectorRecord("a", _unit(1), {"v": 2})])
        assert written == 1
        assert (await store.query(_unit(1), top_k=1))[0].metadata == {"v": 2}

    @pytest.mark.asyncio
    async def test_metadata_filter(self):
        """Filters are equality matches on every given key."""
        store = InMemoryVectorStore(DIM)
        await store.upsert(
            [VectorRecord("a", _unit(0), {"scope": "x"}), VectorRecord("b", _unit(0), {"scope": "y"})]
        )
        matches = await store.query(_unit(0), top_k=5, filter={"scope": "y"})
        assert [m.id for m in matches] == ["b"]
        assert await store.query(_unit(0), top_k=5, filter={"scope": "z"}) == []

    @pytest.mark.asyncio
    async def test_delete_and_delete_namespace(self):
        """Deleted ids stop matching; dropping a namespace empties it."""
        store = InMemoryVectorStore(DIM)
        await store.upsert([VectorRecord("a", _unit(0)), VectorRecord("b", _unit(1))], namespace="ns")
        assert await store.delete(["a", "missing"], namespace="ns") == 1
        assert [m.id for m in await store.query(_unit(0), top_k=5, namespace="ns")] == ["b"]
        await store.delete_namespace("ns")
        assert await store.count("ns") == 0

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self):
        """Vectors of the wrong size are rejected."""
        store = InMemoryVectorStore(DIM)
        with pytest.raises(VectorStoreError):
            await store.upsert([VectorRecord("a", np.ones(DIM + 1))])
        with pytest.raises(VectorStoreError):
            await store.query(np.ones(3), top_k=1)

    @pytest.mark.asyncio
    async def test_include_metadata_false(self):
        """Metadata can be omitted from matches."""
        store = InMemoryVectorStore(DIM)
        await store.upsert([VectorRecord("a", _unit(0), {"text": "a"})])
        matches = await store.query(_unit(0), top_k=1, include_metadata=False)
        assert matches[0].metadata == {}


class TestRetriever:
    """Embedding plus search, scoped to a tenant namespace."""

    @pytest.mark.asyncio
    async def test_retrieves_from_tenant_namespace(self, embedder, store):
        """Passages come from the tenant's namespace, best match first."""
        retriever = Retriever(embedder, store)
        passages = await retriever.retrieve("lease early termination notice", top_k=2, namespace="acme")
        assert len(passages) == 2
        assert "lease" in passages[0].text
        assert passages[0].score >= passages[1].score
        assert passages[0].metadata["id"].startswith("acme-")
        assert passages[0].metadata["source"].startswith("acme")

    @pytest.mark.asyncio
    async def test_other_tenant_documents_never_returned(self, embedder, store):
        """Globex documents never appear for the acme namespace."""
        retriever = Retriever(embedder, store)
        passages = await retriever.retrieve("settlement agreement releases claims", top_k=10, namespace="acme")
        assert passages
        assert all(p.metadata["source"].startswith("acme") for p in passages)

    @pytest.mark.asyncio
    async def test_empty_namespace_is_empty_list(self, embedder, store):
        """No documents is an empty result, not an error."""
        retriever = Retriever(embedder, store)
        assert await retriever.retrieve("lease", top_k=5, namespace="initech") == []

    @pytest.mark.asyncio
    async def test_default_namespace(self, embedder, store):
        """A missing namespace falls back to the configured default."""
        retriever = Retriever(embedder, store, default_namespace="globex")
        passages = await retriever.retrieve("litigation documents", top_k=1)
        assert passages[0].metadata["source"].startswith("globex")

    @pytest.mark.asyncio
    async def test_failure_becomes_retrieval_failed(self, store):
        """Embedder errors surface as RetrievalFailed (502)."""
        retriever = Retriever(FailingEmbedder(), store)
        with pytest.raises(RetrievalFailed) as exc_info:
            await retriever.retrieve("lease", top_k=3, namespace="acme")
        assert exc_info.value.status_code == 502
        assert exc_info.value.error_code == "RETRIEVAL_FAILED"


class TestHashingEmbedder:
    """Deterministic stub embeddings."""

    @pytest.mark.asyncio
    async def test_deterministic_and_normalised(self):
        """Same text, same unit vector."""
        emb = HashingEmbedder(DIM)
        a = await emb.embed("The lease agreement")
        b = await emb.embed("the LEASE agreement")
        assert a.shape == (DIM,)
        assert a.dtype == np.float32
        assert np.allclose(a, b)
        assert float(np.linalg.norm(a)) == pytest.approx(1.0, rel=1e-5)

    def test_empty_text(self):
        """Text without tokens embeds to the zero vector."""
        assert not HashingEmbedder(DIM).embed_sync("!!!").any()
