"""Tests for chunking and ingestion."""

import pytest

from conftest import ACME_KEY, EMBED_DIM
from ragserve import config
from ragserve.embeddings import HashingEmbedder
from ragserve.ingest import chunk_text, collect_documents, ingest_paths, ingest_texts, main
from ragserve.retriever import Retriever
from ragserve.vector_store import FaissVectorStore, InMemoryVectorStore

DIM = 128


class TestChunkText:
    """Boundary-aware chunking with overlap."""

    def test_short_text_single_chunk(self):
        """Text under the limit is one chunk."""
        assert chunk_text("  A short lease clause.  ") == ["A short lease clause."]

    def test_empty_text(self):
        """Blank text yields no chunks."""
        assert chunk_text("   \n\n ") == []

    def test_chunks_respect_size(self):
        """No chunk exceeds chunk_size."""
        text = " ".join(f"Sentence number {i} about the lease agreement." for i in range(100))
        chunks = chunk_text(text, chunk_size=200, overlap=40)
        assert len(chunks) > 1
        assert all(len(c) <= 200 for c in chunks)

    def test_overlap_carries_context(self):
        """Consecutive chunks share text when overlap is set."""
        text = " ".join(f"word{i}" for i in range(200))
        chunks = chunk_text(text, chunk_size=100, overlap=30)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.split()[-1] in nxt.split()

    def test_no_overlap(self):
        """With overlap 0 every word appears exactly once."""
        words = [f"w{i}" for i in range(150)]
        chunks = chunk_text(" ".join(words), chunk_size=60, overlap=0)
        assert " ".join(chunks).split() == words

    def test_paragraphs_preferred(self):
        """Paragraph boundaries are used before sentence or word splits."""
        text = "First paragraph about the lease.\n\nSecond paragraph about the warranty."
        chunks = chunk_text(text, chunk_size=40, overlap=0)
        assert chunks == ["First paragraph about the lease.", "Second paragraph about the warranty."]

    def test_unbroken_text_hard_split(self):
        """Text with no separators is cut at chunk_size."""
        chunks = chunk_text("x" * 250, chunk_size=100, overlap=0)
        assert [len(c) for c in chunks] == [100, 100, 50]

    @pytest.mark.parametrize("size,overlap", [(0, 0), (100, 100), (100, -1)])
    def test_invalid_parameters(self, size, overlap):
        """Size must be positive and overlap smaller than size."""
        with pytest.raises(ValueError):
            chunk_text("text", chunk_size=size, overlap=overlap)


class TestIngestTexts:
    """Chunk, embed, upsert."""

    @pytest.mark.asyncio
    async def test_ids_and_metadata(self):
        """Ids are <source>_chunk_<i> and metadata carries the text."""
        store = InMemoryVectorStore(DIM)
        text = "\n\n".join(f"Paragraph {i} of the master services agreement." for i in range(30))
        stored = await ingest_texts([text], HashingEmbedder(DIM), store, namespace="acme", source="msa", chunk_size=200, overlap=0)
        assert stored == await store.count("acme")
        matches = await store.query(HashingEmbedder(DIM).embed_sync("Paragraph 0 of the master"), top_k=stored, namespace="acme")
        ids = {m.id for m in matches}
        assert "msa_chunk_0" in ids
        meta = next(m.metadata for m in matches if m.id == "msa_chunk_0")
        assert meta["source"] == "msa"
        assert meta["chunk_index"] == 0
        assert meta["total_chunks"] == stored
        assert meta["text"].startswith("Paragraph 0")

    @pytest.mark.asyncio
    async def test_reingest_replaces(self):
        """Ingesting the same source twice does not duplicate vectors."""
        store = InMemoryVectorStore(DIM)
        embedder = HashingEmbedder(DIM)
        await ingest_texts(["The lease ends in June."], embedder, store, namespace="acme", source="lease")
        await ingest_texts(["The lease ends in July."], embedder, store, namespace="acme", source="lease")
        assert await store.count("acme") == 1

    @pytest.mark.asyncio
    async def test_multiple_texts_get_distinct_sources(self):
        """Each text in a batch gets its own source suffix."""
        store = InMemoryVectorStore(DIM)
        stored = await ingest_texts(["lease one", "lease two", "   "], HashingEmbedder(DIM), store, source="doc")
        assert stored == 2
        matches = await store.query(HashingEmbedder(DIM).embed_sync("lease"), top_k=5)
        assert {m.id for m in matches} == {"doc-0_chunk_0", "doc-1_chunk_0"}

    @pytest.mark.asyncio
    async def test_large_batch(self):
        """More than one upsert batch of chunks is stored in full."""
        store = InMemoryVectorStore(DIM)
        texts = [f"clause {i} of the purchase contract" for i in range(250)]
        assert await ingest_texts(texts, HashingEmbedder(DIM), store, namespace="bulk") == 250
        assert await store.count("bulk") == 250

    @pytest.mark.asyncio
    async def test_ingested_text_is_retrievable(self):
        """Ingested content is found by a matching query."""
        store = InMemoryVectorStore(DIM)
        embedder = HashingEmbedder(DIM)
        await ingest_texts(
            ["The tenant may sublet with consent.", "Late rent incurs a five percent fee."],
            embedder, store, namespace="acme", source="lease",
        )
        passages = await Retriever(embedder, store).retrieve("late rent fee", top_k=1, namespace="acme")
        assert passages[0].text == "Late rent incurs a five percent fee."

    @pytest.mark.asyncio
    async def test_shorter_reingest_drops_old_tail(self):
        """Chunks a source no longer produces are removed on re-ingest."""
        store = InMemoryVectorStore(DIM)
        embedder = HashingEmbedder(DIM)
        long_text = "\n\n".join(f"Clause {i} of the lease agreement." for i in range(20))
        first = await ingest_texts([long_text], embedder, store, namespace="acme", source="lease", chunk_size=100, overlap=0)
        assert first > 1
        await ingest_texts(["The lease was replaced."], embedder, store, namespace="acme", source="lease")
        assert [rid for rid, _ in await store.scan("acme")] == ["lease_chunk_0"]

    @pytest.mark.asyncio
    async def test_other_sources_untouched(self):
        """Re-ingesting one source leaves the rest of the namespace alone."""
        store = InMemoryVectorStore(DIM)
        embedder = HashingEmbedder(DIM)
        await ingest_texts(["Warranty covers parts."], embedder, store, namespace="acme", source="warranty")
        await ingest_texts(["The lease ends in June."], embedder, store, namespace="acme", source="lease")
        await ingest_texts(["The lease ends in July."], embedder, store, namespace="acme", source="lease")
        assert await store.count("acme") == 2


LEASE_DOC = "Early termination of the lease requires sixty days written notice to the landlord."
WARRANTY_DOC = "Equipment warranty covers replacement parts for twelve months."


@pytest.fixture
def docs_dir(tmp_path):
    docs = tmp_path / "docs"
    (docs / "nested").mkdir(parents=True)
    (docs / "lease.md").write_text(LEASE_DOC, encoding="utf-8")
    (docs / "nested" / "warranty.txt").write_text(WARRANTY_DOC, encoding="utf-8")
    (docs / "nested" / "image.png").write_bytes(b"\x89PNG")
    return docs


class TestIngestCommand:
    """File ingestion into the persisted FAISS index."""

    def test_collect_documents(self, docs_dir):
        """Directories expand to their .txt/.md files; other files are skipped."""
        assert [p.name for p in collect_documents([docs_dir])] == ["lease.md", "warranty.txt"]

    def test_collect_missing_path(self, tmp_path):
        """A path that does not exist is an error, not a silent no-op."""
        with pytest.raises(FileNotFoundError):
            collect_documents([tmp_path / "nope"])

    @pytest.mark.asyncio
    async def test_ingest_paths_persists(self, docs_dir, tmp_path):
        """Documents are written to disk under the namespace, one source per file."""
        root = tmp_path / "index"
        stored = await ingest_paths([docs_dir], namespace="acme", index_root=root, embedder=HashingEmbedder(DIM))
        assert stored == 2
        assert (root / "acme" / "index.faiss").exists()
        reloaded = FaissVectorStore(DIM, root)
        assert sorted(meta["source"] for _, meta in await reloaded.scan("acme")) == ["lease", "warranty"]

    def test_main_writes_index(self, docs_dir, tmp_path, monkeypatch):
        """ragserve-ingest builds the index with the configured embedder."""
        monkeypatch.setattr(config, "EMBEDDINGS_BACKEND", "stub")
        monkeypatch.setattr(config, "STUB_EMBEDDING_DIM", DIM)
        root = tmp_path / "index"
        assert main([str(docs_dir / "lease.md"), "--namespace", "acme", "--index-root", str(root)]) == 0
        assert FaissVectorStore(DIM, root).namespaces() == ["acme"]

    @pytest.mark.asyncio
    async def test_documents_served_after_restart(self, docs_dir, tmp_path, make_pipeline):
        """A pipeline started on the persisted index retrieves ingested text."""
        root = tmp_path / "index"
        await ingest_paths([docs_dir], namespace="acme", index_root=root, embedder=HashingEmbedder(EMBED_DIM))

        pipeline = make_pipeline(store=FaissVectorStore(EMBED_DIM, root))
        result = await pipeline.handle(
            "req-restart",
            ACME_KEY,
            {"query": "What notice does the lease require for early termination?", "topK": 2},
            mode="retrieval",
        )
        results = result.body["data"]["results"]
        assert results
        assert results[0]["metadata"]["source"] == "lease"
        assert results[0]["text"] == LEASE_DOC
