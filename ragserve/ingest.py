#!/usr/bin/env python3
"""
Text ingestion: overlapping character chunks -> embeddings -> vector store.

Run as ``ragserve-ingest PATH... --namespace acme`` to chunk, embed and
persist documents into the FAISS index the server loads at startup.
"""

from __future__ import annotations

import argparse
import asyncio
import time
from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger

from ragserve import config
from ragserve.embeddings import Embedder, embed_many
from ragserve.factory import create_embedder, create_vector_store
from ragserve.logging_config import setup_logging
from ragserve.vector_store import VectorRecord, VectorStore

DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 100
UPSERT_BATCH_SIZE = 100

# Coarsest boundary first; a piece still too long falls through to the next one
_SEPARATORS = ("\n\n", "\n", ". ", " ")


def _split(text: str, size: int, separators: Sequence[str]) -> List[str]:
    if len(text) <= size:
        return [text]
    for i, sep in enumerate(separators):
        if sep not in text:
            continue
        pieces = text.split(sep)
        out: List[str] = []
        for j, piece in enumerate(pieces):
            if j < len(pieces) - 1:
                piece += sep
            if len(piece) > size:
                out.extend(_split(piece, size, separators[i + 1:]))
            elif piece:
                out.append(piece)
        return out
    return [text[k:k + size] for k in range(0, len(text), size)]


def _merge(pieces: Sequence[str], size: int, overlap: int) -> List[str]:
    chunks: List[str] = []
    window: List[str] = []
    length = 0
    for piece in pieces:
        if window and length + len(piece) > size:
            chunks.append("".join(window).strip())
            while window and (length > overlap or length + len(piece) > size):
                length -= len(window[0])
                window.pop(0)
        window.append(piece)
        length += len(piece)
    if window:
        chunks.append("".join(window).strip())
    return [c for c in chunks if c]


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_CHUNK_OVERLAP) -> List[str]:
    """
    Split text into chunks of at most ``chunk_size`` characters.

    Splits on paragraph, then line, then sentence, then word boundaries and
    packs the pieces into windows that share up to ``overlap`` characters
    with the previous chunk.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")
    text = text.strip()
    if not text:
        return []
    return _merge(_split(text, chunk_size, _SEPARATORS), chunk_size, overlap)


async def ingest_texts(
    texts: Sequence[str],
    embedder: Embedder,
    store: VectorStore,
    namespace: Optional[str] = None,
    source: str = "text",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> int:
    """
    Chunk, embed and upsert ``texts`` into ``namespace``. Returns chunks stored.

    Vector ids are ``<source>_chunk_<i>`` (``<source>-<n>`` per text when more
    than one text is given), so re-ingesting the same source replaces its
    chunks instead of duplicating them.
    """
    started = time.perf_counter()
    records: List[VectorRecord] = []
    for n, text in enumerate(texts):
        doc_source = source if len(texts) == 1 else f"{source}-{n}"
        chunks = chunk_text(text, chunk_size, overlap)
        if not chunks:
            logger.warning(f"Ingest: '{doc_source}' produced no chunks, skipping")
            continue
        vectors = await embed_many(embedder, chunks)
        for i, (chunk, vec) in enumerate(zip(chunks, vectors)):
            records.append(
                VectorRecord(
                    id=f"{doc_source}_chunk_{i}",
                    values=vec,
                    metadata={"text": chunk, "source": doc_source, "chunk_index": i, "total_chunks": len(chunks)},
                )
            )

    # a shorter re-ingest must not leave the old tail chunks behind
    fresh = {r.id for r in records}
    sources = {r.metadata["source"] for r in records}
    stale = [rid for rid, meta in await store.scan(namespace) if meta.get("source") in sources and rid not in fresh]
    if stale:
        await store.delete(stale, namespace=namespace)
        logger.info(f"Ingest: removed {len(stale)} stale chunks from namespace={namespace or 'default'}")

    stored = 0
    for i in range(0, len(records), UPSERT_BATCH_SIZE):
        stored += await store.upsert(records[i:i + UPSERT_BATCH_SIZE], namespace=namespace)

    logger.info(
        f"Ingested {stored} chunks from {len(texts)} texts into namespace={namespace or 'default'} "
        f"in {time.perf_counter() - started:.2f}s"
    )
    return stored


INGEST_SUFFIXES = (".txt", ".md")


def collect_documents(paths: Sequence[Path]) -> List[Path]:
    """Expand files and directories into the text documents to ingest."""
    docs: List[Path] = []
    for path in paths:
        if path.is_dir():
            docs.extend(sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in INGEST_SUFFIXES))
        elif path.is_file():
            docs.append(path)
        else:
            raise FileNotFoundError(f"No such file or directory: {path}")
    return docs


async def ingest_paths(
    paths: Sequence[Path],
    namespace: Optional[str] = None,
    index_root: Optional[Path] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    embedder: Optional[Embedder] = None,
) -> int:
    """Ingest every document under ``paths`` into ``namespace`` and persist the index."""
    own_embedder = embedder is None
    embedder = embedder if embedder is not None else create_embedder()
    store = create_vector_store(embedder.dim, backend="faiss", index_root=index_root)
    total = 0
    try:
        for doc in collect_documents(paths):
            text = doc.read_text(encoding="utf-8")
            total += await ingest_texts(
                [text], embedder, store, namespace=namespace, source=doc.stem, chunk_size=chunk_size, overlap=overlap
            )
        store.save(namespace)
    finally:
        if own_embedder:
            await embedder.close()
    return total


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``ragserve-ingest``."""
    parser = argparse.ArgumentParser(description="Chunk, embed and persist documents for a tenant namespace")
    parser.add_argument("paths", nargs="+", type=Path, help="Files or directories (.txt, .md) to ingest")
    parser.add_argument("--namespace", default=config.RAG_DEFAULT_NAMESPACE, help="Tenant namespace to write")
    parser.add_argument("--index-root", type=Path, default=config.INDEX_ROOT, help="FAISS index directory")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Maximum characters per chunk")
    parser.add_argument("--overlap", type=int, default=DEFAULT_CHUNK_OVERLAP, help="Characters shared between chunks")
    args = parser.parse_args(argv)

    setup_logging()
    stored = asyncio.run(
        ingest_paths(
            args.paths,
            namespace=args.namespace,
            index_root=args.index_root,
            chunk_size=args.chunk_size,
            overlap=args.overlap,
        )
    )
    logger.info(f"Ingestion complete: {stored} chunks in namespace '{args.namespace or 'default'}' under {args.index_root}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
