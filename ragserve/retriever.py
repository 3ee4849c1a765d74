"""Query retrieval: embed the query, search one namespace, return scored passages."""

from __future__ import annotations

import time
from typing import List, Optional

from loguru import logger

from ragserve.embeddings import Embedder
from ragserve.errors import RetrievalFailed
from ragserve.metrics import track_search
from ragserve.models import RetrievedPassage
from ragserve.vector_store import VectorStore


class Retriever:
    """
    Nearest-neighbour retrieval scoped to a tenant namespace.

    No retries happen here; any embedder or store failure becomes
    ``RetrievalFailed``. An empty list means "no relevant documents" and is
    not an error.
    """

    def __init__(self, embedder: Embedder, store: VectorStore, default_namespace: str = ""):
        self.embedder = embedder
        self.store = store
        self.default_namespace = default_namespace

    async def retrieve(
        self,
        query: str,
        top_k: int,
        namespace: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> List[RetrievedPassage]:
        ns = namespace if namespace else self.default_namespace
        started = time.perf_counter()
        try:
            vector = await self.embedder.embed(query)
            matches = await self.store.query(vector, top_k=top_k, namespace=ns or None, include_metadata=True)
        except Exception as e:
            logger.error(f"[{request_id}] Retrieval failed (namespace={ns or 'default'}): {e}")
            raise RetrievalFailed(f"Retrieval failed: {e}", cause=e) from e

        passages = [
            RetrievedPassage(
                text=str((m.metadata or {}).get("text") or m.id or ""),
                score=float(m.score or 0.0),
                metadata={**(m.metadata or {}), "id": m.id},
            )
            for m in matches
        ]
        passages.sort(key=lambda p: p.score, reverse=True)
        passages = passages[:top_k]

        duration = time.perf_counter() - started
        track_search(ns, len(passages), duration)
        logger.info(
            f"[{request_id}] Retrieval completed: namespace={ns or 'default'} top_k={top_k} "
            f"results={len(passages)} duration_ms={int(duration * 1000)}"
        )
        return passages
