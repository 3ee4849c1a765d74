"""
Vector store capability.

``VectorStore`` is the contract the retriever, semantic cache and ingest
helper program against. Two implementations:

- ``FaissVectorStore``: one ``faiss.IndexFlatIP`` per namespace, persisted as
  ``<index_root>/<namespace>/index.faiss`` + ``meta.json`` and loaded at startup
- ``InMemoryVectorStore``: process-local numpy matrices, nothing persisted

Vectors are L2-normalised on upsert so inner product is cosine similarity.
"""

from __future__ import annotations

import json
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import faiss
import numpy as np
from loguru import logger

from ragserve.errors import VectorStoreError

DEFAULT_NAMESPACE = ""


@dataclass
class VectorRecord:
    id: str
    values: Any
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorStore(Protocol):
    async def query(
        self,
        vector: np.ndarray,
        top_k: int,
        namespace: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]: ...

    async def upsert(self, records: Sequence[VectorRecord], namespace: Optional[str] = None) -> int: ...

    async def delete(self, ids: Sequence[str], namespace: Optional[str] = None) -> int: ...

    async def count(self, namespace: Optional[str] = None) -> int: ...

    async def delete_namespace(self, namespace: str) -> None: ...

    async def scan(self, namespace: Optional[str] = None) -> List[Tuple[str, Dict[str, Any]]]: ...

    def namespaces(self) -> List[str]: ...


def _prepare_vector(values: Any, dim: int) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32).reshape(-1)
    if vec.shape[0] != dim:
        raise VectorStoreError(f"Vector dimension mismatch: expected {dim}, got {vec.shape[0]}")
    if not np.all(np.isfinite(vec)):
        raise VectorStoreError("Vector contains non-finite values")
    norm = float(np.linalg.norm(vec))
    return vec / norm if norm > 0 else vec


def _matches_filter(meta: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    return not filter or all(meta.get(k) == v for k, v in filter.items())


class _Partition:
    """Row-aligned ids, metadata and a normalised float32 matrix."""

    def __init__(self, dim: int):
        self.ids: List[str] = []
        self.metadata: List[Dict[str, Any]] = []
        self.matrix = np.zeros((0, dim), dtype=np.float32)
        self.index: Dict[str, int] = {}


class InMemoryVectorStore:
    """
    Process-local vector index partitioned by namespace.

    ``""`` (or ``None``) is the default partition. Metadata filters are
    equality matches on every given key.
    """

    def __init__(self, dim: int):
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim
        self._partitions: Dict[str, _Partition] = {}
        self._lock = threading.Lock()

    def _vector(self, values: Any) -> np.ndarray:
        return _prepare_vector(values, self.dim)

    async def upsert(self, records: Sequence[VectorRecord], namespace: Optional[str] = None) -> int:
        ns = namespace or DEFAULT_NAMESPACE
        # last write wins for ids repeated within one batch
        latest = {r.id: r for r in records}
        prepared = [(r.id, self._vector(r.values), dict(r.metadata or {})) for r in latest.values()]
        if not prepared:
            return 0
        with self._lock:
            part = self._partitions.setdefault(ns, _Partition(self.dim))
            new_rows = []
            for rid, vec, meta in prepared:
                row = part.index.get(rid)
                if row is not None:
                    part.matrix[row] = vec
                    part.metadata[row] = meta
                    continue
                part.index[rid] = len(part.ids) + len(new_rows)
                new_rows.append((rid, vec, meta))
            if new_rows:
                part.ids.extend(r[0] for r in new_rows)
                part.metadata.extend(r[2] for r in new_rows)
                part.matrix = np.vstack([part.matrix, np.stack([r[1] for r in new_rows])])
        logger.debug(f"Upserted {len(prepared)} vectors into namespace '{ns or 'default'}'")
        return len(prepared)

    async def query(
        self,
        vector: np.ndarray,
        top_k: int,
        namespace: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]:
        if top_k <= 0:
            return []
        q = self._vector(vector)
        ns = namespace or DEFAULT_NAMESPACE
        with self._lock:
            part = self._partitions.get(ns)
            if part is None or not part.ids:
                return []
            scores = part.matrix @ q
            rows = np.arange(len(part.ids))
            if filter:
                keep = [
                    i for i, meta in enumerate(part.metadata)
                    if _matches_filter(meta, filter)
                ]
                rows = np.asarray(keep, dtype=np.int64)
                if rows.size == 0:
                    return []
            order = rows[np.argsort(-scores[rows], kind="stable")][:top_k]
            return [
                VectorMatch(
                    id=part.ids[i],
                    score=float(scores[i]),
                    metadata=dict(part.metadata[i]) if include_metadata else {},
                )
                for i in order
            ]

    async def delete(self, ids: Sequence[str], namespace: Optional[str] = None) -> int:
        ns = namespace or DEFAULT_NAMESPACE
        doomed = set(ids)
        with self._lock:
            part = self._partitions.get(ns)
            if part is None:
                return 0
            keep = [i for i, rid in enumerate(part.ids) if rid not in doomed]
            removed = len(part.ids) - len(keep)
            if removed:
                part.ids = [part.ids[i] for i in keep]
                part.metadata = [part.metadata[i] for i in keep]
                part.matrix = part.matrix[keep] if keep else np.zeros((0, self.dim), dtype=np.float32)
                part.index = {rid: i for i, rid in enumerate(part.ids)}
            return removed

    async def count(self, namespace: Optional[str] = None) -> int:
        with self._lock:
            part = self._partitions.get(namespace or DEFAULT_NAMESPACE)
            return len(part.ids) if part else 0

    async def delete_namespace(self, namespace: str) -> None:
        with self._lock:
            self._partitions.pop(namespace or DEFAULT_NAMESPACE, None)

    def namespaces(self) -> List[str]:
        with self._lock:
            return sorted(self._partitions)

    async def scan(self, namespace: Optional[str] = None) -> List[Tuple[str, Dict[str, Any]]]:
        """Every (id, metadata) pair in the namespace, in insertion order."""
        with self._lock:
            part = self._partitions.get(namespace or DEFAULT_NAMESPACE)
            if part is None:
                return []
            return [(rid, dict(meta)) for rid, meta in zip(part.ids, part.metadata)]


# ============================================================================
# FAISS-backed store
# ============================================================================

# Directory name used on disk for the default ("") namespace
DEFAULT_NAMESPACE_DIR = "_default"


class _FaissPartition:
    """A flat inner-product index with row-aligned ids and metadata."""

    def __init__(self, dim: int, index: Optional[faiss.Index] = None):
        self.index = index if index is not None else faiss.IndexFlatIP(dim)
        self.ids: List[str] = []
        self.metadata: List[Dict[str, Any]] = []
        self.rows: Dict[str, int] = {}

    def remove_rows(self, rows: Sequence[int]) -> None:
        if not rows:
            return
        doomed = set(rows)
        # IndexFlat compacts on remove_ids and keeps the relative order of survivors
        self.index.remove_ids(np.asarray(sorted(doomed), dtype=np.int64))
        keep = [i for i in range(len(self.ids)) if i not in doomed]
        self.ids = [self.ids[i] for i in keep]
        self.metadata = [self.metadata[i] for i in keep]
        self.rows = {rid: i for i, rid in enumerate(self.ids)}


class FaissVectorStore:
    """
    Persistent vector store: one FAISS flat index per namespace.

    On construction every ``<index_root>/<namespace>/`` holding ``index.faiss``
    and ``meta.json`` is loaded. Writes stay in memory until ``save()`` is
    called for the namespace; the ingest command saves what it wrote, the
    semantic-cache namespace is never saved.
    """

    def __init__(self, dim: int, index_root: Union[str, Path, None] = None, load: bool = True):
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim
        self.index_root = Path(index_root) if index_root is not None else None
        self._partitions: Dict[str, _FaissPartition] = {}
        self._lock = threading.Lock()
        if load and self.index_root is not None:
            self.load()

    # ---- persistence ----

    def _ns_dir(self, namespace: str) -> Path:
        if self.index_root is None:
            raise VectorStoreError("FaissVectorStore has no index_root; nothing to persist")
        return self.index_root / (namespace or DEFAULT_NAMESPACE_DIR)

    def load(self) -> List[str]:
        """Load every persisted namespace under ``index_root``. Returns the names loaded."""
        if self.index_root is None or not self.index_root.is_dir():
            logger.info(f"No FAISS indexes found under {self.index_root}; starting empty")
            return []
        loaded = []
        for ns_dir in sorted(p for p in self.index_root.iterdir() if p.is_dir()):
            idx_path = ns_dir / "index.faiss"
            meta_path = ns_dir / "meta.json"
            if not idx_path.exists() or not meta_path.exists():
                logger.debug(f"Skipping {ns_dir}: index.faiss or meta.json missing")
                continue
            meta = json.loads(meta_path.read_text())
            dim = int(meta.get("dim", 0))
            if dim != self.dim:
                raise VectorStoreError(
                    f"Index under {ns_dir} has dim={dim}, but the embedder produces dim={self.dim}"
                )
            index = faiss.read_index(str(idx_path))
            ids = list(meta.get("ids", []))
            rows = list(meta.get("rows", []))
            if index.ntotal != len(ids) or len(ids) != len(rows):
                raise VectorStoreError(
                    f"Index under {ns_dir} is inconsistent: {index.ntotal} vectors, {len(ids)} ids, {len(rows)} rows"
                )
            namespace = meta.get("namespace", ns_dir.name)
            part = _FaissPartition(self.dim, index)
            part.ids = ids
            part.metadata = rows
            part.rows = {rid: i for i, rid in enumerate(ids)}
            with self._lock:
                self._partitions[namespace] = part
            loaded.append(namespace)
            logger.info(f"✓ Loaded FAISS index for namespace '{namespace or 'default'}' ({len(ids)} vectors)")
        return loaded

    def save(self, namespace: Optional[str] = None) -> Path:
        """Write one namespace to ``<index_root>/<namespace>/``."""
        ns = namespace or DEFAULT_NAMESPACE
        ns_dir = self._ns_dir(ns)
        with self._lock:
            part = self._partitions.get(ns) or _FaissPartition(self.dim)
            payload = {
                "namespace": ns,
                "dim": self.dim,
                "num_vectors": part.index.ntotal,
                "normalized": True,
                "ids": list(part.ids),
                "rows": list(part.metadata),
            }
            ns_dir.mkdir(parents=True, exist_ok=True)
            faiss.write_index(part.index, str(ns_dir / "index.faiss"))
            (ns_dir / "meta.json").write_text(json.dumps(payload))
        logger.info(f"✓ Saved FAISS index for namespace '{ns or 'default'}' to {ns_dir} ({payload['num_vectors']} vectors)")
        return ns_dir

    # ---- VectorStore ----

    async def upsert(self, records: Sequence[VectorRecord], namespace: Optional[str] = None) -> int:
        ns = namespace or DEFAULT_NAMESPACE
        latest = {r.id: r for r in records}
        if not latest:
            return 0
        ids = list(latest)
        vectors = np.stack([_prepare_vector(latest[rid].values, self.dim) for rid in ids])
        with self._lock:
            part = self._partitions.setdefault(ns, _FaissPartition(self.dim))
            part.remove_rows([part.rows[rid] for rid in ids if rid in part.rows])
            part.index.add(vectors)
            offset = len(part.ids)
            part.ids.extend(ids)
            part.metadata.extend(dict(latest[rid].metadata or {}) for rid in ids)
            part.rows.update({rid: offset + i for i, rid in enumerate(ids)})
        logger.debug(f"Upserted {len(ids)} vectors into FAISS namespace '{ns or 'default'}'")
        return len(ids)

    async def query(
        self,
        vector: np.ndarray,
        top_k: int,
        namespace: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        include_metadata: bool = True,
    ) -> List[VectorMatch]:
        if top_k <= 0:
            return []
        q = _prepare_vector(vector, self.dim).reshape(1, -1)
        with self._lock:
            part = self._partitions.get(namespace or DEFAULT_NAMESPACE)
            if part is None or part.index.ntotal == 0:
                return []
            # a filter may reject any row, so search everything when one is given
            k = part.index.ntotal if filter else min(top_k, part.index.ntotal)
            scores, rows = part.index.search(q, k)
            matches: List[VectorMatch] = []
            for score, row in zip(scores[0], rows[0]):
                if row < 0:
                    continue
                meta = part.metadata[row]
                if not _matches_filter(meta, filter):
                    continue
                matches.append(
                    VectorMatch(id=part.ids[row], score=float(score), metadata=dict(meta) if include_metadata else {})
                )
                if len(matches) == top_k:
                    break
            return matches

    async def delete(self, ids: Sequence[str], namespace: Optional[str] = None) -> int:
        with self._lock:
            part = self._partitions.get(namespace or DEFAULT_NAMESPACE)
            if part is None:
                return 0
            rows = [part.rows[rid] for rid in set(ids) if rid in part.rows]
            part.remove_rows(rows)
            return len(rows)

    async def count(self, namespace: Optional[str] = None) -> int:
        with self._lock:
            part = self._partitions.get(namespace or DEFAULT_NAMESPACE)
            return part.index.ntotal if part else 0

    async def delete_namespace(self, namespace: str) -> None:
        ns = namespace or DEFAULT_NAMESPACE
        with self._lock:
            self._partitions.pop(ns, None)
        if self.index_root is not None:
            ns_dir = self._ns_dir(ns)
            if ns_dir.exists():
                shutil.rmtree(ns_dir)
                logger.info(f"Removed persisted FAISS index {ns_dir}")

    async def scan(self, namespace: Optional[str] = None) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            part = self._partitions.get(namespace or DEFAULT_NAMESPACE)
            if part is None:
                return []
            return [(rid, dict(meta)) for rid, meta in zip(part.ids, part.metadata)]

    def namespaces(self) -> List[str]:
        with self._lock:
            return sorted(self._partitions)
