"""
Embedding capability.

Provides:
- ``Embedder`` protocol used by the retriever, semantic cache and ingest helper
- ``AsyncEmbeddingClient``: pooled httpx client for Ollama or OpenAI-compatible
  embedding APIs, guarded by a circuit breaker, with an LRU memo so one request
  embeds its query once even though three stages ask for it
- ``HashingEmbedder``: deterministic feature-hashing embedder for stub mode
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from collections import Counter, OrderedDict
from typing import List, Optional, Protocol

import httpx
import numpy as np
from loguru import logger

from ragserve import config
from ragserve.circuit_breaker import CircuitBreakerConfig, get_circuit_breaker
from ragserve.errors import EmbeddingError

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class Embedder(Protocol):
    dim: int

    async def embed(self, text: str) -> np.ndarray: ...


def _l2_normalize(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec = vec / norm
    return vec.astype(np.float32, copy=False)


async def embed_many(embedder: Embedder, texts: List[str], concurrency: int = 8) -> np.ndarray:
    """Embed a list of texts with bounded concurrency; returns shape (n, dim)."""
    if not texts:
        return np.zeros((0, embedder.dim), dtype=np.float32)
    sem = asyncio.Semaphore(max(1, concurrency))

    async def _one(t: str) -> np.ndarray:
        async with sem:
            return await embedder.embed(t)

    vectors = await asyncio.gather(*(_one(t) for t in texts))
    return np.vstack(vectors).astype(np.float32, copy=False)


# ============================================================================
# HTTP embedding client
# ============================================================================


class AsyncEmbeddingClient:
    """
    Async embedding client with connection pooling and a query memo.

    Supports Ollama (``/api/embeddings``) and OpenAI-compatible
    (``/v1/embeddings``) APIs. Every transport or protocol failure surfaces as
    ``EmbeddingError``.
    """

    def __init__(
        self,
        base_url: str = config.EMBEDDING_BASE_URL,
        model: str = config.EMBEDDING_MODEL,
        api_type: str = config.EMBEDDING_API_TYPE,
        dim: int = config.EMBEDDING_DIM,
        timeout: float = config.EMBEDDING_TIMEOUT_SECONDS,
        memo_size: int = config.EMBEDDING_MEMO_SIZE,
        api_key: Optional[str] = None,
        max_connections: int = 20,
        max_keepalive: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Embedding server base URL
            model: Model name
            api_type: ``ollama`` or ``openai``
            dim: Expected vector dimension; mismatches raise
            timeout: Per-call timeout in seconds
            memo_size: LRU memo capacity (0 disables)
            api_key: Bearer token for OpenAI-compatible servers
            transport: Optional httpx transport (tests inject ``httpx.MockTransport``)
        """
        if api_type not in ("ollama", "openai"):
            raise ValueError(f"Unsupported embedding api_type: {api_type}")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_type = api_type
        self.dim = dim
        self.timeout = timeout
        self.memo_size = memo_size
        self._api_key = api_key if api_key is not None else config.EMBEDDING_API_KEY
        self._memo: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_keepalive)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._breaker = get_circuit_breaker(
            "embeddings", CircuitBreakerConfig(failure_threshold=5, recovery_timeout_seconds=30.0)
        )
        self.memo_hits = 0
        logger.info(f"Embeddings: {api_type} at {self.base_url}, model={model}, dim={dim}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_type == "openai" and self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=self._limits,
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    def _memo_get(self, text: str) -> Optional[np.ndarray]:
        vec = self._memo.get(text)
        if vec is not None:
            self._memo.move_to_end(text)
            self.memo_hits += 1
        return vec

    def _memo_put(self, text: str, vec: np.ndarray) -> None:
        if self.memo_size <= 0:
            return
        self._memo[text] = vec
        self._memo.move_to_end(text)
        while len(self._memo) > self.memo_size:
            self._memo.popitem(last=False)

    async def embed(self, text: str) -> np.ndarray:
        """Embed single text; returns an L2-normalised float32 vector."""
        cached = self._memo_get(text)
        if cached is not None:
            return cached
        vec = await self._breaker.call(self._request, text)
        self._memo_put(text, vec)
        return vec

    async def _request(self, text: str) -> np.ndarray:
        client = self._get_client()
        if self.api_type == "ollama":
            path, payload = "/api/embeddings", {"model": self.model, "prompt": text.strip()}
        else:
            path, payload = "/v1/embeddings", {"model": self.model, "input": text.strip()}

        try:
            resp = await client.post(path, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Embedding request timed out after {self.timeout}s", model=self.model, cause=e) from e
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(
                f"Embedding server returned HTTP {e.response.status_code}", model=self.model, cause=e
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise EmbeddingError(f"Embedding request failed: {e}", model=self.model, cause=e) from e

        try:
            if self.api_type == "ollama":
                raw = data["embedding"]
            else:
                raw = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingError("Malformed embedding response", model=self.model, cause=e) from e

        vec = np.asarray(raw, dtype=np.float32)
        if vec.ndim != 1 or vec.shape[0] != self.dim:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self.dim}, got {vec.shape}", model=self.model
            )
        return _l2_normalize(vec)

    async def health_check(self) -> dict:
        try:
            vec = await self.embed("health check")
            return {"ok": True, "model": self.model, "dim": int(vec.shape[0])}
        except Exception as e:
            return {"ok": False, "model": self.model, "error": str(e)}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Closed async HTTP client for embeddings")


# ============================================================================
# Stub embedder
# ============================================================================


class HashingEmbedder:
    """Deterministic bag-of-words embedder (feature hashing, no network).

    Tokens are lowercased alphanumeric runs, hashed with blake2b into ``dim``
    buckets and weighted ``1 + log(tf)``. All weights are non-negative, so
    texts sharing a token always have positive cosine similarity and texts
    with the same token multiset have similarity 1.0.
    """

    def __init__(self, dim: int = 384):
        self.dim = dim
        self.model = "hashing-stub"
        self.calls = 0

    def _bucket(self, token: str) -> int:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "little") % self.dim

    def embed_sync(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        for token, tf in Counter(_TOKEN_RE.findall(text.lower())).items():
            vec[self._bucket(token)] += 1.0 + math.log(tf)
        return _l2_normalize(vec)

    async def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        return self.embed_sync(text)

    async def health_check(self) -> dict:
        return {"ok": True, "model": self.model, "dim": self.dim}

    async def close(self) -> None:
        return None
