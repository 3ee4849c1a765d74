"""
Component wiring.

Picks concrete implementations from configuration and assembles a
``QueryPipeline``. Every ``create_*`` function takes overrides so tests and
scripts can build a fully in-process pipeline without touching the network.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from ragserve import config
from ragserve.answer import AnswerSynthesizer
from ragserve.cache import ExactCache, InMemoryResponseCache, RedisResponseCache
from ragserve.embeddings import AsyncEmbeddingClient, Embedder, HashingEmbedder
from ragserve.errors import ConfigurationError
from ragserve.llm_client import AsyncLLMClient, LanguageModel
from ragserve.moderation import ModerationGate, ModerationPolicy, load_policy
from ragserve.pipeline import QueryPipeline
from ragserve.rate_limiter import InMemoryBucketStore, RateLimiter, RedisBucketStore, TierLimits
from ragserve.retriever import Retriever
from ragserve.semantic_cache import SemanticCache
from ragserve.tenants import TenantResolver
from ragserve.tiered_cache import TieredResponseCache
from ragserve.usage_tracker import UsageTracker
from ragserve.vector_store import FaissVectorStore, InMemoryVectorStore, VectorStore


def create_embedder(backend: Optional[str] = None) -> Embedder:
    backend = (backend or config.EMBEDDINGS_BACKEND).lower()
    if backend == "stub":
        logger.info(f"Embedding backend: STUB (hashing, dim={config.STUB_EMBEDDING_DIM})")
        return HashingEmbedder(dim=config.STUB_EMBEDDING_DIM)
    if backend == "http":
        return AsyncEmbeddingClient()
    raise ConfigurationError(f"Unknown EMBEDDINGS_BACKEND: {backend} (expected http or stub)")


def create_vector_store(
    dim: int, backend: Optional[str] = None, index_root: Optional[Union[str, Path]] = None
) -> VectorStore:
    backend = (backend or config.VECTOR_BACKEND).lower()
    if backend == "faiss":
        root = Path(index_root) if index_root is not None else config.INDEX_ROOT
        logger.info(f"Vector backend: FAISS (dim={dim}, index_root={root})")
        return FaissVectorStore(dim, root)
    if backend == "memory":
        logger.info(f"Vector backend: in-memory (dim={dim})")
        return InMemoryVectorStore(dim)
    raise ConfigurationError(f"Unknown VECTOR_BACKEND: {backend} (expected faiss or memory)")


def create_llm_client(mock: Optional[bool] = None) -> LanguageModel:
    return AsyncLLMClient(mock=config.MOCK_LLM if mock is None else mock)


def create_exact_cache(redis_url: Optional[str] = None) -> ExactCache:
    url = config.REDIS_URL if redis_url is None else redis_url
    if url:
        return RedisResponseCache(url, prefix=config.CACHE_PREFIX, default_ttl=config.RESPONSE_CACHE_TTL)
    return InMemoryResponseCache(max_size=config.RESPONSE_CACHE_SIZE, default_ttl=config.RESPONSE_CACHE_TTL)


def create_rate_limiter(
    redis_client: Any = None,
    tier_limits: Optional[dict[str, TierLimits]] = None,
) -> RateLimiter:
    store = (
        RedisBucketStore(redis_client, prefix=config.CACHE_PREFIX)
        if redis_client is not None
        else InMemoryBucketStore()
    )
    return RateLimiter(store=store, tier_limits=tier_limits)


def build_pipeline(
    embedder: Optional[Embedder] = None,
    store: Optional[VectorStore] = None,
    llm: Optional[LanguageModel] = None,
    exact_cache: Optional[ExactCache] = None,
    resolver: Optional[TenantResolver] = None,
    rate_limiter: Optional[RateLimiter] = None,
    policy: Optional[ModerationPolicy] = None,
    usage: Optional[UsageTracker] = None,
    semantic_cache_enabled: Optional[bool] = None,
    moderation_enabled: Optional[bool] = None,
) -> QueryPipeline:
    """Assemble the pipeline; anything not passed in comes from configuration."""
    embedder = embedder if embedder is not None else create_embedder()
    store = store if store is not None else create_vector_store(embedder.dim)
    llm = llm if llm is not None else create_llm_client()
    exact_cache = exact_cache if exact_cache is not None else create_exact_cache()

    if resolver is None:
        resolver = TenantResolver.from_env(
            default_namespace=config.RAG_DEFAULT_NAMESPACE, required=config.RAG_AUTH_REQUIRED
        )
    if rate_limiter is None:
        redis_client = getattr(exact_cache, "client", None)
        rate_limiter = create_rate_limiter(redis_client)

    moderation = ModerationGate(
        policy if policy is not None else load_policy(),
        enabled=config.MODERATION_ENABLED if moderation_enabled is None else moderation_enabled,
    )

    semantic = None
    if config.SEMANTIC_CACHE_ENABLED if semantic_cache_enabled is None else semantic_cache_enabled:
        semantic = SemanticCache(
            embedder,
            store,
            namespace=config.SEMANTIC_CACHE_NAMESPACE,
            threshold=config.SEMANTIC_CACHE_THRESHOLD,
            ttl_seconds=config.SEMANTIC_CACHE_TTL_SECONDS,
        )
    cache = TieredResponseCache.build(exact=exact_cache, semantic=semantic, exact_ttl=config.RESPONSE_CACHE_TTL)

    pipeline = QueryPipeline(
        resolver=resolver,
        rate_limiter=rate_limiter,
        moderation=moderation,
        retriever=Retriever(embedder, store, default_namespace=config.RAG_DEFAULT_NAMESPACE),
        synthesizer=AnswerSynthesizer(llm),
        usage=usage if usage is not None else UsageTracker(max_records=config.USAGE_MAX_RECORDS),
        cache=cache,
    )
    logger.info(
        f"Pipeline ready: tenants={len(resolver)} cache_layers={[layer.backend for layer in cache.layers]} "
        f"moderation={moderation.enabled} llm={getattr(llm, 'model', type(llm).__name__)}"
    )
    return pipeline
