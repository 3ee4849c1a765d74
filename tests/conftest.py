"""Pytest configuration and fixtures for ragserve tests.

Every fixture builds fully in-process components (hashing embedder,
in-memory vector store, scripted language model) so no test touches the
network.
"""

import asyncio
import os
from typing import List, Optional

import pytest

from ragserve.cache import InMemoryResponseCache
from ragserve.circuit_breaker import reset_all_circuit_breakers
from ragserve.embeddings import HashingEmbedder
from ragserve.factory import build_pipeline
from ragserve.ingest import ingest_texts
from ragserve.llm_client import mock_answer
from ragserve.moderation import ModerationPolicy
from ragserve.rate_limiter import DEFAULT_TIER_LIMITS, InMemoryBucketStore, RateLimiter
from ragserve.tenants import Tenant, TenantResolver
from ragserve.usage_tracker import UsageTracker
from ragserve.vector_store import InMemoryVectorStore

EMBED_DIM = 256

ACME_KEY = "acme-key-0001"
GLOBEX_KEY = "globex-key-0002"

ACME_DOCS = [
    "The lease agreement allows early termination with sixty days written notice to the landlord.",
    "Under the NDA contract, the receiving party must keep confidential information secret for five years.",
    "The warranty limits liability to the original purchase price of the equipment.",
]

GLOBEX_DOCS = [
    "Globex litigation policy requires the defendant to preserve all relevant documents.",
    "The settlement agreement releases both parties from further claims.",
]


def run_sync(coro):
    """Run a coroutine on a private loop (safe from sync fixtures)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (skip with '-m \"not integration\"')"
    )


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers live in a process-wide registry; start every test closed."""
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest.fixture
def ci_environment():
    """True when running under a CI system."""
    ci_vars = ["CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_HOME"]
    return any(os.getenv(var) for var in ci_vars)


class ScriptedLLM:
    """Language model double: records every call, answers from a script.

    With no scripted reply it cites the first passage it was given, the
    same way ``MOCK_LLM`` mode does.
    """

    def __init__(self, reply: Optional[str] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.model = "scripted"
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def complete(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply if self.reply is not None else mock_answer(user)


@pytest.fixture
def embedder():
    return HashingEmbedder(dim=EMBED_DIM)


@pytest.fixture
def store(embedder):
    """Vector store seeded with one corpus per tenant namespace."""
    vs = InMemoryVectorStore(EMBED_DIM)

    async def _seed():
        await ingest_texts(ACME_DOCS, embedder, vs, namespace="acme", source="acme")
        await ingest_texts(GLOBEX_DOCS, embedder, vs, namespace="globex", source="globex")

    run_sync(_seed())
    return vs


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def resolver():
    return TenantResolver(
        {
            ACME_KEY: Tenant(id="acme", name="Acme", namespace="acme", tier="free"),
            GLOBEX_KEY: Tenant(id="globex", name="Globex", namespace="globex", tier="pro"),
        },
        required=True,
    )


@pytest.fixture
def make_pipeline(embedder, store, llm, resolver):
    """Factory for a fully in-process pipeline; keyword overrides replace parts."""

    def _make(**overrides):
        kwargs = dict(
            embedder=embedder,
            store=store,
            llm=llm,
            exact_cache=InMemoryResponseCache(max_size=100, default_ttl=3600),
            resolver=resolver,
            rate_limiter=RateLimiter(InMemoryBucketStore(), DEFAULT_TIER_LIMITS),
            policy=ModerationPolicy(),
            usage=UsageTracker(max_records=1000),
            semantic_cache_enabled=True,
            moderation_enabled=True,
        )
        kwargs.update(overrides)
        return build_pipeline(**kwargs)

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()
