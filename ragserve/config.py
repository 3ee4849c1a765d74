#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults."""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

ROOT = Path(__file__).resolve().parents[1]


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name)
    return val if val is not None else (default or "")


def _parse_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


def _parse_list(name: str, default: str = "") -> list[str]:
    return [s.strip() for s in _get_env(name, default).split(",") if s.strip()]


# Server
ENV: str = _get_env("ENV", "dev").strip().lower()
API_HOST: str = _get_env("API_HOST", "0.0.0.0")
API_PORT: int = _parse_int("API_PORT", 7001)
CORS_ALLOWED_ORIGINS: list[str] = _parse_list(
    "CORS_ALLOWED_ORIGINS", "http://localhost:8080,http://127.0.0.1:8080"
)

# Auth
RAG_AUTH_REQUIRED: bool = _parse_bool("RAG_AUTH_REQUIRED", True)
RAG_DEFAULT_NAMESPACE: str = _get_env("RAG_DEFAULT_NAMESPACE", "")
RAG_ADMIN_KEY: str = _get_env("RAG_ADMIN_KEY", "")

# Rate limiting
RATE_LIMIT_SWEEP_SECONDS: float = _parse_float("RATE_LIMIT_SWEEP_SECONDS", 60.0)

# Moderation
MODERATION_ENABLED: bool = _parse_bool("MODERATION_ENABLED", True)
MODERATION_ALLOWED_KEYWORDS: list[str] = _parse_list("MODERATION_ALLOWED_KEYWORDS")
MODERATION_KEYWORDS_PATH: str = _get_env("MODERATION_KEYWORDS_PATH", "")
MODERATION_PATTERNS_PATH: str = _get_env("MODERATION_PATTERNS_PATH", "")

# Exact + semantic cache
REDIS_URL: str = _get_env("REDIS_URL", "")
CACHE_PREFIX: str = _get_env("CACHE_PREFIX", "ragserve")
RESPONSE_CACHE_SIZE: int = _parse_int("RESPONSE_CACHE_SIZE", 1000)
RESPONSE_CACHE_TTL: int = _parse_int("RESPONSE_CACHE_TTL", 3600)
SEMANTIC_CACHE_ENABLED: bool = _parse_bool("SEMANTIC_CACHE_ENABLED", True)
SEMANTIC_CACHE_NAMESPACE: str = _get_env("SEMANTIC_CACHE_NAMESPACE", "semantic-cache")
SEMANTIC_CACHE_THRESHOLD: float = _parse_float("SEMANTIC_CACHE_THRESHOLD", 0.92)
if not (0.0 <= SEMANTIC_CACHE_THRESHOLD <= 1.0):
    raise RuntimeError("SEMANTIC_CACHE_THRESHOLD must be in [0,1].")
SEMANTIC_CACHE_TTL_SECONDS: int = _parse_int("SEMANTIC_CACHE_TTL_SECONDS", 3600)
SEMANTIC_CACHE_SWEEP_SECONDS: float = _parse_float("SEMANTIC_CACHE_SWEEP_SECONDS", 300.0)

# Embeddings
EMBEDDINGS_BACKEND: str = _get_env("EMBEDDINGS_BACKEND", "http").strip().lower()
EMBEDDING_API_TYPE: str = _get_env("EMBEDDING_API_TYPE", "ollama").strip().lower()
EMBEDDING_BASE_URL: str = _get_env("EMBEDDING_BASE_URL", "http://localhost:11434").strip()
EMBEDDING_MODEL: str = _get_env("EMBEDDING_MODEL", "nomic-embed-text:latest")
try:
    EMBEDDING_DIM: int = int(_get_env("EMBEDDING_DIM", "768"))
except ValueError:
    raise RuntimeError("Invalid EMBEDDING_DIM; must be integer.")
EMBEDDING_TIMEOUT_SECONDS: float = _parse_float("EMBEDDING_TIMEOUT_SECONDS", 15.0)
EMBEDDING_MEMO_SIZE: int = _parse_int("EMBEDDING_MEMO_SIZE", 512)
STUB_EMBEDDING_DIM: int = _parse_int("STUB_EMBEDDING_DIM", 384)

# Language model
LLM_API_TYPE: str = _get_env("LLM_API_TYPE", "openai").strip().lower()
LLM_BASE_URL: str = _get_env("LLM_BASE_URL", "https://api.openai.com").strip()
LLM_CHAT_PATH: str = _get_env("LLM_CHAT_PATH", "").strip()
LLM_MODEL: str = _get_env("LLM_MODEL", "gpt-4o-mini").strip()
LLM_TEMPERATURE: float = _parse_float("LLM_TEMPERATURE", 0.2)
LLM_MAX_TOKENS: int = _parse_int("LLM_MAX_TOKENS", 800)
LLM_TIMEOUT_SECONDS: float = _parse_float("LLM_TIMEOUT_SECONDS", 30.0)
LLM_RETRIES: int = _parse_int("LLM_RETRIES", 2)
LLM_BACKOFF: float = _parse_float("LLM_BACKOFF", 0.75)
MOCK_LLM: bool = _parse_bool("MOCK_LLM", False)
OPENAI_API_KEY: str = _get_env("OPENAI_API_KEY", "")
LLM_BEARER_TOKEN: str = _get_env("LLM_BEARER_TOKEN", "") or OPENAI_API_KEY
EMBEDDING_API_KEY: str = _get_env("EMBEDDING_API_KEY", "") or OPENAI_API_KEY

# Retrieval
VECTOR_BACKEND: str = _get_env("VECTOR_BACKEND", "faiss").strip().lower()
INDEX_ROOT: Path = Path(_get_env("RAG_INDEX_ROOT", "index/faiss"))
DEFAULT_TOP_K: int = _parse_int("DEFAULT_TOP_K", 5)
MAX_TOP_K: int = _parse_int("MAX_TOP_K", 100)

# Prompt budget
PROMPT_PASSAGE_CHAR_LIMIT: int = _parse_int("PROMPT_PASSAGE_CHAR_LIMIT", 2000)
PROMPT_CONTEXT_CHAR_LIMIT: int = _parse_int("PROMPT_CONTEXT_CHAR_LIMIT", 12000)

# Usage
USAGE_MAX_RECORDS: int = _parse_int("USAGE_MAX_RECORDS", 10000)


_SECRET_PATTERNS = [
    (re.compile(r"Bearer\s+[^\s]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"\bsk[_-][A-Za-z0-9_\-]{6,}"), "sk_***"),
    (re.compile(r"(api[_-]?key=)[^&\s]+", re.IGNORECASE), r"\1***"),
]


def redact_secrets(text: object) -> str:
    """Mask bearer tokens and API keys before text reaches a log sink."""
    out = str(text)
    for pattern, replacement in _SECRET_PATTERNS:
        out = pattern.sub(replacement, out)
    return out


def health_summary() -> dict:
    """Return a non-secret config snapshot for /health."""
    return {
        "env": ENV,
        "embeddings_backend": EMBEDDINGS_BACKEND,
        "embedding_model": EMBEDDING_MODEL,
        "vector_backend": VECTOR_BACKEND,
        "index_root": str(INDEX_ROOT),
        "llm_api_type": LLM_API_TYPE,
        "llm_model": LLM_MODEL,
        "mock_llm": MOCK_LLM,
        "exact_cache_backend": "redis" if REDIS_URL else "memory",
        "semantic_cache_enabled": SEMANTIC_CACHE_ENABLED,
        "semantic_cache_threshold": SEMANTIC_CACHE_THRESHOLD,
        "semantic_cache_ttl_seconds": SEMANTIC_CACHE_TTL_SECONDS,
        "moderation_enabled": MODERATION_ENABLED,
        "auth_required": RAG_AUTH_REQUIRED,
    }


class _Config:
    LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO").upper()
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None
    ENV: str = ENV
    IS_PRODUCTION: bool = ENV in ("prod", "production")


CONFIG = _Config()
