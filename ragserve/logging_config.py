from __future__ import annotations

"""
Centralized logging configuration for the RAG service.

Provides unified logging across all modules using loguru.
Supports both console and file output with structured logging.
"""

import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from loguru import logger
from ragserve.config import CONFIG, redact_secrets


def setup_logging() -> None:
    """
    Configure unified logging for the entire service.

    This should be called once at application startup.
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<green>{time:HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=CONFIG.LOG_LEVEL,
        colorize=True,
    )

    if CONFIG.LOG_FILE:
        logger.add(
            CONFIG.LOG_FILE,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name}:{function}:{line} - "
                "{message}"
            ),
            level=CONFIG.LOG_LEVEL,
            rotation="500 MB",
            retention="7 days",
            compression="zip",
        )

    logger.info(f"Logging configured: level={CONFIG.LOG_LEVEL} env={CONFIG.ENV}")


def log_structured(event_type: str, data: Dict[str, Any], level: str = "info") -> None:
    """
    Log structured data as JSON.

    Args:
        event_type: Type of event (e.g., 'query_completed', 'error_occurred')
        data: Dictionary of data to log
        level: Log level (debug, info, warning, error, critical)
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        **data,
    }

    if "error" in log_entry and log_entry["error"]:
        log_entry["error"] = redact_secrets(log_entry["error"])

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_entry, default=str))


def log_query(
    request_id: str,
    tenant_id: str,
    mode: str,
    top_k: int,
    latency_ms: int,
    results_count: int,
    cache_backend: Optional[str] = None,
    citations_count: Optional[int] = None,
) -> None:
    """Log a completed /query request."""
    log_structured(
        "query_completed",
        {
            "request_id": request_id,
            "tenant_id": tenant_id,
            "mode": mode,
            "top_k": top_k,
            "latency_ms": latency_ms,
            "results_count": results_count,
            "cache": cache_backend or "miss",
            "citations_count": citations_count,
        },
    )


def log_cache_event(backend: str, operation: str, hit: Optional[bool], latency_ms: float) -> None:
    """Log a cache read or write."""
    log_structured(
        "cache_operation",
        {
            "backend": backend,
            "operation": operation,
            "hit": hit,
            "latency_ms": round(latency_ms, 3),
        },
        level="debug",
    )


def log_llm_call(
    request_id: Optional[str],
    prompt_tokens: int,
    response_tokens: int,
    latency_ms: int,
    model: Optional[str] = None,
) -> None:
    """Log an LLM API call."""
    log_structured(
        "llm_call_completed",
        {
            "request_id": request_id,
            "model": model,
            "prompt_tokens": prompt_tokens,
            "response_tokens": response_tokens,
            "latency_ms": latency_ms,
        },
    )


def log_error(error_type: str, message: str, request_id: Optional[str] = None, **kwargs: Any) -> None:
    """Log an error with context."""
    log_structured(
        "error_occurred",
        {
            "error_type": error_type,
            "error": message,
            "request_id": request_id,
            **kwargs,
        },
        level="error",
    )
