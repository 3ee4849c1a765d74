"""
Best-effort execution for non-critical stages.

Cache reads/writes, usage tracking and background write-back must never fail
a request. Instead of a try/except at every call site they go through
``best_effort`` / ``run_best_effort``: the failure is logged with its stage
name, counted in ``rag_best_effort_failures_total`` and replaced by a
default value. Cancellation is always propagated.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional, TypeVar

from loguru import logger

from ragserve.errors import format_error_for_logging, is_fatal
from ragserve.metrics import best_effort_failures

T = TypeVar("T")


def _record_failure(stage: str, error: Exception, request_id: Optional[str]) -> None:
    best_effort_failures.labels(stage=stage).inc()
    details = format_error_for_logging(error, request_id)
    # non-retriable failures (bad config, bad data) will not clear on their own
    level = "ERROR" if is_fatal(error) else "WARNING"
    logger.log(level, f"[{request_id}] Best-effort stage '{stage}' failed, continuing: {details}")


async def run_best_effort(
    awaitable: Awaitable[T],
    stage: str,
    default: Any = None,
    request_id: Optional[str] = None,
) -> Any:
    """Await ``awaitable``; on any exception return ``default`` instead."""
    try:
        return await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as e:
        _record_failure(stage, e, request_id)
        return default


def best_effort(stage: str, default: Any = None) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[Any]]]:
    """
    Decorator form of ``run_best_effort`` for async callables.

    Example:
        @best_effort("usage_tracking")
        async def track(record): ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await run_best_effort(func(*args, **kwargs), stage, default, kwargs.get("request_id"))

        return wrapper

    return decorator
