"""
Request pipeline for POST /query.

Sequences one query through the serving stages:

    Received -> Authenticated -> RateChecked -> Moderated -> CacheChecked
             -> Retrieved -> [Answered] -> Tracked -> Responded

Any stage may end in Errored instead. Auth, rate-limit, moderation and
validation errors are raised before any cache, retrieval or model work.
Cache and usage-tracking failures never fail a request; cache write-back
runs on a background task after the response body is composed.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ragserve import config
from ragserve.answer import AnswerSynthesizer
from ragserve.best_effort import run_best_effort
from ragserve.errors import InternalError, RAGError, ValidationError
from ragserve.logging_config import log_query
from ragserve.metrics import track_outcome, track_stage
from ragserve.models import AnswerResult, CacheMode, QueryMode, QueryRequest, RetrievedPassage
from ragserve.moderation import ModerationGate
from ragserve.prompt import estimate_tokens
from ragserve.rate_limiter import RateLimiter
from ragserve.retriever import Retriever
from ragserve.tenants import Tenant, TenantResolver
from ragserve.tiered_cache import CacheRequest, TieredResponseCache
from ragserve.usage_tracker import UsageRecord, UsageTracker


class PipelineState(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    RATE_CHECKED = "rate_checked"
    MODERATED = "moderated"
    CACHE_CHECKED = "cache_checked"
    RETRIEVED = "retrieved"
    ANSWERED = "answered"
    TRACKED = "tracked"
    RESPONDED = "responded"
    ERRORED = "errored"


@dataclass
class PipelineResult:
    request_id: str
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    cache_backend: Optional[str] = None
    state_trace: List[PipelineState] = field(default_factory=list)


@contextmanager
def _stage(name: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        track_stage(name, time.perf_counter() - started)


def _field_message(field_name: str) -> str:
    if field_name == "topK":
        return f"topK must be an integer between 1 and {config.MAX_TOP_K}"
    if field_name == "query":
        return "query is required and must be a non-empty string"
    return f"Invalid value for {field_name}"


def validate_payload(payload: Any) -> QueryRequest:
    """Parse the raw JSON body into a QueryRequest or raise ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return QueryRequest.model_validate(payload)
    except PydanticValidationError as e:
        errors = e.errors()
        first = ".".join(str(p) for p in errors[0]["loc"]) if errors and errors[0].get("loc") else "body"
        raise ValidationError(
            _field_message(first),
            field=first,
            details={"errors": [{"field": ".".join(str(p) for p in err.get("loc", ())), "reason": err.get("msg")} for err in errors]},
        ) from e


def parse_mode(mode: Optional[str]) -> QueryMode:
    try:
        return QueryMode((mode or QueryMode.ANSWER.value).lower())
    except ValueError:
        raise ValidationError("mode must be 'answer' or 'retrieval'", field="mode")


def parse_cache_mode(cache_mode: Optional[str]) -> CacheMode:
    try:
        return CacheMode((cache_mode or CacheMode.ON.value).lower())
    except ValueError:
        raise ValidationError("cacheMode must be 'on' or 'off'", field="cacheMode")


def _passage_out(passage: RetrievedPassage) -> Dict[str, Any]:
    return {"text": passage.text, "score": passage.score, "metadata": dict(passage.metadata)}


def answer_data(query: str, result: AnswerResult, passages: List[RetrievedPassage]) -> Dict[str, Any]:
    return {
        "query": query,
        "answer": result.answer,
        "citations": [{"index": i, **_passage_out(passages[i])} for i in result.citations],
    }


def retrieval_data(query: str, passages: List[RetrievedPassage]) -> Dict[str, Any]:
    return {"query": query, "results": [_passage_out(p) for p in passages]}


class QueryPipeline:
    """
    The per-request orchestrator. Holds no per-request state; every
    collaborator it owns is process-wide and shared across tenants.
    """

    def __init__(
        self,
        resolver: TenantResolver,
        rate_limiter: RateLimiter,
        moderation: ModerationGate,
        retriever: Retriever,
        synthesizer: AnswerSynthesizer,
        usage: UsageTracker,
        cache: Optional[TieredResponseCache] = None,
    ):
        self.resolver = resolver
        self.rate_limiter = rate_limiter
        self.moderation = moderation
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.usage = usage
        self.cache = cache
        self._pending: Set[asyncio.Task] = set()

    def _namespace(self, tenant: Tenant) -> str:
        return tenant.namespace or self.retriever.default_namespace

    async def handle(
        self,
        request_id: str,
        api_key: Optional[str],
        payload: Any,
        mode: Optional[str] = None,
        cache_mode: Optional[str] = None,
        endpoint: str = "/query",
    ) -> PipelineResult:
        """
        Run one query end to end.

        Raises:
            RAGError: every failure, with ``request_id`` set for the HTTP layer
        """
        trace = [PipelineState.RECEIVED]
        started = time.perf_counter()
        mode_label = (mode or QueryMode.ANSWER.value).lower()
        try:
            with _stage("auth"):
                tenant = self.resolver.resolve(api_key, request_id=request_id)
            trace.append(PipelineState.AUTHENTICATED)

            with _stage("rate_limit"):
                decision = await self.rate_limiter.check(tenant.id, tenant.tier, request_id)
            trace.append(PipelineState.RATE_CHECKED)
            headers = decision.headers()

            with _stage("moderation"):
                self.moderation.check(payload.get("query") if isinstance(payload, dict) else None, request_id)
            trace.append(PipelineState.MODERATED)

            request = validate_payload(payload)
            query_mode = parse_mode(mode)
            mode_label = query_mode.value
            use_cache = parse_cache_mode(cache_mode) is CacheMode.ON and self.cache is not None

            namespace = self._namespace(tenant)
            cache_req = CacheRequest(request.query, request.top_k, query_mode.value, namespace)

            if use_cache:
                with _stage("cache_lookup"):
                    hit = await self.cache.lookup(cache_req, request_id)
                trace.append(PipelineState.CACHE_CHECKED)
                if hit is not None:
                    logger.info(f"[{request_id}] Cache hit ({hit.backend}) for tenant={tenant.id}")
                    await self._track_usage(
                        UsageRecord(
                            tenant_id=tenant.id,
                            endpoint=endpoint,
                            request_id=request_id,
                            duration_ms=int((time.perf_counter() - started) * 1000),
                            cache_hit=True,
                        )
                    )
                    trace.append(PipelineState.RESPONDED)
                    track_outcome(query_mode.value, "cache_hit")
                    log_query(
                        request_id,
                        tenant.id,
                        query_mode.value,
                        request.top_k,
                        int((time.perf_counter() - started) * 1000),
                        len(hit.value.get("results") or hit.value.get("citations") or []),
                        cache_backend=hit.backend,
                    )
                    return PipelineResult(
                        request_id=request_id,
                        status_code=200,
                        body={"requestId": request_id, "data": hit.value},
                        headers=headers,
                        cache_backend=hit.backend,
                        state_trace=trace,
                    )
            else:
                trace.append(PipelineState.CACHE_CHECKED)
                logger.debug(f"[{request_id}] Cache bypassed (cacheMode={cache_mode or 'on'})")

            with _stage("retrieval"):
                passages = await self.retriever.retrieve(request.query, request.top_k, namespace, request_id)
            trace.append(PipelineState.RETRIEVED)

            result: Optional[AnswerResult] = None
            if query_mode is QueryMode.ANSWER:
                with _stage("answer"):
                    result = await self.synthesizer.synthesize(request.query, passages, request_id)
                trace.append(PipelineState.ANSWERED)
                data = answer_data(request.query, result, passages)
            else:
                data = retrieval_data(request.query, passages)

            duration_ms = int((time.perf_counter() - started) * 1000)
            await self._track_usage(
                UsageRecord(
                    tenant_id=tenant.id,
                    endpoint=endpoint,
                    request_id=request_id,
                    embedding_tokens=estimate_tokens(request.query),
                    llm_prompt_tokens=result.prompt_tokens if result else 0,
                    llm_completion_tokens=result.completion_tokens if result else 0,
                    duration_ms=duration_ms,
                    chunks_retrieved=len(passages),
                )
            )
            trace.append(PipelineState.TRACKED)

            if use_cache:
                self._schedule_write_back(cache_req, data, request_id)

            trace.append(PipelineState.RESPONDED)
            track_outcome(query_mode.value, "ok")
            log_query(
                request_id,
                tenant.id,
                query_mode.value,
                request.top_k,
                duration_ms,
                len(passages),
                citations_count=len(result.citations) if result else None,
            )
            return PipelineResult(
                request_id=request_id,
                status_code=200,
                body={"requestId": request_id, "data": data},
                headers=headers,
                state_trace=trace,
            )

        except RAGError as e:
            e.request_id = request_id
            e.context.setdefault("stage", trace[-1].value)
            trace.append(PipelineState.ERRORED)
            track_outcome(mode_label, e.error_code.lower())
            raise
        except Exception as e:
            trace.append(PipelineState.ERRORED)
            track_outcome(mode_label, "internal_error")
            logger.exception(f"[{request_id}] Unexpected pipeline failure after {trace[-2].value}: {e}")
            err = InternalError(cause=e, context={"stage": trace[-2].value})
            err.request_id = request_id
            raise err from e

    async def _track_usage(self, record: UsageRecord) -> None:
        async def _track() -> None:
            self.usage.track(record)
            tokens = record.llm_prompt_tokens + record.llm_completion_tokens
            if tokens:
                await self.rate_limiter.record_tokens(record.tenant_id, tokens)

        with _stage("usage"):
            await run_best_effort(_track(), "usage_tracking", None, record.request_id)

    def _schedule_write_back(self, req: CacheRequest, data: Dict[str, Any], request_id: str) -> None:
        task = asyncio.create_task(
            run_best_effort(self.cache.store(req, data, request_id), "cache_write_back", None, request_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight cache write-backs."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self.cache is not None:
            await self.cache.close()
        for component in (self.retriever.embedder, self.synthesizer.llm):
            closer = getattr(component, "close", None)
            if closer is not None:
                await run_best_effort(closer(), f"close_{type(component).__name__}")
