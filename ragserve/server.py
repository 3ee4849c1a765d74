from __future__ import annotations

import asyncio
import hmac
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, Response
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from ragserve import config as CFG
from ragserve.circuit_breaker import get_all_circuit_breakers, reset_all_circuit_breakers
from ragserve.config import CONFIG
from ragserve.errors import (
    AnswerGenerationFailed,
    Forbidden,
    InternalError,
    NotFound,
    RAGError,
    RateLimited,
    RetrievalFailed,
    ServiceUnavailable,
    ValidationError,
    format_error_for_logging,
    get_error_severity,
    http_status_for,
)
from ragserve.factory import build_pipeline
from ragserve.logging_config import log_error, setup_logging
from ragserve.metrics import get_content_type, get_metrics, track_circuit_breaker, track_request
from ragserve.models import ErrorBody, ErrorEnvelope, HealthResponse
from ragserve.pipeline import QueryPipeline
from ragserve.tenants import extract_api_key
from ragserve.usage_tracker import estimate_query_cost

SERVICE_NAME = "ragserve"
SERVICE_VERSION = "1.0.0"

# Messages shown instead of upstream error text in production
_SANITIZED_MESSAGES = {
    RetrievalFailed: "Document retrieval is temporarily unavailable",
    AnswerGenerationFailed: "Answer generation is temporarily unavailable",
    InternalError: "An unexpected error occurred",
}


# --------- Error rendering ---------

def _request_id(request: Request, err: Optional[RAGError] = None) -> str:
    rid = getattr(request.state, "request_id", None)
    if rid:
        return rid
    if err is not None and err.request_id:
        return err.request_id
    return str(uuid4())


def _public_message(err: RAGError) -> str:
    if CONFIG.IS_PRODUCTION:
        for cls, message in _SANITIZED_MESSAGES.items():
            if isinstance(err, cls):
                return message
    return err.message


def error_response(request: Request, err: RAGError) -> ORJSONResponse:
    request_id = _request_id(request, err)
    status = http_status_for(err)
    if status >= 500:
        details = format_error_for_logging(err, request_id)
        logger.error(f"[{request_id}] Request failed ({status}): {CFG.redact_secrets(details)}")
        log_error(
            err.error_code,
            err.message,
            request_id,
            status=status,
            severity=get_error_severity(err).value,
            path=request.url.path,
        )
    else:
        logger.warning(
            f"[{request_id}] Request rejected ({status} {err.error_code}): {err.message} path={request.url.path}"
        )

    envelope = ErrorEnvelope(
        request_id=request_id,
        error=ErrorBody(message=_public_message(err), code=err.error_code, details=err.public_details()),
    )
    headers = dict(err.headers) if isinstance(err, RateLimited) else {}
    headers["X-Request-Id"] = request_id
    return ORJSONResponse(envelope.render(), status_code=status, headers=headers)


async def _rag_error_handler(request: Request, exc: RAGError) -> ORJSONResponse:
    return error_response(request, exc)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
    if exc.status_code == 404:
        err: RAGError = NotFound(f"Route {request.method} {request.url.path} not found")
    else:
        err = RAGError(str(exc.detail), error_code="HTTP_ERROR")
        err.status_code = exc.status_code
        if exc.status_code == 405:
            err.error_code = "METHOD_NOT_ALLOWED"
    return error_response(request, err)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("query", "body", "path", "header"))
    return error_response(
        request,
        ValidationError(
            f"Invalid value for {field or 'request'}: {first.get('msg', 'validation failed')}",
            field=field or None,
        ),
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> ORJSONResponse:
    logger.exception(f"[{_request_id(request)}] Unhandled exception: {exc}")
    return error_response(request, InternalError(cause=exc))


# --------- Dependencies ---------

def get_pipeline(request: Request) -> QueryPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise ServiceUnavailable("Service is not ready")
    return pipeline


def require_admin(
    x_admin_key: Optional[str] = Header(default=None),
    admin_key: Optional[str] = Query(default=None, alias="adminKey"),
) -> None:
    """Gate for /admin routes: 503 when no admin key is configured, 403 on mismatch."""
    expected = CFG.RAG_ADMIN_KEY
    if not expected:
        logger.warning("Admin API accessed but RAG_ADMIN_KEY is not configured")
        raise ServiceUnavailable("Admin API not configured. Set RAG_ADMIN_KEY to enable it")
    provided = x_admin_key or admin_key or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Invalid admin key attempt")
        raise Forbidden("Invalid admin key", error_code="INVALID_ADMIN_KEY")


# --------- Routes ---------

router = APIRouter()
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.get("/")
def root(request: Request) -> Dict[str, Any]:
    return {
        "requestId": request.state.request_id,
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "endpoints": {
            "health": "GET /health",
            "query": "POST /query",
            "metrics": "GET /metrics",
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health")
async def health(request: Request, deep: bool = False) -> Dict[str, Any]:
    """
    Health endpoint.

    With ``deep=1`` the LLM and embedding backends are checked; any failing
    check reports ``degraded`` (still HTTP 200 so load balancers keep routing
    cache hits and retrieval-only traffic).
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    checks: Dict[str, Any] = {"pipeline": pipeline is not None}
    status = "ok" if pipeline is not None else "degraded"

    if deep and pipeline is not None:
        for name, component in (("llm", pipeline.synthesizer.llm), ("embeddings", pipeline.retriever.embedder)):
            check = getattr(component, "health_check", None)
            if check is None:
                continue
            try:
                checks[name] = await check()
            except Exception as e:
                checks[name] = {"ok": False, "details": CFG.redact_secrets(e)}
            if not checks[name].get("ok"):
                status = "degraded"
        store = pipeline.retriever.store
        checks["vector_store"] = {
            "ok": True,
            "namespaces": {ns or "default": await store.count(ns) for ns in store.namespaces()},
        }

    body = HealthResponse(status=status, env=CFG.ENV, checks=checks, config=CFG.health_summary()).model_dump()
    body["requestId"] = request.state.request_id
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    return body


@router.get("/live")
def live() -> Dict[str, str]:
    """Liveness check: returns 200 if process is alive (no dependencies checked)."""
    return {"status": "alive"}


@router.get("/ready")
def ready(request: Request) -> ORJSONResponse:
    """Readiness check: 200 once the pipeline is built."""
    if getattr(request.app.state, "pipeline", None) is None:
        return ORJSONResponse({"status": "not_ready", "reason": "pipeline not initialized"}, status_code=503)
    return ORJSONResponse({"status": "ready"})


@router.get("/metrics")
def metrics() -> Response:
    """
    Prometheus metrics endpoint.

    Circuit breaker gauges are refreshed before rendering.
    """
    for name, status in get_all_circuit_breakers().items():
        track_circuit_breaker(
            name=name,
            state=status["state"],
            metrics_data={
                "total_requests": status["total_requests"],
                "total_failures": status["total_failures"],
                "total_successes": status["total_successes"],
                "consecutive_failures": status["consecutive_failures"],
            },
        )
    return Response(content=get_metrics(), media_type=get_content_type())


@router.post("/query")
async def query(
    request: Request,
    mode: Optional[str] = Query(default=None),
    cache_mode: Optional[str] = Query(default=None, alias="cacheMode"),
    api_key_param: Optional[str] = Query(default=None, alias="apiKey"),
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> ORJSONResponse:
    """Retrieve passages for a query and, in answer mode, a cited answer."""
    request_id = request.state.request_id
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    result = await pipeline.handle(
        request_id=request_id,
        api_key=extract_api_key(authorization, x_api_key, api_key_param),
        payload=payload,
        mode=mode,
        cache_mode=cache_mode,
        endpoint=request.url.path,
    )
    headers = dict(result.headers)
    headers["X-Cache"] = result.cache_backend.upper() if result.cache_backend else "MISS"
    return ORJSONResponse(result.body, status_code=result.status_code, headers=headers)


@admin.get("/tiers")
def admin_tiers(pipeline: QueryPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return {
        "tiers": [
            {
                "name": name,
                "requestsPerMinute": limits.requests_per_minute,
                "requestsPerDay": limits.requests_per_day,
                "tokensPerDay": limits.tokens_per_day,
            }
            for name, limits in sorted(pipeline.rate_limiter.tier_limits.items())
        ],
        "defaultTopK": CFG.DEFAULT_TOP_K,
        "estimatedQueryCostMillicents": estimate_query_cost(CFG.DEFAULT_TOP_K),
    }


@admin.get("/usage/{tenant_id}")
async def admin_usage(tenant_id: str, pipeline: QueryPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    tenant = pipeline.resolver.tenants().get(tenant_id)
    return {
        "tenantId": tenant_id,
        "rateLimits": await pipeline.rate_limiter.usage(tenant_id, tenant.tier if tenant else None),
        "today": pipeline.usage.today(tenant_id),
        "currentMonth": pipeline.usage.current_month(tenant_id),
    }


@admin.get("/usage/{tenant_id}/records")
def admin_usage_records(
    tenant_id: str,
    limit: int = Query(default=1000, ge=1, le=10000),
    pipeline: QueryPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    records = pipeline.usage.export(tenant_id, limit)
    return {"tenantId": tenant_id, "count": len(records), "records": records}


@admin.get("/cache")
def admin_cache(pipeline: QueryPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    layers = pipeline.cache.stats() if pipeline.cache is not None else {}
    return {"layers": layers, "pendingWrites": pipeline.pending_writes}


@admin.delete("/cache")
async def admin_cache_clear(pipeline: QueryPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    await pipeline.drain()
    if pipeline.cache is not None:
        await pipeline.cache.clear()
    logger.info("Response caches cleared via admin API")
    return {"cleared": True}


@admin.get("/circuit-breakers")
def admin_circuit_breakers() -> Dict[str, Any]:
    return {"circuitBreakers": get_all_circuit_breakers()}


@admin.post("/circuit-breakers/reset")
def admin_circuit_breakers_reset() -> Dict[str, Any]:
    reset_all_circuit_breakers()
    return {"reset": True}


# --------- Application ---------

def start_sweepers(pipeline: QueryPipeline) -> List[asyncio.Task]:
    """Background expiry for rate-limit buckets and, when enabled, semantic cache entries."""
    tasks = [asyncio.create_task(pipeline.rate_limiter.run_sweeper(CFG.RATE_LIMIT_SWEEP_SECONDS))]
    semantic = pipeline.cache.semantic if pipeline.cache is not None else None
    if semantic is not None:
        tasks.append(asyncio.create_task(semantic.run_sweeper(CFG.SEMANTIC_CACHE_SWEEP_SECONDS)))
    return tasks


async def _startup(app: FastAPI, pipeline: Optional[QueryPipeline]) -> None:
    setup_logging()
    logger.info(f"Starting {SERVICE_NAME} (env={CFG.ENV})")
    app.state.pipeline = pipeline if pipeline is not None else build_pipeline()
    namespaces = app.state.pipeline.retriever.store.namespaces()
    logger.info(f"Vector namespaces loaded: {[ns or 'default' for ns in namespaces]}")
    app.state.sweepers = start_sweepers(app.state.pipeline)
    logger.info(f"{SERVICE_NAME} startup complete")


async def _shutdown(app: FastAPI) -> None:
    for sweeper in getattr(app.state, "sweepers", []):
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    app.state.sweepers = []
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        try:
            await pipeline.aclose()
        except Exception as e:
            logger.warning(f"Error during pipeline shutdown: {e}")
    app.state.pipeline = None
    logger.info(f"{SERVICE_NAME} shutdown complete")


def create_app(pipeline: Optional[QueryPipeline] = None) -> FastAPI:
    """Build the FastAPI app. ``pipeline`` overrides the one built from configuration."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await _startup(app, pipeline)
        yield
        await _shutdown(app)

    app = FastAPI(
        title=SERVICE_NAME,
        version=SERVICE_VERSION,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.pipeline = None

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Assign the request id, log the request and record HTTP metrics."""
        request_id = str(uuid4())
        request.state.request_id = request_id
        start_time = time.time()
        logger.info(
            f"[{request_id}] → {request.method} {request.url.path} "
            f"client={request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"[{request_id}] Unhandled exception: {e}")
            response = error_response(request, InternalError(cause=e))

        duration = time.time() - start_time
        if request.url.path != "/metrics":
            track_request(
                endpoint=request.url.path,
                method=request.method,
                status=response.status_code,
                duration=duration,
            )
        response.headers["X-Request-Id"] = request_id
        logger.info(
            f"[{request_id}] ← {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CFG.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Admin-Key"],
        expose_headers=[
            "X-Request-Id",
            "X-Cache",
            "Retry-After",
            "X-RateLimit-Limit-Minute",
            "X-RateLimit-Remaining-Minute",
            "X-RateLimit-Reset-Minute",
            "X-RateLimit-Limit-Day",
            "X-RateLimit-Remaining-Day",
        ],
    )

    app.add_exception_handler(RAGError, _rag_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(router)
    app.include_router(admin)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("ragserve.server:app", host=CFG.API_HOST, port=CFG.API_PORT)


if __name__ == "__main__":
    main()
