"""
Prometheus metrics for the RAG service.

Provides counters, histograms, and gauges for tracking:
- Request counts and status codes
- Cache hit rates per backend (memory, redis, semantic)
- Pipeline stage latency and outcomes
- Rate-limit and moderation rejections
- Retrieval and LLM call statistics
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from typing import Optional

# ============================================================================
# HTTP Request Metrics
# ============================================================================

request_count = Counter(
    'rag_requests_total',
    'Total number of HTTP requests',
    ['endpoint', 'method', 'status']
)

request_latency = Histogram(
    'rag_request_duration_seconds',
    'HTTP request latency in seconds',
    ['endpoint', 'method'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# ============================================================================
# Cache Metrics
# ============================================================================

cache_hits = Counter(
    'rag_cache_hits_total',
    'Total number of cache hits',
    ['backend']
)

cache_misses = Counter(
    'rag_cache_misses_total',
    'Total number of cache misses',
    ['backend']
)

cache_operation_latency = Histogram(
    'rag_cache_operation_duration_seconds',
    'Cache read/write latency in seconds',
    ['backend', 'operation', 'hit'],
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0)
)

cache_writes = Counter(
    'rag_cache_writes_total',
    'Total number of cache writes',
    ['backend', 'status']
)

cache_size = Gauge(
    'rag_cache_size_entries',
    'Current number of entries in cache',
    ['backend']
)

# ============================================================================
# Pipeline Metrics
# ============================================================================

pipeline_stage_latency = Histogram(
    'rag_pipeline_stage_duration_seconds',
    'Latency of each request pipeline stage in seconds',
    ['stage'],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

pipeline_outcomes = Counter(
    'rag_pipeline_outcomes_total',
    'Terminal outcome of each /query request',
    ['mode', 'outcome']
)

rate_limit_rejections = Counter(
    'rag_rate_limit_rejections_total',
    'Requests rejected by the rate limiter',
    ['tier', 'window']
)

moderation_blocks = Counter(
    'rag_moderation_blocks_total',
    'Queries blocked by the moderation gate',
    ['reason']
)

best_effort_failures = Counter(
    'rag_best_effort_failures_total',
    'Failures swallowed by best-effort stages',
    ['stage']
)

# ============================================================================
# Search & Retrieval Metrics
# ============================================================================

search_results_count = Histogram(
    'rag_search_results_count',
    'Number of results returned per search',
    ['namespace'],
    buckets=(0, 1, 3, 5, 10, 20, 50, 100)
)

search_latency = Histogram(
    'rag_search_duration_seconds',
    'Retrieval latency in seconds (embedding + vector search)',
    ['namespace'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
)

# ============================================================================
# LLM Metrics
# ============================================================================

llm_requests = Counter(
    'rag_llm_requests_total',
    'Total number of LLM requests',
    ['model', 'status']
)

llm_latency = Histogram(
    'rag_llm_duration_seconds',
    'LLM request latency in seconds',
    ['model'],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0)
)

llm_tokens = Histogram(
    'rag_llm_tokens_total',
    'Estimated LLM tokens per request',
    ['model', 'type'],  # type: input or output
    buckets=(50, 100, 250, 500, 1000, 2000, 4000, 8000)
)

# ============================================================================
# Usage Metrics
# ============================================================================

usage_cost = Counter(
    'rag_usage_estimated_cost_millicents_total',
    'Estimated cost of served requests in millicents',
    ['tenant']
)

# ============================================================================
# Circuit Breaker Metrics
# ============================================================================

circuit_breaker_state = Gauge(
    'rag_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['name']
)

circuit_breaker_consecutive_failures = Gauge(
    'rag_circuit_breaker_consecutive_failures',
    'Current consecutive failures',
    ['name']
)

circuit_breaker_state_changes = Counter(
    'rag_circuit_breaker_state_changes_total',
    'Circuit breaker state transitions',
    ['name', 'from_state', 'to_state']
)

# ============================================================================
# Helper Functions
# ============================================================================

def track_request(endpoint: str, method: str, status: int, duration: float) -> None:
    """
    Track HTTP request metrics.

    Args:
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status: HTTP status code
        duration: Request duration in seconds
    """
    request_count.labels(endpoint=endpoint, method=method, status=status).inc()
    request_latency.labels(endpoint=endpoint, method=method).observe(duration)


def track_cache_operation(backend: str, operation: str, hit: Optional[bool], duration: float) -> None:
    """
    Track a cache read or write.

    Args:
        backend: memory, redis or semantic
        operation: get or set
        hit: True/False for reads, None for writes
        duration: Operation latency in seconds
    """
    if operation == "get":
        if hit:
            cache_hits.labels(backend=backend).inc()
        else:
            cache_misses.labels(backend=backend).inc()
    label = "none" if hit is None else str(bool(hit)).lower()
    cache_operation_latency.labels(backend=backend, operation=operation, hit=label).observe(duration)


def track_cache_write(backend: str, ok: bool) -> None:
    cache_writes.labels(backend=backend, status="ok" if ok else "error").inc()


def track_stage(stage: str, duration: float) -> None:
    pipeline_stage_latency.labels(stage=stage).observe(duration)


def track_outcome(mode: str, outcome: str) -> None:
    pipeline_outcomes.labels(mode=mode, outcome=outcome).inc()


def track_search(namespace: str, num_results: int, duration: float) -> None:
    """
    Track retrieval metrics.

    Args:
        namespace: Vector-store namespace searched
        num_results: Number of passages returned
        duration: Embedding + search duration in seconds
    """
    ns = namespace or "default"
    search_results_count.labels(namespace=ns).observe(num_results)
    search_latency.labels(namespace=ns).observe(duration)


def track_llm_request(model: str, status: str, duration: float,
                      input_tokens: Optional[int] = None,
                      output_tokens: Optional[int] = None) -> None:
    """
    Track LLM request metrics.

    Args:
        model: LLM model name
        status: Request status (success, error, timeout, etc.)
        duration: Request duration in seconds
        input_tokens: Number of input tokens (optional)
        output_tokens: Number of output tokens (optional)
    """
    llm_requests.labels(model=model, status=status).inc()
    llm_latency.labels(model=model).observe(duration)

    if input_tokens is not None:
        llm_tokens.labels(model=model, type="input").observe(input_tokens)
    if output_tokens is not None:
        llm_tokens.labels(model=model, type="output").observe(output_tokens)


def track_circuit_breaker(name: str, state: str, metrics_data: dict) -> None:
    """
    Track circuit breaker metrics.

    Args:
        name: Circuit breaker name
        state: Current state (closed, half_open, open)
        metrics_data: Dictionary with consecutive_failures and friends
    """
    state_map = {"closed": 0, "half_open": 1, "open": 2}
    circuit_breaker_state.labels(name=name).set(state_map.get(state, 0))
    circuit_breaker_consecutive_failures.labels(name=name).set(
        metrics_data.get("consecutive_failures", 0)
    )


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus format.

    Returns:
        Prometheus-formatted metrics as bytes
    """
    return generate_latest()


def get_content_type() -> str:
    """
    Get Prometheus metrics content type.

    Returns:
        Content-Type header value
    """
    return CONTENT_TYPE_LATEST
