"""
Usage tracking for billing estimates.

Keeps a bounded, append-only in-memory log of per-request usage. Costs are
estimates in millicents derived from token and chunk counts; they are never
negative and never authoritative billing.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List

from loguru import logger

from ragserve import config
from ragserve.metrics import usage_cost

# Cost per 1K tokens / per operation, in millicents
COSTS: Dict[str, int] = {
    "embedding": 2,
    "llm_prompt": 10,
    "llm_completion": 30,
    "vector_read": 1,
    "vector_write": 2,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UsageRecord:
    tenant_id: str
    endpoint: str
    request_id: str
    timestamp: datetime = field(default_factory=_utcnow)
    embedding_tokens: int = 0
    llm_prompt_tokens: int = 0
    llm_completion_tokens: int = 0
    duration_ms: int = 0
    chunks_retrieved: int = 0
    chunks_ingested: int = 0
    cache_hit: bool = False
    estimated_cost: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def compute_cost(record: UsageRecord) -> int:
    """Estimated cost of one record in millicents (always >= 0)."""
    cost = 0
    cost += math.ceil(max(0, record.embedding_tokens) / 1000 * COSTS["embedding"])
    cost += math.ceil(max(0, record.llm_prompt_tokens) / 1000 * COSTS["llm_prompt"])
    cost += math.ceil(max(0, record.llm_completion_tokens) / 1000 * COSTS["llm_completion"])
    cost += max(0, record.chunks_retrieved) * COSTS["vector_read"]
    cost += max(0, record.chunks_ingested) * COSTS["vector_write"]
    return cost


def estimate_query_cost(top_k: int, answer_tokens: int = 500) -> int:
    """Rough cost of one answer-mode query before it runs (for quota checks)."""
    embedding_cost = math.ceil(10 / 1000 * COSTS["embedding"])
    retrieval_cost = top_k * COSTS["vector_read"]
    context_tokens = top_k * 200
    prompt_cost = math.ceil((context_tokens + 100) / 1000 * COSTS["llm_prompt"])
    completion_cost = math.ceil(answer_tokens / 1000 * COSTS["llm_completion"])
    return embedding_cost + retrieval_cost + prompt_cost + completion_cost


class UsageTracker:
    def __init__(self, max_records: int = config.USAGE_MAX_RECORDS, clock=_utcnow):
        self.max_records = max_records
        self._records: Deque[UsageRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()
        self._clock = clock

    def track(self, record: UsageRecord) -> UsageRecord:
        record.estimated_cost = compute_cost(record)
        with self._lock:
            self._records.append(record)
        usage_cost.labels(tenant=record.tenant_id).inc(record.estimated_cost)
        logger.info(
            f"[{record.request_id}] Usage tracked: tenant={record.tenant_id} endpoint={record.endpoint} "
            f"llm_tokens={record.llm_prompt_tokens + record.llm_completion_tokens} "
            f"duration_ms={record.duration_ms} cache_hit={record.cache_hit} "
            f"cost_millicents={record.estimated_cost}"
        )
        return record

    def _records_for(self, tenant_id: str) -> List[UsageRecord]:
        with self._lock:
            return [r for r in self._records if r.tenant_id == tenant_id]

    def summary(self, tenant_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        records = [r for r in self._records_for(tenant_id) if start <= r.timestamp <= end]
        total_cost = sum(r.estimated_cost for r in records)
        return {
            "tenantId": tenant_id,
            "period": f"{start.date().isoformat()} to {end.date().isoformat()}",
            "totalRequests": len(records),
            "queryRequests": sum(1 for r in records if "/query" in r.endpoint),
            "ingestRequests": sum(1 for r in records if "/ingest" in r.endpoint),
            "cacheHits": sum(1 for r in records if r.cache_hit),
            "totalEmbeddingTokens": sum(r.embedding_tokens for r in records),
            "totalLlmPromptTokens": sum(r.llm_prompt_tokens for r in records),
            "totalLlmCompletionTokens": sum(r.llm_completion_tokens for r in records),
            "chunksStored": sum(r.chunks_ingested for r in records),
            "estimatedCostMillicents": total_cost,
            "estimatedCostCents": math.ceil(total_cost / 100),
        }

    def today(self, tenant_id: str) -> Dict[str, Any]:
        now = self._clock()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.summary(tenant_id, start, start + timedelta(days=1) - timedelta(microseconds=1))

    def current_month(self, tenant_id: str) -> Dict[str, Any]:
        now = self._clock()
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return self.summary(tenant_id, start, next_month - timedelta(microseconds=1))

    def export(self, tenant_id: str, limit: int = 1000) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return [r.to_dict() for r in self._records_for(tenant_id)[-limit:]]

    def __len__(self) -> int:
        return len(self._records)
