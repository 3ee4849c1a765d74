"""
Pydantic Data Models for the RAG service

Provides structured, type-safe data definitions for:
- The /query request body
- Retrieved passages and synthesized answers
- Response and error envelopes
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from ragserve import config


# ============================================================================
# Enums
# ============================================================================


class QueryMode(str, Enum):
    """What the pipeline returns: a cited answer or the raw passages."""
    ANSWER = "answer"
    RETRIEVAL = "retrieval"


class CacheMode(str, Enum):
    ON = "on"
    OFF = "off"


# ============================================================================
# Request Models
# ============================================================================


class QueryRequest(BaseModel):
    """Body of POST /query. Immutable once accepted."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={"example": {"query": "What does the lease say about early termination?", "topK": 5}},
    )

    query: StrictStr = Field(..., description="Natural-language query")
    top_k: StrictInt = Field(
        default=config.DEFAULT_TOP_K, alias="topK", ge=1, le=config.MAX_TOP_K, description="Passages to retrieve"
    )

    @field_validator("query")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must be a non-empty string")
        return v


# ============================================================================
# Pipeline values
# ============================================================================


class RetrievedPassage(BaseModel):
    """One scored passage from the vector index. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    text: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AnswerResult(BaseModel):
    """Synthesized answer plus the validated passage indices it cites."""

    model_config = ConfigDict(frozen=True)

    answer: str
    citations: List[int] = Field(default_factory=list, description="Deduplicated, ascending passage indices")
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    llm_called: bool = False


# ============================================================================
# Response Models
# ============================================================================


class PassageOut(BaseModel):
    text: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CitationOut(PassageOut):
    index: int


class AnswerData(BaseModel):
    query: str
    answer: str
    citations: List[CitationOut]


class RetrievalData(BaseModel):
    query: str
    results: List[PassageOut]


class ErrorBody(BaseModel):
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    error: ErrorBody

    def render(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class HealthResponse(BaseModel):
    status: str = Field(description="ok or degraded")
    env: str
    checks: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
