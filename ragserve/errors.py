"""
Structured Error Handling for the RAG service

Provides a hierarchy of exceptions for different failure scenarios
with clear semantics for retry behavior and HTTP rendering.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class RAGError(Exception):
    """
    Base exception for the RAG service.

    All service-specific errors should inherit from this class.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = "RAG_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize RAG error.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code for API responses
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause
        self.request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for structured logs"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "context": self.context,
        }

    def public_details(self) -> Optional[Dict[str, Any]]:
        """Details that are safe to show to the API caller."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class RetriableError(RAGError):
    """
    Error that may succeed if retried with backoff.

    Typically temporary issues like timeouts, rate limits, transient failures.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "RETRIABLE_ERROR",
        max_retries: int = 3,
        backoff_seconds: int = 1,
        **kwargs,
    ):
        super().__init__(message, error_code, severity=ErrorSeverity.MEDIUM, **kwargs)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds


class NonRetriableError(RAGError):
    """
    Error that should NOT be retried.

    Typically permanent issues like invalid API key, bad configuration, malformed input.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "NON_RETRIABLE_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        **kwargs,
    ):
        super().__init__(message, error_code, severity=severity, **kwargs)


# ============================================================================
# Request-facing errors (rendered by the HTTP layer)
# ============================================================================


class ValidationError(NonRetriableError):
    """Request body or parameters failed validation"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", severity=ErrorSeverity.LOW, **kwargs)
        self.field = field
        self.details = details

    def public_details(self) -> Optional[Dict[str, Any]]:
        out: Dict[str, Any] = dict(self.details or {})
        if self.field:
            out.setdefault("field", self.field)
        return out or None


class Unauthenticated(NonRetriableError):
    """No credential was supplied where one is required"""

    status_code = 401

    def __init__(self, message: str = "API key required", **kwargs):
        super().__init__(message, error_code="UNAUTHENTICATED", severity=ErrorSeverity.LOW, **kwargs)


class Forbidden(NonRetriableError):
    """Credential supplied but not recognised"""

    status_code = 403

    def __init__(self, message: str = "The provided API key is not valid", error_code: str = "INVALID_API_KEY", **kwargs):
        super().__init__(message, error_code=error_code, severity=ErrorSeverity.LOW, **kwargs)


class RateLimited(NonRetriableError):
    """Tenant exceeded its request quota for a window"""

    status_code = 429

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        limit: int,
        window: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="RATE_LIMITED", severity=ErrorSeverity.LOW, **kwargs)
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        self.limit = limit
        self.window = window
        self.headers = dict(headers or {})
        self.headers["Retry-After"] = str(self.retry_after_seconds)

    def public_details(self) -> Optional[Dict[str, Any]]:
        return {"retryAfter": self.retry_after_seconds, "limit": self.limit, "window": self.window}


class AdversarialContentDetected(NonRetriableError):
    """Query matched an instruction-override pattern"""

    status_code = 403

    def __init__(self, message: str = "Adversarial content detected: request blocked by moderation gateway", **kwargs):
        super().__init__(message, error_code="JAILBREAK_DETECTED", severity=ErrorSeverity.MEDIUM, **kwargs)


class OutOfDomainIntent(NonRetriableError):
    """Query does not mention any allowed-domain keyword"""

    status_code = 403

    def __init__(self, message: str = "Query appears outside the allowed domain and was not processed", **kwargs):
        super().__init__(message, error_code="OUT_OF_DOMAIN_INTENT", severity=ErrorSeverity.LOW, **kwargs)


class RetrievalFailed(RAGError):
    """Embedding or vector search failed while serving a query"""

    status_code = 502

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="RETRIEVAL_FAILED", severity=ErrorSeverity.HIGH, **kwargs)


class AnswerGenerationFailed(RAGError):
    """Language model call failed while serving a query"""

    status_code = 502

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="ANSWER_GENERATION_FAILED", severity=ErrorSeverity.HIGH, **kwargs)


class InternalError(RAGError):
    """Anything unanticipated"""

    status_code = 500

    def __init__(self, message: str = "An unexpected error occurred", **kwargs):
        super().__init__(message, error_code="INTERNAL_ERROR", severity=ErrorSeverity.CRITICAL, **kwargs)


class NotFound(NonRetriableError):
    """Route or resource does not exist"""

    status_code = 404

    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, error_code="NOT_FOUND", severity=ErrorSeverity.INFO, **kwargs)


class ServiceUnavailable(NonRetriableError):
    """A surface is disabled by configuration"""

    status_code = 503

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="SERVICE_UNAVAILABLE", severity=ErrorSeverity.MEDIUM, **kwargs)


# ============================================================================
# Capability errors (raised by collaborators, wrapped by the pipeline)
# ============================================================================


class ConfigurationError(NonRetriableError):
    """Invalid or missing configuration"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)


class EmbeddingError(RetriableError):
    """Embedding model error"""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="EMBEDDING_ERROR", **kwargs)
        self.model = model


class VectorStoreError(RetriableError):
    """Vector index query or upsert failed"""

    def __init__(self, message: str, namespace: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="VECTOR_STORE_ERROR", **kwargs)
        self.namespace = namespace


class LLMError(RetriableError):
    """LLM API error"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        model: Optional[str] = None,
        error_code: str = "LLM_ERROR",
        **kwargs,
    ):
        super().__init__(message, error_code=error_code, **kwargs)
        self.upstream_status = status_code
        self.model = model


class LLMConnectionError(LLMError):
    """Cannot connect to LLM service"""

    def __init__(self, message: str, base_url: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="LLM_CONNECTION_ERROR", **kwargs)
        self.base_url = base_url


class LLMTimeoutError(LLMError):
    """LLM request timed out"""

    def __init__(self, message: str, timeout_seconds: float = 30, **kwargs):
        super().__init__(message, error_code="LLM_TIMEOUT", **kwargs)
        self.timeout_seconds = timeout_seconds


class CacheError(RAGError):
    """Cache operation failed"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CACHE_ERROR", severity=ErrorSeverity.LOW, **kwargs)


class CircuitOpenError(NonRetriableError):
    """Circuit breaker is open - service temporarily unavailable"""

    def __init__(self, message: str, service: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CIRCUIT_OPEN", **kwargs)
        self.service = service


# ============================================================================
# Error Utilities
# ============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if error should be retried"""
    return isinstance(error, RetriableError)


def is_fatal(error: Exception) -> bool:
    """Check if error is fatal and cannot be recovered"""
    return isinstance(error, NonRetriableError)


def get_error_severity(error: Exception) -> ErrorSeverity:
    """Get severity level of error"""
    if isinstance(error, RAGError):
        return error.severity
    return ErrorSeverity.HIGH


def http_status_for(error: Exception) -> int:
    """HTTP status the API should answer with for this error."""
    if isinstance(error, RAGError):
        return error.status_code
    return 500


def format_error_for_logging(error: Exception, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, RAGError):
        result.update(error.to_dict())

    cause = error.__cause__ or (error.cause if isinstance(error, RAGError) else None)
    if cause:
        result["caused_by"] = {
            "type": type(cause).__name__,
            "message": str(cause),
        }

    return result
