from __future__ import annotations

"""
Async language-model client.

Talks to Ollama (``/api/chat``) or any OpenAI-compatible server
(``/v1/chat/completions``). Retries only transient failures (timeouts,
connection errors, 5xx) with jittered exponential backoff; 4xx and malformed
bodies fail fast. Every call goes through the ``llm_<model>`` circuit breaker.
"""

import asyncio
import random
import re
import time
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import parse_qs, urlparse

import httpx
from loguru import logger

from ragserve import config
from ragserve.circuit_breaker import CircuitBreakerConfig, get_circuit_breaker
from ragserve.errors import LLMConnectionError, LLMError, LLMTimeoutError
from ragserve.metrics import track_llm_request

_MOCK_PASSAGE_RE = re.compile(r"^\[p(\d+)\]:\s*(.+)$", re.MULTILINE)


class LanguageModel(Protocol):
    model: str

    async def complete(self, system: str, user: str) -> str: ...


def _sanitize_url(url: str) -> str:
    """Remove or mask sensitive query parameters from URL for logging."""
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query, keep_blank_values=True)
    for sensitive_key in ("token", "key", "api_key", "password", "secret"):
        if sensitive_key in params:
            params[sensitive_key] = ["***"]
    qs = "&".join(f"{k}={v[0]}" for k, v in params.items())
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}?{qs}"


def _redact_token(text: str) -> str:
    """Redact Bearer token values from log text."""
    return re.sub(r"Bearer\s+[^\s]+", "Bearer ***", text, flags=re.IGNORECASE)


def mock_answer(user: str) -> str:
    """Fabricate a short grounded answer for offline development."""
    first = _MOCK_PASSAGE_RE.search(user)
    if first is None:
        return "The provided context does not contain enough information to answer this question."
    sentence = re.split(r"(?<=[.!?])\s+", first.group(2).strip())[0]
    return f"According to the provided context, {sentence} [p{first.group(1)}]"


class AsyncLLMClient:
    def __init__(
        self,
        api_type: str = config.LLM_API_TYPE,
        base_url: str = config.LLM_BASE_URL,
        model: str = config.LLM_MODEL,
        chat_path: str = config.LLM_CHAT_PATH,
        temperature: float = config.LLM_TEMPERATURE,
        max_tokens: int = config.LLM_MAX_TOKENS,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
        retries: int = config.LLM_RETRIES,
        backoff: float = config.LLM_BACKOFF,
        bearer_token: Optional[str] = None,
        mock: bool = config.MOCK_LLM,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if api_type not in ("ollama", "openai"):
            raise ValueError(f"LLM_API_TYPE must be 'ollama' or 'openai', got: {api_type}")
        if not mock and not base_url.startswith(("http://", "https://")):
            raise ValueError(f"LLM_BASE_URL must be http:// or https://, got: {base_url}")
        if chat_path and not chat_path.startswith("/"):
            raise ValueError(f"LLM_CHAT_PATH must start with '/', got: {chat_path}")
        if timeout <= 0:
            raise ValueError(f"LLM_TIMEOUT_SECONDS must be positive, got: {timeout}")
        if retries < 0:
            raise ValueError(f"LLM_RETRIES must be non-negative, got: {retries}")

        self.api_type = api_type
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.chat_path = chat_path or ("/api/chat" if api_type == "ollama" else "/v1/chat/completions")
        self.tags_path = "/api/tags" if api_type == "ollama" else "/v1/models"
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.mock = mock
        self._bearer = bearer_token if bearer_token is not None else config.LLM_BEARER_TOKEN
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.circuit_breaker = get_circuit_breaker(
            f"llm_{model}",
            CircuitBreakerConfig(failure_threshold=3, recovery_timeout_seconds=30.0, success_threshold=2),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._bearer:
                headers["Authorization"] = f"Bearer {self._bearer}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(connect=5.0, read=self.timeout, write=10.0, pool=5.0),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                headers=headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def _payload(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        if self.api_type == "ollama":
            return {
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
            }
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }

    def _parse(self, data: Any) -> str:
        try:
            if self.api_type == "ollama":
                content = data["message"]["content"]
            else:
                content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Malformed LLM response body", model=self.model, cause=e) from e
        if not isinstance(content, str):
            raise LLMError("LLM response content is not text", model=self.model)
        return content.strip()

    async def _post_with_retries(self, payload: Dict[str, Any]) -> Any:
        """POST with retries on transient errors only. Returns the decoded JSON body."""
        client = self._get_client()
        url = _sanitize_url(f"{self.base_url}{self.chat_path}")
        attempts = self.retries + 1
        delay = self.backoff
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                resp = await client.post(self.chat_path, json=payload)
                if resp.status_code >= 500:
                    raise httpx.HTTPStatusError(f"server {resp.status_code}", request=resp.request, response=resp)
                if resp.status_code >= 400:
                    raise LLMError(
                        f"LLM request rejected (HTTP {resp.status_code}): {_redact_token(resp.text[:200])}",
                        status_code=resp.status_code,
                        model=self.model,
                    )
                return resp.json()
            except (httpx.TimeoutException, httpx.TransportError, httpx.HTTPStatusError) as e:
                last_error = e
                if attempt == attempts:
                    break
                sleep_time = delay + random.uniform(0.0, 0.1 * delay)
                logger.debug(
                    f"LLM POST attempt {attempt}/{attempts} failed to {url}: "
                    f"{type(e).__name__}; backing off {sleep_time:.2f}s"
                )
                await asyncio.sleep(sleep_time)
                delay *= 2
            except ValueError as e:
                raise LLMError("LLM returned a non-JSON body", model=self.model, cause=e) from e

        message = _redact_token(str(last_error)) if last_error else "unknown error"
        if isinstance(last_error, httpx.TimeoutException):
            raise LLMTimeoutError(
                f"LLM request timed out after {attempts} attempts", timeout_seconds=self.timeout, model=self.model
            ) from last_error
        if isinstance(last_error, httpx.TransportError):
            raise LLMConnectionError(
                f"Cannot reach LLM at {url} after {attempts} attempts: {message}", base_url=self.base_url, model=self.model
            ) from last_error
        status = last_error.response.status_code if isinstance(last_error, httpx.HTTPStatusError) else None
        raise LLMError(
            f"LLM request failed after {attempts} attempts: {message}", status_code=status, model=self.model
        ) from last_error

    async def complete(self, system: str, user: str) -> str:
        """Send one system + user exchange and return the assistant text."""
        if self.mock:
            return mock_answer(user)

        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        started = time.perf_counter()
        try:
            data = await self.circuit_breaker.call(self._post_with_retries, self._payload(messages))
            text = self._parse(data)
        except Exception as e:
            status = "timeout" if isinstance(e, LLMTimeoutError) else "error"
            track_llm_request(self.model, status, time.perf_counter() - started)
            raise
        track_llm_request(
            self.model,
            "success",
            time.perf_counter() - started,
            input_tokens=(len(system) + len(user)) // 4,
            output_tokens=len(text) // 4,
        )
        return text

    async def health_check(self) -> Dict[str, Any]:
        """Check LLM endpoint health. Returns {'ok': bool, 'details': str}."""
        if self.mock:
            return {"ok": True, "details": "mock mode"}
        try:
            resp = await self._get_client().get(self.tags_path)
        except httpx.HTTPError as e:
            return {"ok": False, "details": f"Error contacting {self.base_url}{self.tags_path}: {_redact_token(str(e))}"}
        if resp.status_code != 200:
            return {"ok": False, "details": f"HTTP {resp.status_code} on {self.tags_path}"}
        return {"ok": True, "details": f"OK: {self.api_type} at {self.base_url}"}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
