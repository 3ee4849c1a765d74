"""
Test Suite for the HTTP capability clients

Tests cover:
- Embedding client (Ollama and OpenAI formats, memo, error mapping)
- LLM client (payloads, retries on transient errors only, mock mode)
- Circuit breaker integration
"""

import json

import httpx
import numpy as np
import pytest

from ragserve.circuit_breaker import CircuitState
from ragserve.embeddings import AsyncEmbeddingClient
from ragserve.errors import CircuitOpenError, EmbeddingError, LLMConnectionError, LLMError, LLMTimeoutError
from ragserve.llm_client import AsyncLLMClient, mock_answer

DIM = 4


def _embedding_transport(calls, vector=(3.0, 0.0, 4.0, 0.0), status=200, api_type="ollama"):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if status != 200:
            return httpx.Response(status, json={"error": "nope"})
        if api_type == "ollama":
            return httpx.Response(200, json={"embedding": list(vector)})
        return httpx.Response(200, json={"data": [{"embedding": list(vector)}]})

    return httpx.MockTransport(handler)


def _chat_transport(responses, calls):
    """Serve queued responses (status, body) or raise queued exceptions."""

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


# ============================================================================
# Embedding client
# ============================================================================


class TestAsyncEmbeddingClient:
    """Embedding HTTP client."""

    @pytest.mark.asyncio
    async def test_ollama_request_and_normalisation(self):
        """Ollama payload uses 'prompt'; vectors come back unit length."""
        calls = []
        client = AsyncEmbeddingClient(
            base_url="http://embed.test", model="m", api_type="ollama", dim=DIM,
            transport=_embedding_transport(calls),
        )
        vec = await client.embed("  lease terms ")
        assert calls[0].url.path == "/api/embeddings"
        assert json.loads(calls[0].content) == {"model": "m", "prompt": "lease terms"}
        assert np.allclose(vec, [0.6, 0.0, 0.8, 0.0])
        await client.close()

    @pytest.mark.asyncio
    async def test_openai_format_and_bearer(self):
        """OpenAI payload uses 'input' and sends the bearer token."""
        calls = []
        client = AsyncEmbeddingClient(
            base_url="http://embed.test", model="m", api_type="openai", dim=DIM, api_key="sk-test",
            transport=_embedding_transport(calls, api_type="openai"),
        )
        await client.embed("lease")
        assert calls[0].url.path == "/v1/embeddings"
        assert calls[0].headers["Authorization"] == "Bearer sk-test"
        assert json.loads(calls[0].content)["input"] == "lease"
        await client.close()

    @pytest.mark.asyncio
    async def test_memo_avoids_repeat_calls(self):
        """The same text is embedded once."""
        calls = []
        client = AsyncEmbeddingClient(base_url="http://embed.test", dim=DIM, transport=_embedding_transport(calls))
        await client.embed("lease")
        await client.embed("lease")
        assert len(calls) == 1
        assert client.memo_hits == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_http_error_mapped(self):
        """Non-2xx responses become EmbeddingError."""
        client = AsyncEmbeddingClient(
            base_url="http://embed.test", dim=DIM, transport=_embedding_transport([], status=500)
        )
        with pytest.raises(EmbeddingError, match="HTTP 500"):
            await client.embed("lease")
        await client.close()

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self):
        """A vector of the wrong size is an error."""
        client = AsyncEmbeddingClient(
            base_url="http://embed.test", dim=8, transport=_embedding_transport([])
        )
        with pytest.raises(EmbeddingError, match="dimension mismatch"):
            await client.embed("lease")
        await client.close()

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self):
        """Five failures open the breaker; further calls fail fast."""
        calls = []
        client = AsyncEmbeddingClient(
            base_url="http://embed.test", dim=DIM, memo_size=0, transport=_embedding_transport(calls, status=503)
        )
        for _ in range(5):
            with pytest.raises(EmbeddingError):
                await client.embed("lease")
        with pytest.raises(CircuitOpenError):
            await client.embed("lease")
        assert len(calls) == 5
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check(self):
        """health_check reports ok and the dimension."""
        client = AsyncEmbeddingClient(base_url="http://embed.test", dim=DIM, transport=_embedding_transport([]))
        assert await client.health_check() == {"ok": True, "model": client.model, "dim": DIM}
        await client.close()

    def test_unsupported_api_type(self):
        """Only ollama and openai are accepted."""
        with pytest.raises(ValueError):
            AsyncEmbeddingClient(api_type="grpc")


# ============================================================================
# LLM client
# ============================================================================


def _llm(transport, api_type="openai", retries=2, model="test-model"):
    return AsyncLLMClient(
        api_type=api_type,
        base_url="http://llm.test",
        model=model,
        chat_path="",
        retries=retries,
        backoff=0.0,
        bearer_token="sk-secret",
        mock=False,
        transport=transport,
    )


def _openai_reply(text):
    return (200, {"choices": [{"message": {"content": text}}]})


class TestAsyncLLMClient:
    """Chat completion client."""

    @pytest.mark.asyncio
    async def test_openai_payload_and_parse(self):
        """System and user messages are sent; assistant text is returned stripped."""
        calls = []
        client = _llm(_chat_transport([_openai_reply("  Sixty days [p0]. ")], calls))
        text = await client.complete("sys", "user")
        assert text == "Sixty days [p0]."
        body = json.loads(calls[0].content)
        assert calls[0].url.path == "/v1/chat/completions"
        assert body["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "user"}]
        assert body["stream"] is False
        assert calls[0].headers["Authorization"] == "Bearer sk-secret"
        await client.close()

    @pytest.mark.asyncio
    async def test_ollama_format(self):
        """Ollama uses /api/chat and message.content."""
        calls = []
        transport = _chat_transport([(200, {"message": {"content": "ok"}})], calls)
        client = _llm(transport, api_type="ollama", model="ollama-model")
        assert await client.complete("s", "u") == "ok"
        assert calls[0].url.path == "/api/chat"
        assert "options" in json.loads(calls[0].content)
        await client.close()

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        """5xx responses and connection errors are retried."""
        calls = []
        transport = _chat_transport(
            [(503, {}), httpx.ConnectError("refused"), _openai_reply("recovered")], calls
        )
        client = _llm(transport, model="retry-model")
        assert await client.complete("s", "u") == "recovered"
        assert len(calls) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        """4xx responses fail immediately."""
        calls = []
        client = _llm(_chat_transport([(401, {"error": "bad key"})], calls), model="auth-model")
        with pytest.raises(LLMError) as exc_info:
            await client.complete("s", "u")
        assert exc_info.value.upstream_status == 401
        assert len(calls) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_exhausted_retries_timeout(self):
        """Persistent timeouts end in LLMTimeoutError."""
        calls = []
        transport = _chat_transport([httpx.ReadTimeout("slow")] * 3, calls)
        client = _llm(transport, model="slow-model")
        with pytest.raises(LLMTimeoutError):
            await client.complete("s", "u")
        assert len(calls) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_exhausted_retries_connection(self):
        """Persistent connection failures end in LLMConnectionError."""
        transport = _chat_transport([httpx.ConnectError("refused")] * 2, [])
        client = _llm(transport, retries=1, model="down-model")
        with pytest.raises(LLMConnectionError):
            await client.complete("s", "u")
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        """A body without choices is an LLMError."""
        client = _llm(_chat_transport([(200, {"unexpected": True})], []), model="odd-model")
        with pytest.raises(LLMError, match="Malformed"):
            await client.complete("s", "u")
        await client.close()

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(self):
        """Three failed calls open the model's breaker."""
        transport = _chat_transport([(400, {})] * 3, [])
        client = _llm(transport, retries=0, model="breaker-model")
        for _ in range(3):
            with pytest.raises(LLMError):
                await client.complete("s", "u")
        assert client.circuit_breaker.get_state() == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await client.complete("s", "u")

    @pytest.mark.asyncio
    async def test_mock_mode(self):
        """Mock mode answers from the first passage without HTTP."""
        client = AsyncLLMClient(mock=True, base_url="unused")
        text = await client.complete("sys", "Question: q\n\nContext passages:\n[p0]: The lease ends. More text.")
        assert text == "According to the provided context, The lease ends. [p0]"
        assert (await client.health_check())["ok"] is True

    def test_mock_answer_without_passages(self):
        """No passages means the refusal text."""
        assert "does not contain enough information" in mock_answer("Question: q")

    def test_config_validation(self):
        """Bad settings are rejected at construction."""
        with pytest.raises(ValueError):
            AsyncLLMClient(api_type="soap", mock=True)
        with pytest.raises(ValueError):
            AsyncLLMClient(base_url="ftp://x", mock=False)
        with pytest.raises(ValueError):
            AsyncLLMClient(retries=-1, mock=True)

    @pytest.mark.asyncio
    async def test_health_check(self):
        """health_check calls the models endpoint."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []}))
        client = _llm(transport, model="health-model")
        assert (await client.health_check())["ok"] is True
        await client.close()
