"""Tests for HTTP backends and the in-memory store."""

import json

import httpx
import pytest

from promptdag.backends import (
    Backends,
    GenerationRequest,
    HttpRetrievalBackend,
    HttpTextGenerationBackend,
    InMemoryKeyValueStore,
    RetrievalRequest,
    parse_generation_payload,
)
from promptdag.config import EngineSettings
from promptdag.errors import BackendError


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="https://backend.test", transport=httpx.MockTransport(handler))


class TestParseGenerationPayload:
    def test_openai_shape(self) -> None:
        payload = {
            "model": "gpt-4.1-2025-04-14",
            "choices": [{"message": {"content": "hi"}}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 1},
        }

        response = parse_generation_payload(payload, "fallback")

        assert response.text == "hi"
        assert response.model == "gpt-4.1-2025-04-14"
        assert (response.input_units, response.output_units) == (3, 1)

    def test_anthropic_shape(self) -> None:
        payload = {"content": [{"text": "hello"}], "usage": {"input_tokens": 2, "output_tokens": 4}}

        response = parse_generation_payload(payload, "claude-sonnet-4-20250514")

        assert response.text == "hello"
        assert response.model == "claude-sonnet-4-20250514"
        assert response.output_units == 4

    def test_plain_shape_without_usage(self) -> None:
        response = parse_generation_payload({"text": "plain"}, "m")

        assert response.text == "plain"
        assert response.input_units is None

    def test_unrecognized(self) -> None:
        with pytest.raises(BackendError):
            parse_generation_payload({"unexpected": True}, "m")


class TestHttpTextGenerationBackend:
    async def test_generate(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"text": "answer", "usage": {"input_tokens": 1, "output_tokens": 2}})

        backend = HttpTextGenerationBackend("https://backend.test", client=mock_client(handler))
        chunks: list[str] = []

        response = await backend.generate(
            GenerationRequest(prompt="question", model="m", provider="openai"),
            on_token=chunks.append,
        )
        await backend.aclose()

        assert seen["path"] == "/generate"
        assert seen["body"]["prompt"] == "question"
        assert seen["body"]["provider"] == "openai"
        assert response.text == "answer"
        assert response.provider == "openai"
        assert chunks == ["answer"]

    async def test_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        backend = HttpTextGenerationBackend("https://backend.test", client=mock_client(handler))

        with pytest.raises(BackendError) as exc_info:
            await backend.generate(GenerationRequest(prompt="q", model="m"))

        assert exc_info.value.status_code == 503
        assert "overloaded" in exc_info.value.message

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = HttpTextGenerationBackend("https://backend.test", client=mock_client(handler))

        with pytest.raises(BackendError, match="Text generation request failed"):
            await backend.generate(GenerationRequest(prompt="q", model="m"))


class TestHttpRetrievalBackend:
    async def test_search(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["top_k"] == 2
            return httpx.Response(200, json={"results": [
                {"content": "a", "score": 0.9, "metadata": {"source": "doc1"}},
                {"text": "b"},
                "c",
            ]})

        backend = HttpRetrievalBackend("https://backend.test", client=mock_client(handler))

        documents = await backend.search(RetrievalRequest(query="q", top_k=2))

        assert [d.content for d in documents] == ["a", "b"]
        assert documents[0].metadata == {"source": "doc1"}
        assert documents[1].score == 0.0

    async def test_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="unauthorized")

        backend = HttpRetrievalBackend("https://backend.test", client=mock_client(handler))

        with pytest.raises(BackendError, match="Retrieval request failed \\(401\\)"):
            await backend.search(RetrievalRequest(query="q"))


class TestInMemoryKeyValueStore:
    async def test_set_get_delete(self) -> None:
        store = InMemoryKeyValueStore()

        await store.set("k", [1])
        assert await store.get("k") == [1]

        await store.delete("k")
        assert await store.get("k") is None

    async def test_ttl(self) -> None:
        now = [0.0]
        store = InMemoryKeyValueStore(clock=lambda: now[0])
        await store.set("k", "v", ttl=10)

        now[0] = 9.0
        assert await store.get("k") == "v"

        now[0] = 10.0
        assert await store.get("k") is None
        assert len(store) == 0


class TestBackendsFromSettings:
    async def test_only_configured_services(self) -> None:
        settings = EngineSettings(_env_file=None, llm_base_url="https://llm.test")

        backends = Backends.from_settings(settings)

        assert isinstance(backends.text_generation, HttpTextGenerationBackend)
        assert backends.retrieval is None
        await backends.aclose()
