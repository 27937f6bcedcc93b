"""
Contracts and clients for the external services executors call.

Each executor talks to one narrow request/response protocol. The HTTP
implementations use httpx; failures are raised as BackendError with the
backend's raw message preserved.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

import httpx

from promptdag.errors import BackendError

if TYPE_CHECKING:
    from promptdag.config import EngineSettings

logger = logging.getLogger(__name__)

TokenHandler = Callable[[str], None]


@dataclass
class GenerationRequest:
    prompt: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    provider: Optional[str] = None
    integration_id: Optional[str] = None
    system_prompt: Optional[str] = None


@dataclass
class GenerationResponse:
    text: str
    model: str
    provider: Optional[str] = None
    input_units: Optional[int] = None
    output_units: Optional[int] = None


@dataclass
class RetrievalRequest:
    query: str
    top_k: int = 5
    integration_id: Optional[str] = None
    vector_store: Optional[str] = None
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievedDocument:
    content: str
    score: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "score": self.score, "metadata": self.metadata}


class TextGenerationBackend(Protocol):
    """Prompt in, text out, with usage metrics."""

    async def generate(
        self,
        request: GenerationRequest,
        on_token: Optional[TokenHandler] = None,
    ) -> GenerationResponse:
        ...


class RetrievalBackend(Protocol):
    """Query in, ranked documents out."""

    async def search(self, request: RetrievalRequest) -> list[RetrievedDocument]:
        ...


class KeyValueStore(Protocol):
    """Storage used by memory and state nodes."""

    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    """
    Process-local key-value store with optional per-key expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


def _raise_for_response(response: httpx.Response, operation: str) -> None:
    if response.is_error:
        raise BackendError(
            f"{operation} failed ({response.status_code}): {response.text}",
            status_code=response.status_code,
        )


def parse_generation_payload(payload: dict[str, Any], model: str) -> GenerationResponse:
    """
    Read generated text and usage from a completion response.

    Accepts OpenAI-style (``choices[0].message.content``), Anthropic-style
    (``content[0].text``) and plain (``text`` or ``response``) bodies.
    """
    usage = payload.get("usage") or {}
    text: Any = None

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] or {}
        text = (first.get("message") or {}).get("content", first.get("text"))
    elif isinstance(payload.get("content"), list) and payload["content"]:
        text = payload["content"][0].get("text")
    else:
        text = payload.get("text", payload.get("response"))

    if text is None:
        raise BackendError(f"Unrecognized text generation response: {payload}")

    return GenerationResponse(
        text=str(text),
        model=str(payload.get("model") or model),
        provider=payload.get("provider"),
        input_units=usage.get("prompt_tokens", usage.get("input_tokens")),
        output_units=usage.get("completion_tokens", usage.get("output_tokens")),
    )


class HttpTextGenerationBackend:
    """
    Text generation over a JSON HTTP API.

    Example:
        >>> backend = HttpTextGenerationBackend("https://llm.internal", api_key="...")
        >>> response = await backend.generate(GenerationRequest("Hi", "gpt-4.1-mini-2025-04-14"))
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        path: str = "/generate",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.path = path
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def generate(
        self,
        request: GenerationRequest,
        on_token: Optional[TokenHandler] = None,
    ) -> GenerationResponse:
        body: dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        if request.provider:
            body["provider"] = request.provider
        if request.integration_id:
            body["integration_id"] = request.integration_id

        try:
            response = await self._client.post(self.path, json=body)
        except httpx.RequestError as e:
            raise BackendError(f"Text generation request failed: {e}") from e

        _raise_for_response(response, "Text generation request")
        result = parse_generation_payload(response.json(), request.model)
        if result.provider is None:
            result.provider = request.provider

        # Non-streaming endpoint: deliver the whole completion as one chunk
        if on_token is not None:
            on_token(result.text)
        return result

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpRetrievalBackend:
    """Vector/document search over a JSON HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        path: str = "/search",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.path = path
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def search(self, request: RetrievalRequest) -> list[RetrievedDocument]:
        body = {
            "query": request.query,
            "top_k": request.top_k,
            "integration_id": request.integration_id,
            "vector_store": request.vector_store,
            "filters": request.filters,
        }
        try:
            response = await self._client.post(self.path, json=body)
        except httpx.RequestError as e:
            raise BackendError(f"Retrieval request failed: {e}") from e

        _raise_for_response(response, "Retrieval request")
        payload = response.json()
        items = payload.get("results", payload.get("documents", [])) if isinstance(payload, dict) else payload

        documents = []
        for item in items[: request.top_k]:
            if isinstance(item, str):
                documents.append(RetrievedDocument(content=item))
                continue
            documents.append(RetrievedDocument(
                content=str(item.get("content", item.get("text", ""))),
                score=float(item.get("score", 0.0)),
                metadata=dict(item.get("metadata") or {}),
            ))
        return documents

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass
class Backends:
    """External collaborators handed to the executors."""

    text_generation: Optional[TextGenerationBackend] = None
    retrieval: Optional[RetrievalBackend] = None
    store: KeyValueStore = field(default_factory=InMemoryKeyValueStore)

    @classmethod
    def from_settings(cls, settings: "EngineSettings") -> "Backends":
        """
        Build HTTP backends for every service with a configured base URL.

        Services without a URL stay unset; nodes that need them fail with a
        configuration error.
        """
        text_generation = None
        if settings.llm_base_url:
            text_generation = HttpTextGenerationBackend(
                settings.llm_base_url,
                api_key=settings.llm_api_key,
                timeout=settings.http_timeout_seconds,
            )
        retrieval = None
        if settings.retrieval_base_url:
            retrieval = HttpRetrievalBackend(
                settings.retrieval_base_url,
                api_key=settings.retrieval_api_key,
                timeout=settings.http_timeout_seconds,
            )
        return cls(text_generation=text_generation, retrieval=retrieval)

    async def aclose(self) -> None:
        for backend in (self.text_generation, self.retrieval):
            close = getattr(backend, "aclose", None)
            if close is not None:
                await close()
