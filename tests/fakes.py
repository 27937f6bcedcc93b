"""Fake backends for tests."""

import asyncio
from typing import Any, Optional

from promptdag.backends import (
    GenerationRequest,
    GenerationResponse,
    RetrievalRequest,
    RetrievedDocument,
)


class FakeTextGeneration:
    """Echoes the prompt back word by word."""

    def __init__(
        self,
        failures: int = 0,
        delay: float = 0.0,
        input_units: Optional[int] = 10,
        output_units: Optional[int] = 20,
    ) -> None:
        self.failures = failures
        self.delay = delay
        self.input_units = input_units
        self.output_units = output_units
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest, on_token: Any = None) -> GenerationResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("backend unavailable")

        text = f"echo: {request.prompt}"
        if on_token is not None:
            for word in text.split(" "):
                on_token(word + " ")
        return GenerationResponse(
            text=text,
            model=request.model,
            provider=request.provider,
            input_units=self.input_units,
            output_units=self.output_units,
        )


class FakeRetrieval:
    """Returns fixed documents for every query."""

    def __init__(self, documents: Optional[list[str]] = None) -> None:
        self.documents = documents or ["first document", "second document"]
        self.requests: list[RetrievalRequest] = []

    async def search(self, request: RetrievalRequest) -> list[RetrievedDocument]:
        self.requests.append(request)
        return [
            RetrievedDocument(content=text, score=1.0 - i / 10)
            for i, text in enumerate(self.documents[: request.top_k])
        ]
