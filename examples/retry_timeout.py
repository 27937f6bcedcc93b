"""
Retry, timeout and circuit breaker example.

Demonstrates:
- Per-node retryCount and timeoutSeconds
- Handling transient backend failures
- The circuit breaker rejecting calls to a failing service
"""

import asyncio

from promptdag import Backends, Engine, EngineSettings, GraphBuilder, build_default_registry
from promptdag.backends import GenerationRequest, GenerationResponse
from promptdag.events import Event, EventKind


class FlakyBackend:
    """Fails the first ``failures`` calls, then answers slowly or quickly."""

    def __init__(self, failures: int, delay: float = 0.1) -> None:
        self.failures = failures
        self.delay = delay
        self.calls = 0

    async def generate(self, request: GenerationRequest, on_token=None) -> GenerationResponse:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise ConnectionError(f"Temporary network issue (call #{self.calls})")
        return GenerationResponse(text="ok", model=request.model)


def llm_graph(**llm_config):
    return (
        GraphBuilder("Resilient call")
        .add_node("in", "input")
        .add_node("prompt", "prompt-template", template="Ping {input}")
        .add_node("llm", "llm", integrationId="flaky", **llm_config)
        .connect("in", "prompt")
        .connect("prompt", "llm")
        .build()
    )


def print_failures(event: Event) -> None:
    if event.kind == EventKind.NODE_EXECUTION_FAILED:
        print(f"  ✗ {event.node_id}: {event.meta['error']} (attempts: {event.meta['attempts']})")
    elif event.kind == EventKind.NODE_EXECUTION_COMPLETED and event.node_id == "llm":
        print(f"  ✓ {event.node_id} succeeded")


async def main() -> None:
    settings = EngineSettings(
        _env_file=None,
        cache_enabled=False,
        retry_base_delay_seconds=0.1,
        circuit_breaker_threshold=2,
    )

    print("1. Transient failures recovered by retries")
    backend = FlakyBackend(failures=2)
    engine = Engine(build_default_registry(Backends(text_generation=backend)), settings)
    result = await engine.run(llm_graph(retryCount=3), "server", event_subscribers=[print_failures])
    print(f"   attempts: {result.get('llm').attempts}, backend calls: {backend.calls}")

    print("\n2. Slow backend cut off by a timeout")
    slow = FlakyBackend(failures=0, delay=2.0)
    engine = Engine(build_default_registry(Backends(text_generation=slow)), settings)
    await engine.run(llm_graph(timeoutSeconds=0.5), "server", event_subscribers=[print_failures])

    print("\n3. Circuit breaker opening after repeated failures")
    broken = FlakyBackend(failures=100, delay=0.01)
    engine = Engine(build_default_registry(Backends(text_generation=broken)), settings)
    for _ in range(3):
        await engine.run(llm_graph(), "server", event_subscribers=[print_failures])
    breaker = engine.circuit_breaker("llm")
    print(f"   breaker state: {breaker.state.value}, backend calls: {broken.calls}")


if __name__ == "__main__":
    asyncio.run(main())
