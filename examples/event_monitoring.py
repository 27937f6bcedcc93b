"""
Event monitoring example.

Demonstrates:
- Subscribing to pipeline events
- Streaming model output as it arrives
- Folding events into session state with SessionReducer
- Reading cost figures from events
"""

import asyncio

from promptdag import (
    Backends,
    Engine,
    EngineSettings,
    GraphBuilder,
    SessionReducer,
    build_default_registry,
)
from promptdag.backends import GenerationRequest, GenerationResponse
from promptdag.events import Event, EventKind


class ScriptedBackend:
    """Text generation stand-in that streams a canned reply word by word."""

    async def generate(self, request: GenerationRequest, on_token=None) -> GenerationResponse:
        reply = f"You asked: {request.prompt}. Here is a short answer."
        for word in reply.split(" "):
            await asyncio.sleep(0.01)
            if on_token is not None:
                on_token(word + " ")
        return GenerationResponse(text=reply, model=request.model)


class ExecutionMonitor:
    """Custom monitor that tracks pipeline execution."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def handle_event(self, event: Event) -> None:
        self.events.append(event)

        if event.kind == EventKind.EXECUTION_STARTED:
            print(f"\n🚀 Session started: {event.session_id}")
            print(f"   Nodes: {event.meta['total_nodes']}")

        elif event.kind == EventKind.NODE_EXECUTION_STARTED:
            print(f"\n⏱  Node '{event.node_id}' ({event.meta['node_type']}) started")

        elif event.kind == EventKind.TOKEN_STREAM:
            print(event.meta["tokens"], end="", flush=True)

        elif event.kind == EventKind.NODE_EXECUTION_COMPLETED:
            duration = event.meta["execution_time_ms"]
            cached = " (cached)" if event.meta["cached"] else ""
            print(f"\n✓  Node '{event.node_id}' completed in {duration:.1f}ms{cached}")
            print(f"   Cost so far: ${event.meta['total_cost']:.6f}")

        elif event.kind == EventKind.NODE_EXECUTION_FAILED:
            print(f"\n✗  Node '{event.node_id}' failed: {event.meta['error']}")

        elif event.kind == EventKind.EXECUTION_COMPLETED:
            print(f"\n{'='*60}")
            print("🏁 Session completed")
            print(f"   Duration: {event.meta['execution_time_ms']:.1f}ms")
            print(f"   Nodes executed: {event.meta['nodes_executed']}")
            print(f"   Nodes failed: {event.meta['nodes_failed']}")
            print(f"   Total cost: ${event.meta['total_cost']:.6f}")
            print(f"{'='*60}")


async def main() -> None:
    graph = (
        GraphBuilder("Monitored chat")
        .add_node("in", "input")
        .add_node("prompt", "prompt-template", template="Explain {input} briefly")
        .add_node("llm", "llm", integrationId="scripted", model="gpt-4.1-mini-2025-04-14")
        .add_node("search", "rag-retriever", vectorStore="pinecone")
        .add_node("out", "output-parser", parserType="text")
        .connect("in", "prompt")
        .connect("prompt", "llm")
        .connect("prompt", "search")
        .connect("llm", "out")
        .build()
    )

    registry = build_default_registry(Backends(text_generation=ScriptedBackend()))
    engine = Engine(registry=registry, settings=EngineSettings(_env_file=None))

    monitor = ExecutionMonitor()
    reducer = SessionReducer()
    # The search node has no integration configured and fails on purpose
    await engine.run(
        graph,
        "directed acyclic graphs",
        event_subscribers=[monitor.handle_event, reducer],
    )

    state = reducer.state
    print("\nSession state:")
    for node_id, snapshot in state.node_states.items():
        print(f"  {node_id}: {snapshot.status.value}")
    print(f"  errors: {[e.error for e in state.errors]}")
    print(f"  events received: {len(monitor.events)}")


if __name__ == "__main__":
    asyncio.run(main())
