"""
Basic linear pipeline example.

Demonstrates:
- Building a graph with GraphBuilder
- Validating before execution
- Executing a pipeline
- Accessing results
"""

import asyncio

from promptdag import Engine, EngineSettings, GraphBuilder, configure_logging


def build_graph():
    """input -> prompt-template -> processor -> output"""
    return (
        GraphBuilder("Greeting pipeline", description="Formats a greeting for a user")
        .add_node("in", "input", testData={"user": {"name": "ada"}, "topic": "graphs"})
        .add_node(
            "prompt",
            "prompt-template",
            template="Hello {user.name}, let's talk about {topic}",
        )
        .add_node("title", "processor", operation="title-case")
        .add_node("out", "output", format="markdown")
        .connect("in", "prompt")
        .connect("prompt", "title")
        .connect("title", "out")
        .build()
    )


async def main() -> None:
    """Run the basic pipeline."""
    configure_logging("INFO")
    graph = build_graph()

    # No backends are needed: none of these nodes call out
    engine = Engine(settings=EngineSettings(_env_file=None))

    print("Validating graph...")
    validation = engine.validate(graph)
    print(f"Score: {validation.score}/100")
    for issue in validation.issues:
        print(f"  [{issue.severity.value}] {issue.message}")
    if not validation.is_valid:
        return
    print(f"✓ Graph is valid (hash: {graph.compute_graph_hash()[:8]}...)")

    print("\nExecuting pipeline...")
    result = await engine.run(graph)

    print(f"\n{'='*50}")
    print(f"Session: {result.session_id}")
    print(f"Status: {result.status.value}")
    print(f"Duration: {result.duration_ms:.2f}ms")
    print(f"Nodes Executed: {result.nodes_executed}")
    print(f"{'='*50}")

    print("\nResults:")
    print(f"  Prompt: {result.node_outputs['prompt']['prompt']}")
    print(f"  Processed: {result.node_outputs['title']['processedData']}")
    print("\nFinal output:")
    print(result.final_output["formattedOutput"])


if __name__ == "__main__":
    asyncio.run(main())
