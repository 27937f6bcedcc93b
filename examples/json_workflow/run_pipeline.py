#!/usr/bin/env python3
"""
Execute a pipeline defined in JSON.

This demonstrates the complete workflow:
1. Custom node types defined in Python (node_library.py)
2. Pipeline defined in JSON (pipeline.json), as saved by the editor
3. Validated, then executed through the PipelineService command surface

Usage:
    python run_pipeline.py
    python run_pipeline.py pipeline.json
"""

import asyncio
import json
import sys
from pathlib import Path

from promptdag import (
    Engine,
    EngineSettings,
    PipelineService,
    ValidationError,
    build_default_registry,
    configure_logging,
)
from promptdag.events import Event, EventKind

from node_library import EXECUTORS


def create_event_monitor():
    """Create a simple event monitor for execution feedback."""

    def monitor(event: Event) -> None:
        if event.kind == EventKind.EXECUTION_STARTED:
            print(f"\n{'='*70}")
            print("🚀 Starting pipeline execution")
            print(f"   Total nodes: {event.meta['total_nodes']}")
            print(f"   Session: {event.session_id}")
            print(f"{'='*70}\n")

        elif event.kind == EventKind.NODE_EXECUTION_COMPLETED:
            print(f"  ✓ {event.node_id} completed in {event.meta['execution_time_ms']:.1f}ms")

        elif event.kind == EventKind.NODE_EXECUTION_FAILED:
            print(f"  ✗ {event.node_id} failed: {event.meta['error']}")

        elif event.kind == EventKind.EXECUTION_COMPLETED:
            print(f"\n{'='*70}")
            print("✅ Pipeline completed")
            print(f"   Duration: {event.meta['execution_time_ms']:.1f}ms")
            print(f"   Nodes executed: {event.meta['nodes_executed']}")
            print(f"{'='*70}\n")

        elif event.kind in (EventKind.EXECUTION_FAILED, EventKind.EXECUTION_ERROR):
            print(f"❌ {event.meta['error']}")

    return monitor


def print_available_nodes(service: PipelineService) -> None:
    """Print all available node types from the registry."""
    print("\n📚 Available Node Types:")
    print("="*70)

    by_category: dict[str, list[dict]] = {}
    for node_type in service.list_node_types():
        by_category.setdefault(node_type["category"], []).append(node_type)

    for category in sorted(by_category):
        print(f"\n{category}:")
        for node_type in by_category[category]:
            print(f"  • {node_type['type_name']}: {node_type['description']}")
    print(f"\n{'='*70}\n")


async def main() -> None:
    """Main execution function."""
    configure_logging("WARNING")

    if len(sys.argv) > 1:
        pipeline_file = Path(sys.argv[1])
    else:
        pipeline_file = Path(__file__).parent / "pipeline.json"

    print("\n🔧 promptdag JSON Pipeline Executor")
    print(f"Pipeline file: {pipeline_file}")

    try:
        definition = json.loads(pipeline_file.read_text())
    except FileNotFoundError:
        print(f"❌ Error: Pipeline file not found: {pipeline_file}")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"❌ Error: Invalid JSON in pipeline file: {e}")
        sys.exit(1)

    settings = EngineSettings(_env_file=None)
    engine = Engine(build_default_registry(extra_executors=EXECUTORS), settings)
    service = PipelineService(engine)
    service.subscribe(create_event_monitor())

    print_available_nodes(service)

    validation = service.validate_graph(definition)
    print(f"📋 Validation score: {validation.score}/100")
    for issue in validation.issues:
        print(f"  [{issue.severity.value}] {issue.message}")

    try:
        session_id = await service.handle_command({
            "graph": definition,
            "sessionId": "json-workflow",
        })
    except ValidationError:
        sys.exit(1)

    result = await service.wait(session_id)
    print("Final output:")
    print(result.final_output.get("formattedOutput"))

    await service.aclose()


if __name__ == "__main__":
    asyncio.run(main())
