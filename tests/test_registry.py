"""Tests for executor registry."""

import pytest

from promptdag.backends import Backends
from promptdag.context import ExecutorContext
from promptdag.errors import GraphError, UnknownNodeTypeError
from promptdag.executors import BaseExecutor, InputExecutor, LLMExecutor
from promptdag.registry import ExecutorRegistry, build_default_registry
from promptdag.types import Node, NodeType


class EchoExecutor(BaseExecutor):
    node_type = "echo"
    category = "Testing"
    description = "Echoes its input"

    async def run(self, node: Node, context: ExecutorContext) -> dict:
        return {"data": context.input_data}


class TestExecutorRegistry:
    """Test ExecutorRegistry functionality."""

    def test_register_and_get(self) -> None:
        registry = ExecutorRegistry()
        executor = EchoExecutor()

        registry.register(executor, aliases=["Echo"])

        assert registry.get("echo") is executor
        assert registry.get("Echo") is executor
        assert registry.has("Echo")
        assert registry.resolve_type("Echo") == "echo"

    def test_duplicate_registration(self) -> None:
        registry = ExecutorRegistry()
        registry.register(EchoExecutor())

        with pytest.raises(GraphError, match="already registered"):
            registry.register(EchoExecutor())

    def test_frozen_registry_rejects_registration(self) -> None:
        registry = ExecutorRegistry().freeze()

        assert registry.frozen
        with pytest.raises(GraphError, match="frozen"):
            registry.register(EchoExecutor())

    def test_unknown_type(self) -> None:
        registry = ExecutorRegistry()

        with pytest.raises(UnknownNodeTypeError, match="Unknown node type"):
            registry.get("nonexistent")

    def test_executor_without_type(self) -> None:
        with pytest.raises(GraphError):
            ExecutorRegistry().register(BaseExecutor())

    def test_list_types_by_category(self) -> None:
        registry = ExecutorRegistry()
        registry.register(EchoExecutor())
        registry.register(InputExecutor())

        testing = registry.list_types(category="Testing")

        assert [t["type_name"] for t in testing] == ["echo"]
        assert testing[0]["description"] == "Echoes its input"
        assert registry.list_categories() == ["Input", "Testing"]


class TestDefaultRegistry:
    """Test the built-in registry."""

    def test_every_node_type_registered(self) -> None:
        registry = build_default_registry()

        assert set(registry.type_names()) == {t.value for t in NodeType}
        assert registry.frozen

    def test_aliases(self) -> None:
        registry = build_default_registry()

        assert registry.resolve_type("LLMNode") == NodeType.LLM.value
        assert registry.resolve_type("rag") == NodeType.RAG_RETRIEVER.value
        assert "prompt" in registry.type_names(include_aliases=True)

    def test_backends_shared(self) -> None:
        backends = Backends()
        registry = build_default_registry(backends)

        executor = registry.get("llm")

        assert isinstance(executor, LLMExecutor)
        assert executor.backends is backends

    def test_type_info_for_editor(self) -> None:
        registry = build_default_registry()

        info = {t["type_name"]: t for t in registry.list_types()}

        assert info["llm"]["outbound"] is True
        assert info["memory-store"]["cacheable"] is False
        assert "template" in info["prompt-template"]["config_schema"]

    def test_extra_executors(self) -> None:
        registry = build_default_registry(extra_executors=[EchoExecutor()])

        assert registry.has("echo")
        assert registry.has("llm")
        assert registry.frozen
