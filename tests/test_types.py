"""Tests for core types."""

import pytest

from promptdag.types import (
    Edge,
    FieldPath,
    Node,
    NodeExecutionResult,
    NodeType,
    ResultStatus,
    canonical_node_type,
)


class TestNode:
    """Test Node value semantics."""

    def test_data_is_copied(self) -> None:
        """Test that mutating the caller's dict does not change the node."""
        data = {"template": "Hi {input}", "nested": {"a": 1}}
        node = Node(id="p", type="prompt-template", data=data)

        data["template"] = "changed"
        data["nested"]["a"] = 2

        assert node.data["template"] == "Hi {input}"
        assert node.data["nested"]["a"] == 1

    def test_node_is_frozen(self) -> None:
        """Test that node fields cannot be reassigned."""
        node = Node(id="a", type="input")

        with pytest.raises(Exception):
            node.id = "b"  # type: ignore[misc]

    def test_config_flattens_nested_config(self) -> None:
        """Test that nested config values overlay top-level data."""
        node = Node(
            id="r",
            type="rag-retriever",
            data={"label": "Retriever", "topK": 3, "config": {"topK": 7, "integrationId": "x"}},
        )

        config = node.config
        assert config["label"] == "Retriever"
        assert config["topK"] == 7
        assert config["integrationId"] == "x"
        assert "config" not in config

    def test_config_returns_copy(self) -> None:
        """Test that mutating config leaves the node untouched."""
        node = Node(id="a", type="input", data={"testData": {"x": 1}})

        node.config["testData"]["x"] = 99

        assert node.data["testData"]["x"] == 1

    def test_from_dict_lenient(self) -> None:
        """Test that missing fields become empty strings."""
        node = Node.from_dict({"data": "not-a-dict"})

        assert node.id == ""
        assert node.type == ""
        assert node.data == {}

    def test_canonical_type(self) -> None:
        """Test alias resolution on a node."""
        node = Node(id="p", type="promptTemplate")

        assert node.canonical_type == NodeType.PROMPT_TEMPLATE.value


class TestAliases:
    """Test node type aliases."""

    def test_known_alias(self) -> None:
        assert canonical_node_type("RAGRetrieverNode") == "rag-retriever"
        assert canonical_node_type("outputParser") == "output-parser"

    def test_unknown_name_unchanged(self) -> None:
        assert canonical_node_type("mystery") == "mystery"


class TestEdge:
    """Test Edge parsing."""

    def test_from_dict(self) -> None:
        edge = Edge.from_dict({"id": "e1", "source": "a", "target": "b"})

        assert edge == Edge(id="e1", source="a", target="b")
        assert edge.to_dict() == {"id": "e1", "source": "a", "target": "b"}


class TestFieldPath:
    """Test FieldPath parsing and resolution."""

    def test_parse_simple(self) -> None:
        path = FieldPath.parse("input")

        assert path.root == "input"
        assert path.path == []
        assert not path.is_nested()

    def test_parse_nested(self) -> None:
        path = FieldPath.parse("user.profile.name")

        assert path.root == "user"
        assert path.path == ["profile", "name"]
        assert str(path) == "user.profile.name"

    def test_resolve_nested(self) -> None:
        data = {"user": {"profile": {"name": "Ada"}}}

        assert FieldPath.parse("user.profile.name").resolve(data) == "Ada"

    def test_resolve_array_index(self) -> None:
        data = {"results": [{"content": "first"}, {"content": "second"}]}

        assert FieldPath.parse("results.1.content").resolve(data) == "second"

    def test_resolve_missing_key(self) -> None:
        with pytest.raises(KeyError):
            FieldPath.parse("user.email").resolve({"user": {}})

    def test_resolve_through_scalar(self) -> None:
        with pytest.raises(TypeError):
            FieldPath.parse("count.value").resolve({"count": 3})


class TestNodeExecutionResult:
    """Test NodeExecutionResult helpers."""

    def test_to_dict(self) -> None:
        result = NodeExecutionResult(
            node_id="a",
            status=ResultStatus.SUCCESS,
            output={"data": 1},
            execution_time_ms=1.5,
        )

        d = result.to_dict()
        assert result.success
        assert d["status"] == "success"
        assert d["output"] == {"data": 1}
        assert d["cached"] is False
