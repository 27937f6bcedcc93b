"""
Graph value model, builder and topology queries.
"""

import hashlib
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from promptdag.errors import GraphError
from promptdag.types import Edge, Node


NodeLike = Union[Node, Mapping[str, Any]]
EdgeLike = Union[Edge, Mapping[str, Any]]


def _coerce_node(raw: Any) -> Node:
    if isinstance(raw, Node):
        return raw
    if isinstance(raw, Mapping):
        return Node.from_dict(raw)
    return Node(id="", type="")


def _coerce_edge(raw: Any) -> Edge:
    if isinstance(raw, Edge):
        return raw
    if isinstance(raw, Mapping):
        return Edge.from_dict(raw)
    return Edge(id="", source="", target="")


@dataclass(frozen=True)
class Graph:
    """
    Immutable pipeline graph submitted for validation and execution.

    Nodes and edges keep the order they were authored in; several rules
    (merge order, entry ordering) depend on it.
    """

    title: str = ""
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(_coerce_node(n) for n in self.nodes))
        object.__setattr__(self, "edges", tuple(_coerce_edge(e) for e in self.edges))
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    @classmethod
    def from_parts(
        cls,
        nodes: Iterable[NodeLike],
        edges: Iterable[EdgeLike],
        title: str = "",
    ) -> "Graph":
        """Build a graph from node and edge collections."""
        return cls(title=title, nodes=tuple(nodes), edges=tuple(edges))

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def get_node(self, node_id: str) -> Optional[Node]:
        """Return the first node with the given id, or None."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def topology(self) -> "GraphTopology":
        return GraphTopology(self.nodes, self.edges)

    def compute_graph_hash(self) -> str:
        """
        Compute a deterministic hash of the graph structure.

        Returns:
            SHA256 hash of the graph
        """
        graph_data = {
            "nodes": sorted(
                (node.to_dict() for node in self.nodes), key=lambda n: n["id"]
            ),
            "edges": sorted(
                (edge.to_dict() for edge in self.edges),
                key=lambda e: (e["source"], e["target"], e["id"]),
            ),
        }
        graph_json = json.dumps(graph_data, sort_keys=True, default=str)
        return hashlib.sha256(graph_json.encode()).hexdigest()

    def to_definition(self) -> dict[str, Any]:
        """
        Export the graph to the editor definition format.

        Returns:
            Dictionary with title, description, nodes, edges and metadata
        """
        return {
            "title": self.title,
            "description": self.description,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "metadata": {**self.metadata, "hash": self.compute_graph_hash()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_definition(), indent=2, default=str)

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any]) -> "Graph":
        """
        Load a graph from an editor definition.

        Loading is lenient: malformed node or edge entries become entries
        with empty fields so the validator can report them.

        Args:
            definition: Mapping with nodes, edges, title and description

        Returns:
            Graph value
        """
        nodes = definition.get("nodes")
        edges = definition.get("edges")
        metadata = definition.get("metadata")
        return cls(
            title=str(definition.get("title") or ""),
            description=str(definition.get("description") or ""),
            nodes=tuple(nodes) if isinstance(nodes, list) else (),
            edges=tuple(edges) if isinstance(edges, list) else (),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Graph":
        """
        Load a graph from a JSON string.

        Example:
            >>> graph = Graph.from_json(open("pipeline.json").read())
        """
        return cls.from_definition(json.loads(json_str))

    @classmethod
    def from_file(cls, filepath: str) -> "Graph":
        with open(filepath, "r") as f:
            return cls.from_json(f.read())


class GraphBuilder:
    """
    Incremental graph construction for code-authored pipelines.

    Example:
        >>> graph = (
        ...     GraphBuilder("Greeter")
        ...     .add_node("in", "input")
        ...     .add_node("out", "output", format="text")
        ...     .connect("in", "out")
        ...     .build()
        ... )
    """

    def __init__(self, title: str = "", description: str = "") -> None:
        self.title = title
        self.description = description
        self._nodes: dict[str, Node] = {}
        self._edges: list[Edge] = []

    def add_node(self, node_id: str, node_type: str, **data: Any) -> "GraphBuilder":
        """
        Add a node to the graph.

        Raises:
            GraphError: If node_id already exists
        """
        if node_id in self._nodes:
            raise GraphError(f"Node with id '{node_id}' already exists")
        self._nodes[node_id] = Node(id=node_id, type=node_type, data=data)
        return self

    def connect(
        self,
        source: str,
        target: str,
        edge_id: Optional[str] = None,
    ) -> "GraphBuilder":
        """
        Connect two nodes with a directed edge.

        Raises:
            GraphError: If either node doesn't exist
        """
        if source not in self._nodes:
            raise GraphError(f"Source node '{source}' not found")
        if target not in self._nodes:
            raise GraphError(f"Target node '{target}' not found")
        self._edges.append(
            Edge(id=edge_id or f"{source}->{target}", source=source, target=target)
        )
        return self

    def build(self) -> Graph:
        return Graph(
            title=self.title,
            description=self.description,
            nodes=tuple(self._nodes.values()),
            edges=tuple(self._edges),
        )


class GraphTopology:
    """
    Adjacency view over the resolvable part of a graph.

    Nodes with empty ids are ignored, duplicate ids keep their first
    occurrence, and edges whose endpoints do not resolve are dropped.
    Parallel edges collapse into one dependency.
    """

    def __init__(self, nodes: Sequence[Node], edges: Sequence[Edge]) -> None:
        self.node_ids: list[str] = []
        seen: set[str] = set()
        for node in nodes:
            if node.id and node.id not in seen:
                seen.add(node.id)
                self.node_ids.append(node.id)

        self._upstream: dict[str, list[str]] = {node_id: [] for node_id in self.node_ids}
        self._downstream: dict[str, list[str]] = {node_id: [] for node_id in self.node_ids}

        for edge in edges:
            if edge.source not in seen or edge.target not in seen:
                continue
            if edge.source not in self._upstream[edge.target]:
                self._upstream[edge.target].append(edge.source)
                self._downstream[edge.source].append(edge.target)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._upstream

    def upstream(self, node_id: str) -> list[str]:
        """Direct sources of a node, in edge order."""
        return list(self._upstream.get(node_id, []))

    def downstream(self, node_id: str) -> list[str]:
        """Direct targets of a node, in edge order."""
        return list(self._downstream.get(node_id, []))

    def entry_nodes(self) -> list[str]:
        return [n for n in self.node_ids if not self._upstream[n]]

    def exit_nodes(self) -> list[str]:
        return [n for n in self.node_ids if not self._downstream[n]]

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self._downstream.values())

    def reachable_from(self, roots: Iterable[str]) -> set[str]:
        """
        Forward traversal from the given roots.

        Returns:
            Set of node ids reachable from any root, roots included
        """
        visited: set[str] = set()
        queue = deque(r for r in roots if r in self._downstream)
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            for neighbor in self._downstream[current]:
                if neighbor not in visited:
                    queue.append(neighbor)
        return visited

    def find_cycle(self) -> Optional[list[str]]:
        """
        Depth-first search with an explicit recursion stack.

        Returns:
            Node path of the first cycle found, closing node repeated at the
            end (e.g. ``["a", "b", "a"]``), or None for an acyclic graph
        """
        visited: set[str] = set()

        for start in self.node_ids:
            if start in visited:
                continue

            path: list[str] = [start]
            on_stack: set[str] = {start}
            iterators = [iter(self._downstream[start])]
            visited.add(start)

            while iterators:
                neighbor = next(iterators[-1], None)
                if neighbor is None:
                    iterators.pop()
                    on_stack.discard(path.pop())
                    continue
                if neighbor in on_stack:
                    return path[path.index(neighbor):] + [neighbor]
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                on_stack.add(neighbor)
                path.append(neighbor)
                iterators.append(iter(self._downstream[neighbor]))

        return None

    def has_cycle(self) -> bool:
        return self.find_cycle() is not None
