"""
Static validation of pipeline graphs before execution.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from promptdag.graph import Graph, GraphTopology
from promptdag.types import Edge, Node, NodeType


ERROR_PENALTY = 15
WARNING_PENALTY = 5

TOP_K_RANGE = (1, 20)
TEMPERATURE_RANGE = (0.0, 2.0)
MAX_TOKENS_WARNING = 4000
MAX_ENTRY_POINTS = 3

_VARIABLE_RE = re.compile(r"\{[^{}]+\}")

_PARSER_TYPES = {NodeType.OUTPUT_PARSER.value, NodeType.OUTPUT.value}

# Keyword in the issue message -> remediation hint
_SUGGESTIONS: list[tuple[str, str]] = [
    ("unknown node type", "Replace the node with one of the supported node types"),
    ("circular", "Remove connections that create loops in your pipeline"),
    ("duplicate", "Give every node a unique id"),
    ("does not exist", "Reconnect the edge to an existing node or delete it"),
    ("disconnected", "Connect these nodes to the pipeline or remove them"),
    ("entry point", "Ensure at least one node has no incoming connections"),
    ("template", "Add a template with variables like {input} or {context}"),
    ("vector store", "Configure a vector database connection (Pinecone, Weaviate, etc.)"),
    ("title", "Give the pipeline a descriptive title"),
    ("output node", "Add an output node to collect the pipeline result"),
]


class Severity(str, Enum):
    """Severity of a validation issue."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding produced by the validator."""

    severity: Severity
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
            "field": self.field,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one graph."""

    is_valid: bool
    issues: tuple[ValidationIssue, ...] = ()
    score: int = 100
    recommendations: tuple[str, ...] = field(default_factory=tuple)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def infos(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.INFO]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "score": self.score,
            "issues": [issue.to_dict() for issue in self.issues],
            "recommendations": list(self.recommendations),
        }


def compute_score(error_count: int, warning_count: int) -> int:
    """
    Quality score for a graph.

    Returns:
        ``100 - 15*errors - 5*warnings`` clamped to [0, 100]
    """
    score = 100 - ERROR_PENALTY * error_count - WARNING_PENALTY * warning_count
    return max(0, min(100, score))


def suggest(message: str) -> Optional[str]:
    """Remediation hint for an issue message, if one is known."""
    lowered = message.lower()
    for keyword, suggestion in _SUGGESTIONS:
        if keyword in lowered:
            return suggestion
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class _IssueCollector:
    """Per-call accumulator; the validator itself holds no run state."""

    def __init__(self) -> None:
        self.issues: list[ValidationIssue] = []

    def add(
        self,
        severity: Severity,
        message: str,
        node_id: Optional[str] = None,
        edge_id: Optional[str] = None,
        field: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.issues.append(ValidationIssue(
            severity=severity,
            message=message,
            node_id=node_id,
            edge_id=edge_id,
            field=field,
            suggestion=suggestion or suggest(message),
        ))

    def error(self, message: str, **kwargs: Any) -> None:
        self.add(Severity.ERROR, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.add(Severity.WARNING, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.add(Severity.INFO, message, **kwargs)


class GraphValidator:
    """
    Validates graph structure, node configuration and flow.

    ``validate`` is a pure function of its argument: running it twice on the
    same graph yields equal results.
    """

    def __init__(self, known_types: Optional[Iterable[str]] = None) -> None:
        """
        Initialize validator.

        Args:
            known_types: Registered executor keys (defaults to the built-in
                node types)
        """
        if known_types is None:
            known_types = [t.value for t in NodeType]
        self.known_types = frozenset(known_types)

    def validate(self, graph: Union[Graph, Mapping[str, Any]]) -> ValidationResult:
        """
        Validate a graph value or a raw editor definition.

        Args:
            graph: Graph, or definition mapping with nodes/edges/title

        Returns:
            ValidationResult with issues, score and recommendations
        """
        collector = _IssueCollector()

        if isinstance(graph, Mapping):
            self._check_definition_shape(graph, collector)
            graph = Graph.from_definition(graph)

        self._check_structure(graph, collector)
        valid_nodes = self._check_nodes(graph, collector)
        for node in valid_nodes:
            self._check_node_config(node, collector)
        valid_edges = self._check_edges(graph, collector)

        topology = GraphTopology(graph.nodes, valid_edges)
        self._check_flow(topology, collector)
        self._check_heuristics(valid_nodes, topology, collector)

        issues = tuple(collector.issues)
        error_count = sum(1 for i in issues if i.severity == Severity.ERROR)
        warning_count = sum(1 for i in issues if i.severity == Severity.WARNING)

        return ValidationResult(
            is_valid=error_count == 0,
            issues=issues,
            score=compute_score(error_count, warning_count),
            recommendations=tuple(self._recommendations(issues)),
        )

    def _check_definition_shape(
        self,
        definition: Mapping[str, Any],
        collector: _IssueCollector,
    ) -> None:
        for key in ("nodes", "edges"):
            value = definition.get(key)
            if value is not None and not isinstance(value, list):
                collector.error(
                    f"Pipeline '{key}' must be a list",
                    field=key,
                    suggestion=f"Provide '{key}' as a list of objects",
                )

    def _check_structure(self, graph: Graph, collector: _IssueCollector) -> None:
        if _is_blank(graph.title):
            collector.error("Pipeline must have a title", field="title")
        if not graph.nodes:
            collector.warning(
                "Pipeline has no nodes",
                suggestion="Add an input node to start building the pipeline",
            )

    def _check_nodes(self, graph: Graph, collector: _IssueCollector) -> list[Node]:
        """
        Node integrity checks.

        Returns:
            Nodes eligible for per-type configuration checks
        """
        seen: set[str] = set()
        valid: list[Node] = []

        for node in graph.nodes:
            if _is_blank(node.id):
                collector.error("Node missing required id field", field="id")
                continue
            if node.id in seen:
                collector.error(f"Duplicate node ID found: {node.id}", node_id=node.id)
                continue
            seen.add(node.id)

            if _is_blank(node.type):
                collector.error(
                    "Node missing required type field",
                    node_id=node.id,
                    field="type",
                    suggestion="Choose a node type for this node",
                )
                continue
            if node.canonical_type not in self.known_types:
                collector.error(
                    f"Unknown node type '{node.type}'",
                    node_id=node.id,
                    field="type",
                )
                continue
            valid.append(node)

        return valid

    def _check_node_config(self, node: Node, collector: _IssueCollector) -> None:
        node_type = node.canonical_type
        config = node.config

        for key, expected in (("retryCount", "a whole number"), ("timeoutSeconds", "a number")):
            value = config.get(key)
            if value is not None and not _is_number(value):
                collector.warning(
                    f"{key} should be {expected}",
                    node_id=node.id,
                    field=key,
                )

        if node_type == NodeType.PROMPT_TEMPLATE.value:
            template = config.get("template")
            if not isinstance(template, str) or not template.strip():
                collector.error(
                    "Prompt template is required", node_id=node.id, field="template"
                )
            elif not _VARIABLE_RE.search(template):
                collector.warning(
                    "Prompt template should include variables like {input}",
                    node_id=node.id,
                    field="template",
                )

        elif node_type == NodeType.RAG_RETRIEVER.value:
            if _is_blank(config.get("vectorStore")) and _is_blank(config.get("integrationId")):
                collector.error(
                    "RAG node requires vector store configuration",
                    node_id=node.id,
                    field="vectorStore",
                )
            top_k = config.get("topK")
            low, high = TOP_K_RANGE
            if top_k is not None and (not _is_number(top_k) or not low <= top_k <= high):
                collector.warning(
                    f"Top K should be between {low} and {high} for optimal performance",
                    node_id=node.id,
                    field="topK",
                    suggestion="Use a topK between 3 and 10 for most pipelines",
                )

        elif node_type == NodeType.MEMORY_STORE.value:
            if _is_blank(config.get("operation")):
                collector.error(
                    "Memory node requires operation type",
                    node_id=node.id,
                    field="operation",
                    suggestion="Set operation to store, retrieve, append or clear",
                )
            if _is_blank(config.get("key")):
                collector.warning(
                    "Memory node should specify a key",
                    node_id=node.id,
                    field="key",
                    suggestion="Set a key so memory can be shared between runs",
                )

        elif node_type in _PARSER_TYPES:
            parser_type = config.get("parserType")
            if node_type == NodeType.OUTPUT_PARSER.value and _is_blank(parser_type):
                collector.warning(
                    "Output parser type not specified",
                    node_id=node.id,
                    field="parserType",
                    suggestion="Set parserType to json, structured or text",
                )
            if parser_type == "structured" and not config.get("schema"):
                collector.error(
                    "Structured parser requires schema definition",
                    node_id=node.id,
                    field="schema",
                    suggestion="Provide a JSON schema describing the expected fields",
                )

        elif node_type == NodeType.LLM.value:
            temperature = config.get("temperature")
            low, high = TEMPERATURE_RANGE
            if _is_number(temperature) and not low <= temperature <= high:
                collector.warning(
                    f"Temperature should be between {low:g} and {high:g}",
                    node_id=node.id,
                    field="temperature",
                )
            max_tokens = config.get("maxTokens")
            if _is_number(max_tokens) and max_tokens > MAX_TOKENS_WARNING:
                collector.warning(
                    "High max tokens may increase costs and latency",
                    node_id=node.id,
                    field="maxTokens",
                    suggestion=f"Keep maxTokens at or below {MAX_TOKENS_WARNING}",
                )
            if _is_blank(config.get("provider")):
                collector.info(
                    "No provider specified, the default text generation backend will be used",
                    node_id=node.id,
                    field="provider",
                )

    def _check_edges(self, graph: Graph, collector: _IssueCollector) -> list[Edge]:
        node_ids = {node.id for node in graph.nodes if node.id}
        valid: list[Edge] = []

        for edge in graph.edges:
            if _is_blank(edge.id):
                collector.error("Edge missing required id field", field="id")
                continue
            ok = True
            if edge.source not in node_ids:
                collector.error(
                    f"Edge source node '{edge.source}' does not exist",
                    edge_id=edge.id,
                    field="source",
                )
                ok = False
            if edge.target not in node_ids:
                collector.error(
                    f"Edge target node '{edge.target}' does not exist",
                    edge_id=edge.id,
                    field="target",
                )
                ok = False
            if ok:
                valid.append(edge)

        return valid

    def _check_flow(self, topology: GraphTopology, collector: _IssueCollector) -> None:
        cycle = topology.find_cycle()
        if cycle:
            collector.error(
                f"Pipeline contains a circular dependency: {' -> '.join(cycle)}",
                node_id=cycle[0],
            )

        entries = topology.entry_nodes()
        # A graph whose every node sits on or behind a cycle has no entry;
        # the cycle error already covers it.
        if not entries and not cycle:
            collector.error("No entry point found - all nodes have incoming connections")
        elif len(entries) > MAX_ENTRY_POINTS:
            collector.warning(
                f"Multiple entry points detected ({len(entries)}) - "
                "consider consolidating inputs",
                suggestion="Merge inputs into fewer entry nodes",
            )

        disconnected: list[str] = []
        if len(topology.node_ids) > 1:
            roots = [n for n in entries if topology.downstream(n)]
            reachable = topology.reachable_from(roots) if roots else set()
            for node_id in topology.node_ids:
                isolated = not topology.upstream(node_id) and not topology.downstream(node_id)
                if isolated or (roots and node_id not in reachable):
                    disconnected.append(node_id)
        if disconnected:
            collector.warning(f"Disconnected nodes found: {', '.join(disconnected)}")

        if not topology.exit_nodes():
            collector.warning("No clear output node - every node has outgoing connections")

    def _check_heuristics(
        self,
        nodes: list[Node],
        topology: GraphTopology,
        collector: _IssueCollector,
    ) -> None:
        if not nodes:
            return

        types = {node.canonical_type for node in nodes}
        if NodeType.PROMPT_TEMPLATE.value not in types:
            collector.info(
                "No prompt template found - consider adding one to structure model inputs",
                suggestion="Add a prompt-template node before model or output nodes",
            )

        type_by_id = {node.id: node.canonical_type for node in nodes}
        for node in nodes:
            if node.canonical_type != NodeType.RAG_RETRIEVER.value:
                continue
            below = topology.reachable_from(topology.downstream(node.id))
            if not any(type_by_id.get(n) in _PARSER_TYPES for n in below):
                collector.info(
                    "RAG retriever has no downstream output parser",
                    node_id=node.id,
                    suggestion="Add an output-parser node to format retrieved documents",
                )

    def _recommendations(self, issues: tuple[ValidationIssue, ...]) -> list[str]:
        errors = [i for i in issues if i.severity == Severity.ERROR]
        warnings = [i for i in issues if i.severity == Severity.WARNING]

        recommendations = []
        if errors:
            plural = "s" if len(errors) != 1 else ""
            recommendations.append(f"Fix {len(errors)} critical error{plural} before deployment")
        if len(warnings) > 5:
            recommendations.append("Consider simplifying the pipeline to reduce warnings")
        if any(i.node_id for i in errors):
            recommendations.append("Review node configurations for missing required fields")
        recommendations.append("Test your pipeline with sample data before production use")
        return recommendations
