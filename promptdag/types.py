"""
Core type system and data structures for promptdag.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Optional

if TYPE_CHECKING:
    from promptdag.accounting import UsageReport


class NodeType(str, Enum):
    """Node types with a built-in executor."""

    INPUT = "input"
    PROMPT_TEMPLATE = "prompt-template"
    LLM = "llm"
    RAG_RETRIEVER = "rag-retriever"
    MEMORY_STORE = "memory-store"
    STATE_TRACKER = "state-tracker"
    PROCESSOR = "processor"
    OUTPUT_PARSER = "output-parser"
    OUTPUT = "output"


# Spellings produced by the editor for the same node types.
NODE_TYPE_ALIASES: dict[str, str] = {
    "promptTemplate": NodeType.PROMPT_TEMPLATE.value,
    "PromptTemplateNode": NodeType.PROMPT_TEMPLATE.value,
    "prompt": NodeType.PROMPT_TEMPLATE.value,
    "ragRetriever": NodeType.RAG_RETRIEVER.value,
    "RAGRetrieverNode": NodeType.RAG_RETRIEVER.value,
    "rag": NodeType.RAG_RETRIEVER.value,
    "memoryStore": NodeType.MEMORY_STORE.value,
    "MemoryStoreNode": NodeType.MEMORY_STORE.value,
    "stateTracker": NodeType.STATE_TRACKER.value,
    "StateTrackerNode": NodeType.STATE_TRACKER.value,
    "outputParser": NodeType.OUTPUT_PARSER.value,
    "OutputParserNode": NodeType.OUTPUT_PARSER.value,
    "LLMNode": NodeType.LLM.value,
}


def canonical_node_type(type_name: str) -> str:
    """Resolve an editor alias to its canonical node type name."""
    return NODE_TYPE_ALIASES.get(type_name, type_name)


class ExecutorStatus(str, Enum):
    """Status values reported by executors through on_status_update."""

    RUNNING = "running"
    SUCCESS = "success"
    CACHED = "cached"
    ERROR = "error"


class NodeState(str, Enum):
    """Lifecycle state of a node within a session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CACHED = "cached"


TERMINAL_NODE_STATES = frozenset(
    {NodeState.COMPLETED, NodeState.FAILED, NodeState.CACHED}
)


class SessionStatus(str, Enum):
    """Status of an execution session."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ResultStatus(str, Enum):
    """Outcome of a single node execution."""

    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Node:
    """
    A typed unit of pipeline work.

    ``data`` is deep-copied on construction so a submitted node never shares
    mutable state with the caller.
    """

    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", copy.deepcopy(dict(self.data or {})))

    @property
    def canonical_type(self) -> str:
        return canonical_node_type(self.type)

    @property
    def config(self) -> dict[str, Any]:
        """
        Flattened node configuration.

        The editor stores settings either at the top level of ``data`` or in
        a nested ``data["config"]`` mapping; nested values win.
        """
        flat = {k: copy.deepcopy(v) for k, v in self.data.items() if k != "config"}
        nested = self.data.get("config")
        if isinstance(nested, Mapping):
            flat.update(copy.deepcopy(dict(nested)))
        return flat

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "data": copy.deepcopy(self.data)}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Node":
        """Build a node from an editor mapping; missing fields become empty."""
        data = raw.get("data")
        if not isinstance(data, Mapping):
            data = {}
        return cls(
            id=str(raw.get("id") or ""),
            type=str(raw.get("type") or ""),
            data=dict(data),
        )


@dataclass(frozen=True)
class Edge:
    """A directed dependency between two nodes."""

    id: str
    source: str
    target: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Edge":
        return cls(
            id=str(raw.get("id") or ""),
            source=str(raw.get("source") or ""),
            target=str(raw.get("target") or ""),
        )

    def __repr__(self) -> str:
        return f"Edge({self.id}: {self.source} -> {self.target})"


@dataclass
class FieldPath:
    """Parse and resolve dot-notation field paths."""

    root: str
    path: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, path_str: str) -> "FieldPath":
        """
        Parse a field path string like 'context.user.name' into components.

        Args:
            path_str: Dot-notation path

        Returns:
            FieldPath instance with root key and nested path
        """
        parts = path_str.split(".")
        return cls(root=parts[0], path=parts[1:])

    def __str__(self) -> str:
        if self.path:
            return f"{self.root}.{'.'.join(self.path)}"
        return self.root

    def is_nested(self) -> bool:
        return len(self.path) > 0

    def resolve(self, data: Mapping[str, Any]) -> Any:
        """
        Resolve the field path against actual data.

        Args:
            data: Mapping containing the root key

        Returns:
            The value at the resolved path

        Raises:
            KeyError: If path does not exist in data
            TypeError: If an intermediate value is not a mapping or list
        """
        if self.root not in data:
            raise KeyError(f"Key '{self.root}' not found in data")

        value = data[self.root]

        for part in self.path:
            if isinstance(value, Mapping):
                if part not in value:
                    raise KeyError(f"Key '{part}' not found in path {self}")
                value = value[part]
            elif isinstance(value, list):
                try:
                    value = value[int(part)]
                except (ValueError, IndexError) as e:
                    raise KeyError(f"Invalid array access '{part}' in path {self}") from e
            else:
                raise TypeError(
                    f"Cannot traverse path {self}: "
                    f"'{part}' on non-dict/list type {type(value).__name__}"
                )

        return value


@dataclass
class ExecutorResult:
    """Uniform value returned by every executor."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    retryable: bool = True
    usage: Optional["UsageReport"] = None


@dataclass
class NodeExecutionResult:
    """Scheduler-facing outcome of one node in a session."""

    node_id: str
    status: ResultStatus
    output: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    cached: bool = False
    cost: float = 0.0
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "cached": self.cached,
            "cost": self.cost,
            "attempts": self.attempts,
        }
