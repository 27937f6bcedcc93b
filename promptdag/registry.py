"""
Executor registry: node type to executor dispatch.

The editor queries available node types from here, and the engine resolves
each node's executor through it.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from promptdag.backends import Backends
from promptdag.errors import GraphError, UnknownNodeTypeError
from promptdag.executors import BUILTIN_EXECUTORS, BaseExecutor
from promptdag.types import NODE_TYPE_ALIASES


@dataclass
class NodeTypeInfo:
    """Information about a registered node type."""

    type_name: str
    executor: BaseExecutor
    aliases: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Export to dictionary for editor consumption."""
        executor = self.executor
        return {
            "type_name": self.type_name,
            "aliases": list(self.aliases),
            "category": executor.category,
            "description": executor.description or self.type_name,
            "config_schema": dict(executor.config_schema),
            "cacheable": executor.cacheable,
            "outbound": executor.outbound,
        }


class ExecutorRegistry:
    """
    Registry of executors keyed by node type.

    Populated once at startup and then frozen; the set of node types is not
    extended while runs are in flight.
    """

    def __init__(self) -> None:
        self._types: dict[str, NodeTypeInfo] = {}
        self._aliases: dict[str, str] = {}
        self._frozen = False

    def register(self, executor: BaseExecutor, aliases: Iterable[str] = ()) -> None:
        """
        Register an executor under its ``node_type``.

        Args:
            executor: Executor instance
            aliases: Alternative type names resolving to the same executor

        Raises:
            GraphError: If the registry is frozen or the type is taken
        """
        if self._frozen:
            raise GraphError("Executor registry is frozen")
        type_name = executor.node_type
        if not type_name:
            raise GraphError(f"Executor {type(executor).__name__} has no node_type")
        if type_name in self._types:
            raise GraphError(f"Node type '{type_name}' already registered")

        alias_tuple = tuple(aliases)
        self._types[type_name] = NodeTypeInfo(type_name, executor, alias_tuple)
        for alias in alias_tuple:
            self._aliases[alias] = type_name

    def freeze(self) -> "ExecutorRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve_type(self, type_name: str) -> str:
        return self._aliases.get(type_name, type_name)

    def has(self, type_name: str) -> bool:
        return self.resolve_type(type_name) in self._types

    def get(self, type_name: str) -> BaseExecutor:
        """
        Get the executor for a node type or one of its aliases.

        Raises:
            UnknownNodeTypeError: If type not registered
        """
        info = self._types.get(self.resolve_type(type_name))
        if info is None:
            raise UnknownNodeTypeError(f"Unknown node type: '{type_name}'")
        return info.executor

    def type_names(self, include_aliases: bool = False) -> list[str]:
        names = list(self._types)
        if include_aliases:
            names.extend(self._aliases)
        return names

    def list_types(self, category: Optional[str] = None) -> list[dict[str, Any]]:
        """
        List registered node types for the editor palette.

        Args:
            category: Optional filter by category
        """
        types: Iterable[NodeTypeInfo] = self._types.values()
        if category:
            types = [t for t in types if t.executor.category == category]
        return [t.to_dict() for t in types]

    def list_categories(self) -> list[str]:
        return sorted({t.executor.category for t in self._types.values()})


def build_default_registry(
    backends: Optional[Backends] = None,
    extra_executors: Iterable[BaseExecutor] = (),
) -> ExecutorRegistry:
    """
    Registry holding every built-in executor, frozen.

    Args:
        backends: External services shared by the executors
        extra_executors: Application-specific executors registered alongside
            the built-ins
    """
    backends = backends or Backends()
    registry = ExecutorRegistry()
    for executor_cls in BUILTIN_EXECUTORS:
        aliases = [
            alias for alias, canonical in NODE_TYPE_ALIASES.items()
            if canonical == executor_cls.node_type
        ]
        registry.register(executor_cls(backends), aliases=aliases)
    for executor in extra_executors:
        registry.register(executor)
    return registry.freeze()
