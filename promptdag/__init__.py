"""
promptdag: validation and execution engine for AI pipeline graphs.
"""

import logging

__version__ = "0.1.0"

from promptdag.accounting import CostAccountant, ModelRate, PricingTable, UsageReport
from promptdag.backends import (
    Backends,
    HttpRetrievalBackend,
    HttpTextGenerationBackend,
    InMemoryKeyValueStore,
)
from promptdag.cache import ResultCache
from promptdag.config import EngineSettings, configure_logging, get_settings
from promptdag.context import ExecutorContext, RunContext
from promptdag.engine import Engine, ExecutionPlan, PlanBuilder, RunResult
from promptdag.errors import (
    BackendError,
    ConfigurationError,
    ExecutionError,
    GraphError,
    PromptDagError,
    SessionError,
    TimeoutError,
    UnknownNodeTypeError,
    ValidationError,
)
from promptdag.events import Event, EventEmitter, EventKind, EventRecorder
from promptdag.executors import BaseExecutor
from promptdag.graph import Graph, GraphBuilder, GraphTopology
from promptdag.registry import ExecutorRegistry, NodeTypeInfo, build_default_registry
from promptdag.resilience import CircuitBreaker, CircuitState
from promptdag.service import PipelineService, RunCommand
from promptdag.session import ExecutionSession, SessionReducer, reduce_event, replay
from promptdag.types import (
    Edge,
    ExecutorResult,
    ExecutorStatus,
    FieldPath,
    Node,
    NodeExecutionResult,
    NodeState,
    NodeType,
    ResultStatus,
    SessionStatus,
)
from promptdag.validation import (
    GraphValidator,
    Severity,
    ValidationIssue,
    ValidationResult,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Core
    "Engine",
    "RunResult",
    "ExecutionPlan",
    "PlanBuilder",
    "PipelineService",
    "RunCommand",
    # Graph
    "Graph",
    "GraphBuilder",
    "GraphTopology",
    "Node",
    "Edge",
    "NodeType",
    "FieldPath",
    # Validation
    "GraphValidator",
    "ValidationResult",
    "ValidationIssue",
    "Severity",
    # Executors
    "BaseExecutor",
    "ExecutorRegistry",
    "NodeTypeInfo",
    "build_default_registry",
    "ExecutorContext",
    "ExecutorResult",
    "ExecutorStatus",
    "RunContext",
    "Backends",
    "HttpTextGenerationBackend",
    "HttpRetrievalBackend",
    "InMemoryKeyValueStore",
    # Results and state
    "NodeExecutionResult",
    "NodeState",
    "ResultStatus",
    "SessionStatus",
    "ExecutionSession",
    "SessionReducer",
    "reduce_event",
    "replay",
    # Events
    "Event",
    "EventKind",
    "EventEmitter",
    "EventRecorder",
    # Cost, cache, resilience
    "CostAccountant",
    "PricingTable",
    "ModelRate",
    "UsageReport",
    "ResultCache",
    "CircuitBreaker",
    "CircuitState",
    # Config
    "EngineSettings",
    "get_settings",
    "configure_logging",
    # Errors
    "PromptDagError",
    "GraphError",
    "ValidationError",
    "ConfigurationError",
    "UnknownNodeTypeError",
    "ExecutionError",
    "BackendError",
    "TimeoutError",
    "SessionError",
]
