"""
Runtime context for sessions and executors.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from promptdag.accounting import CostAccountant
from promptdag.events import EventEmitter
from promptdag.types import ExecutorStatus, NodeState

StatusCallback = Callable[[str, ExecutorStatus, Any], None]
TokenCallback = Callable[[str, str], None]


@dataclass
class RunContext:
    """
    Context for an entire execution session.

    Owns the session accumulators; only the engine writes to them.
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    emitter: EventEmitter = field(default_factory=EventEmitter)
    accountant: CostAccountant = field(default_factory=CostAccountant)
    node_states: dict[str, NodeState] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_error(self, node_id: Optional[str], error: str) -> None:
        self.errors.append({
            "node_id": node_id,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def create_executor_context(
        self,
        node_id: str,
        input_data: Any,
        on_status_update: Optional[StatusCallback] = None,
        on_tokens: Optional[TokenCallback] = None,
    ) -> "ExecutorContext":
        """
        Create an ExecutorContext for a specific node.

        Args:
            node_id: Unique identifier for the node
            input_data: Merged upstream output (or pipeline input for entry nodes)
            on_status_update: Receives executor status transitions
            on_tokens: Receives incremental model output

        Returns:
            ExecutorContext instance
        """
        return ExecutorContext(
            input_data=input_data,
            node_id=node_id,
            on_status_update=on_status_update,
            on_tokens=on_tokens,
            session_id=self.session_id,
        )


@dataclass
class ExecutorContext:
    """
    Context exposed to executors during execution.
    """

    input_data: Any
    node_id: str
    on_status_update: Optional[StatusCallback] = None
    on_tokens: Optional[TokenCallback] = None
    session_id: Optional[str] = None
    logger: logging.LoggerAdapter[logging.Logger] = field(init=False)

    def __post_init__(self) -> None:
        """Initialize the node-specific logger."""
        base_logger = logging.getLogger(f"promptdag.node.{self.node_id}")
        self.logger = logging.LoggerAdapter(
            base_logger,
            {"session_id": self.session_id, "node_id": self.node_id},
        )

    def report(self, status: ExecutorStatus, data: Any = None) -> None:
        if self.on_status_update is not None:
            self.on_status_update(self.node_id, status, data)

    def stream_tokens(self, tokens: str) -> None:
        """Forward a chunk of incremental output to observers."""
        if tokens and self.on_tokens is not None:
            self.on_tokens(self.node_id, tokens)
