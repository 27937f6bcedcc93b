"""
Event system for observable pipeline execution.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Types of events emitted during execution."""

    EXECUTION_STARTED = "execution_started"
    NODE_EXECUTION_STARTED = "node_execution_started"
    NODE_EXECUTION_COMPLETED = "node_execution_completed"
    NODE_EXECUTION_FAILED = "node_execution_failed"
    TOKEN_STREAM = "token_stream"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_ERROR = "execution_error"


TERMINAL_EVENT_KINDS = frozenset({
    EventKind.EXECUTION_COMPLETED,
    EventKind.EXECUTION_FAILED,
})


@dataclass
class Event:
    """Base event structure for all pipeline events."""

    session_id: str
    kind: EventKind
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    node_id: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "node_id": self.node_id,
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Event":
        """
        Rebuild an event from ``to_dict`` output, e.g. a recorded log.

        Returns:
            Instance of the subclass registered for the event kind
        """
        kind = EventKind(raw["kind"])
        timestamp = raw.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        kwargs: dict[str, Any] = {
            "session_id": raw["session_id"],
            "node_id": raw.get("node_id"),
            "meta": dict(raw.get("meta") or {}),
        }
        if timestamp is not None:
            kwargs["timestamp"] = timestamp
        event_cls = _EVENT_CLASSES.get(kind)
        if event_cls is None:
            return Event(kind=kind, **kwargs)
        return event_cls(**kwargs)


@dataclass
class ExecutionStartedEvent(Event):
    """Emitted when a session begins."""

    kind: EventKind = field(default=EventKind.EXECUTION_STARTED, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("total_nodes", 0)
        self.meta.setdefault("node_ids", [])


@dataclass
class NodeExecutionStartedEvent(Event):
    """Emitted when a node begins execution."""

    kind: EventKind = field(default=EventKind.NODE_EXECUTION_STARTED, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("node_type", "")


@dataclass
class NodeExecutionCompletedEvent(Event):
    """Emitted when a node completes, freshly or from cache."""

    kind: EventKind = field(default=EventKind.NODE_EXECUTION_COMPLETED, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("result", None)
        self.meta.setdefault("execution_time_ms", 0)
        self.meta.setdefault("cached", False)
        self.meta.setdefault("cost", 0.0)
        self.meta.setdefault("total_cost", 0.0)


@dataclass
class NodeExecutionFailedEvent(Event):
    """Emitted when a node fails."""

    kind: EventKind = field(default=EventKind.NODE_EXECUTION_FAILED, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("error", "")
        self.meta.setdefault("execution_time_ms", 0)
        self.meta.setdefault("attempts", 1)


@dataclass
class TokenStreamEvent(Event):
    """Emitted for each chunk of incremental model output."""

    kind: EventKind = field(default=EventKind.TOKEN_STREAM, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("tokens", "")


@dataclass
class ExecutionCompletedEvent(Event):
    """Emitted when every reachable node reached a terminal state."""

    kind: EventKind = field(default=EventKind.EXECUTION_COMPLETED, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("execution_time_ms", 0)
        self.meta.setdefault("total_cost", 0.0)
        self.meta.setdefault("final_output", {})
        self.meta.setdefault("nodes_executed", 0)
        self.meta.setdefault("nodes_failed", 0)


@dataclass
class ExecutionFailedEvent(Event):
    """Emitted when a session is aborted."""

    kind: EventKind = field(default=EventKind.EXECUTION_FAILED, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("error", "")
        self.meta.setdefault("execution_time_ms", 0)


@dataclass
class ExecutionErrorEvent(Event):
    """Transport or command level error, distinct from a node failure."""

    kind: EventKind = field(default=EventKind.EXECUTION_ERROR, init=False)

    def __post_init__(self) -> None:
        self.meta.setdefault("error", "")


_EVENT_CLASSES: dict[EventKind, type] = {
    EventKind.EXECUTION_STARTED: ExecutionStartedEvent,
    EventKind.NODE_EXECUTION_STARTED: NodeExecutionStartedEvent,
    EventKind.NODE_EXECUTION_COMPLETED: NodeExecutionCompletedEvent,
    EventKind.NODE_EXECUTION_FAILED: NodeExecutionFailedEvent,
    EventKind.TOKEN_STREAM: TokenStreamEvent,
    EventKind.EXECUTION_COMPLETED: ExecutionCompletedEvent,
    EventKind.EXECUTION_FAILED: ExecutionFailedEvent,
    EventKind.EXECUTION_ERROR: ExecutionErrorEvent,
}


EventCallback = Callable[[Event], None]


class EventEmitter:
    """
    Thread-safe event emitter for in-process subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> None:
        """
        Subscribe to all events.

        Args:
            callback: Function called with each emitted event
        """
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: Event) -> None:
        """
        Emit an event to all subscribers.

        A failing subscriber is logged and does not affect the run or the
        other subscribers.

        Args:
            event: Event to emit
        """
        with self._lock:
            subscribers = self._subscribers.copy()

        # Call subscribers outside the lock to avoid deadlocks
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Event subscriber %r failed on %s", callback, event.kind.value
                )

    def clear(self) -> None:
        """Remove all subscribers."""
        with self._lock:
            self._subscribers.clear()


class EventRecorder:
    """Subscriber that keeps every event it receives, in receipt order."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]

    def for_node(self, node_id: str) -> list[Event]:
        return [e for e in self.events if e.node_id == node_id]

    def of_kind(self, kind: EventKind) -> list[Event]:
        return [e for e in self.events if e.kind == kind]

    def to_dicts(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.events]
