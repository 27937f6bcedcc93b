"""
Client-side session state folded from the event stream.

``reduce_event`` is a pure ``(state, event) -> state`` function, so replaying
a recorded event log always reproduces the same session.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from promptdag.events import Event, EventKind
from promptdag.types import NodeState, SessionStatus


@dataclass(frozen=True)
class NodeSnapshot:
    """Last known state of one node."""

    status: NodeState = NodeState.PENDING
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    cost: float = 0.0


@dataclass(frozen=True)
class SessionErrorEntry:
    """A node failure recorded in the session."""

    node_id: Optional[str]
    error: str
    timestamp: datetime


@dataclass(frozen=True)
class ExecutionSession:
    """State of one execution run as seen by an observer."""

    session_id: Optional[str] = None
    status: SessionStatus = SessionStatus.IDLE
    node_states: Mapping[str, NodeSnapshot] = field(default_factory=dict)
    total_cost: float = 0.0
    total_time_ms: float = 0.0
    errors: tuple[SessionErrorEntry, ...] = ()
    streaming_tokens: Mapping[str, str] = field(default_factory=dict)
    final_output: Any = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    def node_status(self, node_id: str) -> Optional[NodeState]:
        snapshot = self.node_states.get(node_id)
        return snapshot.status if snapshot else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "node_states": {
                node_id: {
                    "status": snap.status.value,
                    "result": snap.result,
                    "error": snap.error,
                    "execution_time_ms": snap.execution_time_ms,
                    "cost": snap.cost,
                }
                for node_id, snap in self.node_states.items()
            },
            "total_cost": self.total_cost,
            "total_time_ms": self.total_time_ms,
            "errors": [
                {"node_id": e.node_id, "error": e.error, "timestamp": e.timestamp.isoformat()}
                for e in self.errors
            ],
            "streaming_tokens": dict(self.streaming_tokens),
            "final_output": self.final_output,
            "error": self.error,
        }


def _with_node(
    session: ExecutionSession,
    node_id: str,
    snapshot: NodeSnapshot,
) -> dict[str, NodeSnapshot]:
    node_states = dict(session.node_states)
    node_states[node_id] = snapshot
    return node_states


def reduce_event(session: ExecutionSession, event: Event) -> ExecutionSession:
    """
    Fold one event into the session state.

    Args:
        session: Prior state
        event: Next event in local receipt order

    Returns:
        Next state; ``session`` itself when the event is discarded
    """
    meta = event.meta

    if event.kind == EventKind.EXECUTION_STARTED:
        return ExecutionSession(
            session_id=event.session_id,
            status=SessionStatus.RUNNING,
            node_states={node_id: NodeSnapshot() for node_id in meta.get("node_ids", [])},
        )

    if event.kind == EventKind.EXECUTION_ERROR and session.session_id is None:
        return replace(
            session,
            session_id=event.session_id,
            status=SessionStatus.FAILED,
            error=str(meta.get("error", "")),
        )

    # Events from a superseded or foreign session never touch this state
    if event.session_id != session.session_id or session.is_terminal:
        return session

    if event.kind == EventKind.NODE_EXECUTION_STARTED and event.node_id:
        return replace(
            session,
            node_states=_with_node(session, event.node_id, NodeSnapshot(NodeState.RUNNING)),
        )

    if event.kind == EventKind.NODE_EXECUTION_COMPLETED and event.node_id:
        snapshot = NodeSnapshot(
            status=NodeState.CACHED if meta.get("cached") else NodeState.COMPLETED,
            result=meta.get("result"),
            execution_time_ms=meta.get("execution_time_ms", 0.0),
            cost=meta.get("cost", 0.0),
        )
        return replace(
            session,
            node_states=_with_node(session, event.node_id, snapshot),
            total_cost=max(session.total_cost, meta.get("total_cost") or 0.0),
        )

    if event.kind == EventKind.NODE_EXECUTION_FAILED and event.node_id:
        error = str(meta.get("error", ""))
        snapshot = NodeSnapshot(
            status=NodeState.FAILED,
            error=error,
            execution_time_ms=meta.get("execution_time_ms", 0.0),
        )
        return replace(
            session,
            node_states=_with_node(session, event.node_id, snapshot),
            errors=session.errors + (SessionErrorEntry(event.node_id, error, event.timestamp),),
        )

    if event.kind == EventKind.TOKEN_STREAM and event.node_id:
        tokens = dict(session.streaming_tokens)
        tokens[event.node_id] = tokens.get(event.node_id, "") + str(meta.get("tokens", ""))
        return replace(session, streaming_tokens=tokens)

    if event.kind == EventKind.EXECUTION_COMPLETED:
        return replace(
            session,
            status=SessionStatus.COMPLETED,
            total_time_ms=meta.get("execution_time_ms", 0.0),
            total_cost=max(session.total_cost, meta.get("total_cost") or 0.0),
            final_output=meta.get("final_output"),
        )

    if event.kind in (EventKind.EXECUTION_FAILED, EventKind.EXECUTION_ERROR):
        return replace(
            session,
            status=SessionStatus.FAILED,
            total_time_ms=meta.get("execution_time_ms", session.total_time_ms),
            error=str(meta.get("error", "")),
        )

    return session


def replay(
    events: Iterable[Event],
    initial: Optional[ExecutionSession] = None,
) -> ExecutionSession:
    """Fold a recorded event sequence into a session."""
    session = initial or ExecutionSession()
    for event in events:
        session = reduce_event(session, event)
    return session


class SessionReducer:
    """
    Stateful wrapper around ``reduce_event``.

    Instances are callable, so they can be subscribed to an EventEmitter
    directly.
    """

    def __init__(self, initial: Optional[ExecutionSession] = None) -> None:
        self._state = initial or ExecutionSession()
        self._lock = threading.Lock()

    @property
    def state(self) -> ExecutionSession:
        return self._state

    def apply(self, event: Event) -> ExecutionSession:
        with self._lock:
            self._state = reduce_event(self._state, event)
            return self._state

    def __call__(self, event: Event) -> None:
        self.apply(event)
