"""Tests for the session reducer."""

import pytest

from promptdag.engine import Engine
from promptdag.events import (
    EventRecorder,
    ExecutionCompletedEvent,
    ExecutionErrorEvent,
    ExecutionFailedEvent,
    ExecutionStartedEvent,
    NodeExecutionCompletedEvent,
    NodeExecutionFailedEvent,
    NodeExecutionStartedEvent,
    TokenStreamEvent,
)
from promptdag.graph import GraphBuilder
from promptdag.session import ExecutionSession, SessionReducer, reduce_event, replay
from promptdag.types import NodeState, SessionStatus


def started(session_id: str, *node_ids: str) -> ExecutionStartedEvent:
    return ExecutionStartedEvent(
        session_id=session_id,
        meta={"total_nodes": len(node_ids), "node_ids": list(node_ids)},
    )


class TestReduceEvent:
    """Test individual transitions."""

    def test_started_resets_state(self) -> None:
        prior = replay([
            started("old", "a"),
            NodeExecutionFailedEvent(session_id="old", node_id="a", meta={"error": "x"}),
        ])

        session = reduce_event(prior, started("new", "a", "b"))

        assert session.session_id == "new"
        assert session.status == SessionStatus.RUNNING
        assert session.errors == ()
        assert session.node_status("a") == NodeState.PENDING
        assert session.node_status("b") == NodeState.PENDING

    def test_node_lifecycle(self) -> None:
        session = replay([
            started("s", "a"),
            NodeExecutionStartedEvent(session_id="s", node_id="a"),
        ])
        assert session.node_status("a") == NodeState.RUNNING

        session = reduce_event(session, NodeExecutionCompletedEvent(
            session_id="s",
            node_id="a",
            meta={"result": {"v": 1}, "cost": 0.5, "total_cost": 0.5},
        ))

        assert session.node_status("a") == NodeState.COMPLETED
        assert session.node_states["a"].result == {"v": 1}
        assert session.total_cost == 0.5

    def test_cached_completion(self) -> None:
        session = replay([
            started("s", "a"),
            NodeExecutionCompletedEvent(session_id="s", node_id="a", meta={"cached": True}),
        ])

        assert session.node_status("a") == NodeState.CACHED

    def test_failure_appends_error(self) -> None:
        session = replay([
            started("s", "a", "b"),
            NodeExecutionFailedEvent(session_id="s", node_id="a", meta={"error": "bad"}),
        ])

        assert session.node_status("a") == NodeState.FAILED
        assert session.node_states["a"].error == "bad"
        assert [(e.node_id, e.error) for e in session.errors] == [("a", "bad")]
        assert session.status == SessionStatus.RUNNING

    def test_tokens_accumulate(self) -> None:
        session = replay([
            started("s", "llm"),
            TokenStreamEvent(session_id="s", node_id="llm", meta={"tokens": "Hel"}),
            TokenStreamEvent(session_id="s", node_id="llm", meta={"tokens": "lo"}),
        ])

        assert session.streaming_tokens == {"llm": "Hello"}

    def test_total_cost_monotonic(self) -> None:
        session = replay([
            started("s", "a", "b"),
            NodeExecutionCompletedEvent(session_id="s", node_id="a", meta={"total_cost": 0.3}),
            NodeExecutionCompletedEvent(session_id="s", node_id="b", meta={"total_cost": 0.1}),
        ])

        assert session.total_cost == 0.3

    def test_completed_is_terminal(self) -> None:
        session = replay([
            started("s", "a"),
            ExecutionCompletedEvent(
                session_id="s",
                meta={"execution_time_ms": 12.0, "final_output": {"x": 1}},
            ),
            NodeExecutionFailedEvent(session_id="s", node_id="a", meta={"error": "late"}),
        ])

        assert session.status == SessionStatus.COMPLETED
        assert session.is_terminal
        assert session.final_output == {"x": 1}
        assert session.total_time_ms == 12.0
        assert session.errors == ()

    def test_failed_session(self) -> None:
        session = replay([
            started("s", "a"),
            ExecutionFailedEvent(session_id="s", meta={"error": "aborted"}),
        ])

        assert session.status == SessionStatus.FAILED
        assert session.error == "aborted"

    def test_execution_error_on_idle_session(self) -> None:
        session = reduce_event(
            ExecutionSession(),
            ExecutionErrorEvent(session_id="s", meta={"error": "bad command"}),
        )

        assert session.session_id == "s"
        assert session.status == SessionStatus.FAILED
        assert session.error == "bad command"

    def test_superseded_session_ignored(self) -> None:
        session = replay([
            started("old", "a"),
            started("new", "a"),
            NodeExecutionCompletedEvent(session_id="old", node_id="a", meta={"total_cost": 9.0}),
            ExecutionCompletedEvent(session_id="old"),
        ])

        assert session.session_id == "new"
        assert session.status == SessionStatus.RUNNING
        assert session.node_status("a") == NodeState.PENDING
        assert session.total_cost == 0.0

    def test_pure(self) -> None:
        prior = replay([started("s", "a")])
        event = NodeExecutionStartedEvent(session_id="s", node_id="a")

        first = reduce_event(prior, event)
        second = reduce_event(prior, event)

        assert first == second
        assert prior.node_status("a") == NodeState.PENDING


class TestSessionReducer:
    def test_apply_and_call(self) -> None:
        reducer = SessionReducer()

        reducer(started("s", "a"))
        state = reducer.apply(NodeExecutionStartedEvent(session_id="s", node_id="a"))

        assert state is reducer.state
        assert state.node_status("a") == NodeState.RUNNING

    async def test_replay_matches_live_state(self, engine: Engine) -> None:
        """Test that folding a recorded log reproduces the live session."""
        graph = (
            GraphBuilder("Replay")
            .add_node("in", "input")
            .add_node("p", "prompt-template", template="Q: {input}")
            .add_node("llm", "llm", integrationId="x")
            .add_node("bad", "rag-retriever", vectorStore="v")
            .connect("in", "p")
            .connect("p", "llm")
            .connect("p", "bad")
            .build()
        )
        reducer = SessionReducer()
        recorder = EventRecorder()

        result = await engine.run(graph, "hi", event_subscribers=[reducer, recorder])

        live = reducer.state
        assert live == replay(recorder.events)
        assert live.status == SessionStatus.COMPLETED
        assert live.node_status("bad") == NodeState.FAILED
        assert len(live.errors) == 1
        assert live.total_cost == pytest.approx(result.total_cost)
        assert live.streaming_tokens["llm"].strip() == result.node_outputs["llm"]["llmResponse"]
        assert live.to_dict()["status"] == "completed"
