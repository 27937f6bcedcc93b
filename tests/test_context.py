"""Tests for execution context."""

import logging

from promptdag.context import ExecutorContext, RunContext
from promptdag.types import ExecutorStatus


class TestRunContext:
    """Test RunContext functionality."""

    def test_defaults(self) -> None:
        ctx = RunContext()

        assert ctx.session_id
        assert ctx.node_states == {}
        assert ctx.errors == []
        assert ctx.accountant.total_cost == 0

    def test_unique_session_ids(self) -> None:
        assert RunContext().session_id != RunContext().session_id

    def test_record_error(self) -> None:
        ctx = RunContext()

        ctx.record_error("n1", "boom")

        assert ctx.errors[0]["node_id"] == "n1"
        assert ctx.errors[0]["error"] == "boom"
        assert "timestamp" in ctx.errors[0]

    def test_create_executor_context(self) -> None:
        ctx = RunContext(session_id="s1")

        executor_ctx = ctx.create_executor_context("node1", {"x": 1})

        assert executor_ctx.node_id == "node1"
        assert executor_ctx.session_id == "s1"
        assert executor_ctx.input_data == {"x": 1}


class TestExecutorContext:
    """Test ExecutorContext functionality."""

    def test_logger(self) -> None:
        ctx = ExecutorContext(input_data=None, node_id="node1", session_id="s1")

        assert isinstance(ctx.logger, logging.LoggerAdapter)
        assert ctx.logger.logger.name == "promptdag.node.node1"
        assert ctx.logger.extra == {"session_id": "s1", "node_id": "node1"}

    def test_report(self) -> None:
        updates = []
        ctx = ExecutorContext(
            input_data=None,
            node_id="n",
            on_status_update=lambda node_id, status, data: updates.append((node_id, status, data)),
        )

        ctx.report(ExecutorStatus.SUCCESS, {"ok": True})

        assert updates == [("n", ExecutorStatus.SUCCESS, {"ok": True})]

    def test_stream_tokens(self) -> None:
        chunks = []
        ctx = ExecutorContext(
            input_data=None,
            node_id="n",
            on_tokens=lambda node_id, tokens: chunks.append((node_id, tokens)),
        )

        ctx.stream_tokens("Hel")
        ctx.stream_tokens("")
        ctx.stream_tokens("lo")

        assert chunks == [("n", "Hel"), ("n", "lo")]

    def test_callbacks_optional(self) -> None:
        ctx = ExecutorContext(input_data=None, node_id="n")

        ctx.report(ExecutorStatus.RUNNING)
        ctx.stream_tokens("ignored")
