"""
Core execution engine for pipeline graphs.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional

from promptdag.accounting import CostAccountant, PricingTable
from promptdag.backends import Backends
from promptdag.cache import ResultCache
from promptdag.config import EngineSettings, get_settings
from promptdag.context import ExecutorContext, RunContext
from promptdag.errors import (
    ConfigurationError,
    GraphError,
    PromptDagError,
    TimeoutError,
    UnknownNodeTypeError,
    ValidationError,
)
from promptdag.events import (
    Event,
    ExecutionCompletedEvent,
    ExecutionFailedEvent,
    ExecutionStartedEvent,
    NodeExecutionCompletedEvent,
    NodeExecutionFailedEvent,
    NodeExecutionStartedEvent,
    TokenStreamEvent,
)
from promptdag.executors import BaseExecutor
from promptdag.graph import EdgeLike, Graph, NodeLike
from promptdag.registry import ExecutorRegistry, build_default_registry
from promptdag.resilience import CIRCUIT_OPEN_MESSAGE, CircuitBreaker, backoff_delay
from promptdag.types import (
    ExecutorResult,
    ExecutorStatus,
    Node,
    NodeExecutionResult,
    NodeState,
    ResultStatus,
    SessionStatus,
)
from promptdag.validation import GraphValidator, ValidationResult

logger = logging.getLogger(__name__)


def merge_outputs(outputs: Iterable[Any]) -> dict[str, Any]:
    """
    Shallow merge in iteration order; later fields win on collision.

    Non-mapping outputs contribute ``{"data": value}``.
    """
    merged: dict[str, Any] = {}
    for output in outputs:
        if isinstance(output, Mapping):
            merged.update(output)
        elif output is not None:
            merged["data"] = output
    return merged


@dataclass
class ExecutionPlan:
    """
    Dependency-ordered walk over the reachable part of a graph.

    ``executing`` and ``executed`` are the traversal's working sets; after a
    successful build ``executing`` is empty and ``executed`` holds every
    planned node.
    """

    entry_nodes: list[str]
    order: list[str]
    dependencies: dict[str, list[str]]
    skipped_edges: list[tuple[str, str]] = field(default_factory=list)
    executing: set[str] = field(default_factory=set)
    executed: set[str] = field(default_factory=set)


class PlanBuilder:
    """
    Builds an ExecutionPlan with an explicit worklist.

    Each node is visited after all of its upstream nodes. An upstream node
    that is still on the worklist closes a cycle; that edge is skipped
    instead of recursing into it.
    """

    def build(self, graph: Graph) -> ExecutionPlan:
        """
        Args:
            graph: Graph to plan

        Returns:
            ExecutionPlan over the nodes reachable from an entry node

        Raises:
            GraphError: If no node is free of incoming edges
        """
        topology = graph.topology()
        entries = topology.entry_nodes()
        if not entries:
            raise GraphError("No entry point found in graph")

        reachable = topology.reachable_from(entries)
        plan = ExecutionPlan(entry_nodes=entries, order=[], dependencies={})

        for root in topology.node_ids:
            if root not in reachable or root in plan.executed:
                continue

            plan.executing.add(root)
            plan.dependencies[root] = []
            worklist = [(root, iter(topology.upstream(root)))]

            while worklist:
                node_id, upstream = worklist[-1]
                source = next(upstream, None)

                if source is None:
                    worklist.pop()
                    plan.executing.discard(node_id)
                    plan.executed.add(node_id)
                    plan.order.append(node_id)
                    continue

                if source not in reachable:
                    logger.debug("Ignoring unreachable upstream %s of %s", source, node_id)
                    continue
                if source in plan.executing:
                    logger.warning("Skipping edge %s -> %s: it closes a cycle", source, node_id)
                    plan.skipped_edges.append((source, node_id))
                    continue

                plan.dependencies[node_id].append(source)
                if source in plan.executed:
                    continue

                plan.executing.add(source)
                plan.dependencies[source] = []
                worklist.append((source, iter(topology.upstream(source))))

        return plan


@dataclass
class RunResult:
    """Result of one execution session."""

    session_id: str
    status: SessionStatus
    results: list[NodeExecutionResult]
    final_output: dict[str, Any]
    total_cost: float
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    errors: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        """Check if the session completed (individual nodes may have failed)."""
        return self.status == SessionStatus.COMPLETED

    @property
    def node_outputs(self) -> dict[str, Any]:
        return {r.node_id: r.output for r in self.results if r.success}

    @property
    def nodes_executed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def nodes_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def get(self, node_id: str) -> Optional[NodeExecutionResult]:
        for result in self.results:
            if result.node_id == node_id:
                return result
        return None


class Engine:
    """
    Async execution engine for pipeline graphs.
    """

    def __init__(
        self,
        registry: Optional[ExecutorRegistry] = None,
        settings: Optional[EngineSettings] = None,
        validator: Optional[GraphValidator] = None,
        cache: Optional[ResultCache] = None,
        pricing: Optional[PricingTable] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            registry: Executor registry (default: built-in executors bound to
                backends from settings)
            settings: Engine settings (default: from environment)
            validator: Graph validator gating runs
            cache: Result cache (default: per settings)
            pricing: Model pricing table for cost accounting
            concurrency: Maximum concurrent node executions (default: CPU*2)
        """
        self.settings = settings or get_settings()
        self._owned_backends: Optional[Backends] = None
        if registry is None:
            self._owned_backends = Backends.from_settings(self.settings)
            registry = build_default_registry(self._owned_backends)
        self.registry = registry
        self.validator = validator or GraphValidator(
            self.registry.type_names(include_aliases=True)
        )
        if cache is None and self.settings.cache_enabled:
            cache = ResultCache(ttl_seconds=self.settings.cache_ttl_seconds)
        self.cache = cache
        self.pricing = pricing or PricingTable()

        if concurrency is None:
            concurrency = self.settings.concurrency or (os.cpu_count() or 1) * 2
        self.concurrency = concurrency

        self._planner = PlanBuilder()
        self._breakers: dict[str, CircuitBreaker] = {}

    def validate(self, graph: Graph) -> ValidationResult:
        return self.validator.validate(graph)

    async def run(
        self,
        graph: Graph,
        input_data: Any = None,
        session_id: Optional[str] = None,
        event_subscribers: Optional[list[Callable[[Event], None]]] = None,
        validate: bool = True,
    ) -> RunResult:
        """
        Validate and execute a graph.

        Args:
            graph: Graph to execute
            input_data: Pipeline input handed to entry nodes
            session_id: Session id (default: a new UUID)
            event_subscribers: List of event callback functions
            validate: Gate the run on validation

        Returns:
            RunResult with per-node results and the aggregated output

        Raises:
            ValidationError: If the graph is invalid; ``.result`` is the
                validator's ValidationResult, unchanged
        """
        if validate:
            validation = self.validator.validate(graph)
            if not validation.is_valid:
                raise ValidationError(
                    f"Graph failed validation with {len(validation.errors)} error(s)",
                    result=validation,
                    session_id=session_id,
                )

        run_ctx = self._create_run_context(session_id, event_subscribers)
        return await self._run_session(graph, input_data, run_ctx)

    async def execute_graph(
        self,
        nodes: Iterable[NodeLike],
        edges: Iterable[EdgeLike],
        input_data: Any = None,
        session_id: Optional[str] = None,
        event_subscribers: Optional[list[Callable[[Event], None]]] = None,
    ) -> list[NodeExecutionResult]:
        """
        Execute nodes in dependency order without the validation gate.

        Returns:
            Per-node results in plan order

        Raises:
            GraphError: If the session aborts (e.g. no entry point)
        """
        graph = Graph.from_parts(nodes, edges)
        run_ctx = self._create_run_context(session_id, event_subscribers)
        run_result = await self._run_session(graph, input_data, run_ctx)
        if run_result.error is not None:
            raise run_result.error
        return run_result.results

    def _create_run_context(
        self,
        session_id: Optional[str],
        event_subscribers: Optional[list[Callable[[Event], None]]],
    ) -> RunContext:
        run_ctx = RunContext(
            accountant=CostAccountant(self.pricing, self.settings.chars_per_unit),
        )
        if session_id:
            run_ctx.session_id = session_id
        for subscriber in event_subscribers or []:
            run_ctx.emitter.subscribe(subscriber)
        return run_ctx

    async def _run_session(
        self,
        graph: Graph,
        input_data: Any,
        run_ctx: RunContext,
    ) -> RunResult:
        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()

        plan: Optional[ExecutionPlan] = None
        plan_error: Optional[Exception] = None
        try:
            plan = self._planner.build(graph)
        except GraphError as e:
            plan_error = e

        planned = plan.order if plan else graph.topology().node_ids
        for node_id in planned:
            run_ctx.node_states[node_id] = NodeState.PENDING

        run_ctx.emitter.emit(ExecutionStartedEvent(
            session_id=run_ctx.session_id,
            meta={"total_nodes": len(planned), "node_ids": list(planned)},
        ))
        logger.info("Session %s started with %d nodes", run_ctx.session_id, len(planned))

        results: list[NodeExecutionResult] = []
        error: Optional[Exception] = None
        try:
            if plan_error is not None:
                raise plan_error
            assert plan is not None
            results = await self._execute_plan(graph, plan, input_data, run_ctx)
            status = SessionStatus.COMPLETED
        except Exception as e:
            logger.error("Session %s aborted: %s", run_ctx.session_id, e)
            status = SessionStatus.FAILED
            error = e
            if isinstance(e, PromptDagError) and e.session_id is None:
                e.session_id = run_ctx.session_id

        finished_at = datetime.now(timezone.utc)
        duration_ms = (time.perf_counter() - start) * 1000
        final_output = merge_outputs(r.output for r in results if r.success)
        total_cost = run_ctx.accountant.total_cost

        if status == SessionStatus.COMPLETED:
            run_ctx.emitter.emit(ExecutionCompletedEvent(
                session_id=run_ctx.session_id,
                meta={
                    "execution_time_ms": duration_ms,
                    "total_cost": total_cost,
                    "final_output": final_output,
                    "nodes_executed": sum(1 for r in results if r.success),
                    "nodes_failed": sum(1 for r in results if not r.success),
                },
            ))
            logger.info(
                "Session %s completed in %.1fms (%d node errors)",
                run_ctx.session_id,
                duration_ms,
                len(run_ctx.errors),
            )
        else:
            run_ctx.emitter.emit(ExecutionFailedEvent(
                session_id=run_ctx.session_id,
                meta={"error": str(error), "execution_time_ms": duration_ms},
            ))

        return RunResult(
            session_id=run_ctx.session_id,
            status=status,
            results=results,
            final_output=final_output,
            total_cost=total_cost,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=duration_ms,
            errors=list(run_ctx.errors),
            error=error,
        )

    async def _execute_plan(
        self,
        graph: Graph,
        plan: ExecutionPlan,
        input_data: Any,
        run_ctx: RunContext,
    ) -> list[NodeExecutionResult]:
        """
        Start every node whose dependencies reached a terminal state and
        wait for completions until the plan is exhausted.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        outbound = asyncio.Semaphore(self.settings.max_outbound_calls)

        results: dict[str, NodeExecutionResult] = {}
        pending = list(plan.order)
        running_tasks: dict[str, asyncio.Task] = {}

        try:
            while pending or running_tasks:
                ready_nodes = [
                    node_id for node_id in pending
                    if all(dep in results for dep in plan.dependencies[node_id])
                ]

                for node_id in ready_nodes:
                    pending.remove(node_id)
                    node = graph.get_node(node_id)
                    assert node is not None
                    node_input = self._assemble_node_input(
                        node_id, plan, results, input_data
                    )
                    running_tasks[node_id] = asyncio.create_task(
                        self._execute_node(node, node_input, run_ctx, semaphore, outbound)
                    )

                if not running_tasks:
                    # Nothing running and nothing ready: the plan is inconsistent
                    raise GraphError(
                        f"Unschedulable nodes: {', '.join(pending)}",
                        session_id=run_ctx.session_id,
                    )

                done, _ = await asyncio.wait(
                    running_tasks.values(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    node_id = next(nid for nid, t in running_tasks.items() if t is task)
                    del running_tasks[node_id]
                    results[node_id] = task.result()
        except BaseException:
            for task in running_tasks.values():
                task.cancel()
            raise

        return [results[node_id] for node_id in plan.order]

    def _assemble_node_input(
        self,
        node_id: str,
        plan: ExecutionPlan,
        results: dict[str, NodeExecutionResult],
        input_data: Any,
    ) -> Any:
        """
        Entry nodes receive the pipeline input; every other node receives the
        merged outputs of its successful upstream nodes.
        """
        if node_id in plan.entry_nodes:
            return input_data
        return merge_outputs(
            results[dep].output
            for dep in plan.dependencies[node_id]
            if results[dep].success
        )

    async def _execute_node(
        self,
        node: Node,
        node_input: Any,
        run_ctx: RunContext,
        semaphore: asyncio.Semaphore,
        outbound: asyncio.Semaphore,
    ) -> NodeExecutionResult:
        async with semaphore:
            return await self._run_node(node, node_input, run_ctx, outbound)

    async def _run_node(
        self,
        node: Node,
        node_input: Any,
        run_ctx: RunContext,
        outbound: asyncio.Semaphore,
    ) -> NodeExecutionResult:
        """
        Execute a single node with cache, circuit breaker, retry and timeout.

        Returns:
            NodeExecutionResult; node failures are returned, not raised
        """
        start = time.perf_counter()
        run_ctx.node_states[node.id] = NodeState.RUNNING
        run_ctx.emitter.emit(NodeExecutionStartedEvent(
            session_id=run_ctx.session_id,
            node_id=node.id,
            meta={"node_type": node.type},
        ))

        def elapsed() -> float:
            return (time.perf_counter() - start) * 1000

        try:
            executor = self.registry.get(node.type)
        except UnknownNodeTypeError as e:
            return self._fail(node, run_ctx, e.message, elapsed())

        if self.cache is not None and executor.cacheable:
            cached = self.cache.get(node, node_input)
            if cached is not None:
                return self._complete(node, run_ctx, cached, elapsed(), cached=True)

        breaker = self._breaker_for(executor) if executor.outbound else None
        if breaker is not None and not breaker.allow_request():
            return self._fail(node, run_ctx, CIRCUIT_OPEN_MESSAGE, elapsed())

        try:
            retry_count, timeout = self._execution_policy(node)
        except ConfigurationError as e:
            return self._fail(node, run_ctx, e.message, elapsed())
        limiter = outbound if executor.outbound else None

        attempt = 0
        while True:
            context = run_ctx.create_executor_context(
                node.id,
                node_input,
                on_status_update=self._on_status_update,
                on_tokens=self._token_callback(run_ctx),
            )
            result = await self._invoke(executor, node, context, timeout, limiter)

            if result.success or not result.retryable or attempt >= retry_count:
                break
            logger.warning(
                "Node %s failed on attempt %d/%d: %s",
                node.id,
                attempt + 1,
                retry_count + 1,
                result.error,
            )
            await self._backoff(attempt)
            attempt += 1

        if breaker is not None:
            if result.success:
                breaker.record_success()
            elif result.retryable:
                breaker.record_failure()

        if not result.success:
            return self._fail(
                node, run_ctx, result.error or "Node execution failed", elapsed(), attempt + 1
            )

        cost = 0.0
        if result.usage is not None:
            cost = run_ctx.accountant.record(node.id, result.usage).cost
        if self.cache is not None and executor.cacheable:
            self.cache.set(node, node_input, result.data)
        return self._complete(node, run_ctx, result.data, elapsed(), cost=cost, attempts=attempt + 1)

    async def _invoke(
        self,
        executor: BaseExecutor,
        node: Node,
        context: ExecutorContext,
        timeout: Optional[float],
        limiter: Optional[asyncio.Semaphore],
    ) -> ExecutorResult:
        async def call() -> ExecutorResult:
            if limiter is None:
                return await executor.execute(node, context)
            async with limiter:
                return await executor.execute(node, context)

        if not timeout:
            return await call()
        try:
            return await asyncio.wait_for(call(), timeout=float(timeout))
        except asyncio.TimeoutError:
            error = TimeoutError(
                f"Node execution timed out after {timeout}s",
                session_id=context.session_id,
                node_id=node.id,
            )
            return ExecutorResult(success=False, error=error.message)

    def _complete(
        self,
        node: Node,
        run_ctx: RunContext,
        data: Any,
        duration_ms: float,
        cached: bool = False,
        cost: float = 0.0,
        attempts: int = 1,
    ) -> NodeExecutionResult:
        run_ctx.node_states[node.id] = NodeState.CACHED if cached else NodeState.COMPLETED
        run_ctx.accountant.record_latency(node.id, duration_ms)
        run_ctx.emitter.emit(NodeExecutionCompletedEvent(
            session_id=run_ctx.session_id,
            node_id=node.id,
            meta={
                "result": data,
                "execution_time_ms": duration_ms,
                "cached": cached,
                "cost": cost,
                "total_cost": run_ctx.accountant.total_cost,
            },
        ))
        return NodeExecutionResult(
            node_id=node.id,
            status=ResultStatus.SUCCESS,
            output=data,
            execution_time_ms=duration_ms,
            cached=cached,
            cost=cost,
            attempts=attempts,
        )

    def _fail(
        self,
        node: Node,
        run_ctx: RunContext,
        error: str,
        duration_ms: float,
        attempts: int = 1,
    ) -> NodeExecutionResult:
        run_ctx.node_states[node.id] = NodeState.FAILED
        run_ctx.record_error(node.id, error)
        run_ctx.accountant.record_latency(node.id, duration_ms)
        run_ctx.emitter.emit(NodeExecutionFailedEvent(
            session_id=run_ctx.session_id,
            node_id=node.id,
            meta={
                "error": error,
                "execution_time_ms": duration_ms,
                "attempts": attempts,
            },
        ))
        logger.info("Node %s failed: %s", node.id, error)
        return NodeExecutionResult(
            node_id=node.id,
            status=ResultStatus.ERROR,
            error=error,
            execution_time_ms=duration_ms,
            attempts=attempts,
        )

    def _on_status_update(self, node_id: str, status: ExecutorStatus, data: Any = None) -> None:
        logger.debug("Node %s reported %s", node_id, status.value)

    def _token_callback(self, run_ctx: RunContext) -> Callable[[str, str], None]:
        def on_tokens(node_id: str, tokens: str) -> None:
            run_ctx.emitter.emit(TokenStreamEvent(
                session_id=run_ctx.session_id,
                node_id=node_id,
                meta={"tokens": tokens},
            ))

        return on_tokens

    def _execution_policy(self, node: Node) -> tuple[int, Optional[float]]:
        """
        Resolve a node's retry count and timeout, falling back to settings.

        Raises:
            ConfigurationError: If either value is not numeric
        """
        config = node.config
        retry_count = config.get("retryCount", self.settings.retry_count)
        timeout = config.get("timeoutSeconds", self.settings.node_timeout_seconds)
        try:
            retry_count = max(0, int(retry_count))
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid retryCount {retry_count!r}: expected a whole number",
                node_id=node.id,
            ) from None
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid timeoutSeconds {timeout!r}: expected a number of seconds",
                    node_id=node.id,
                ) from None
        return retry_count, timeout

    def _breaker_for(self, executor: BaseExecutor) -> CircuitBreaker:
        breaker = self._breakers.get(executor.node_type)
        if breaker is None:
            breaker = CircuitBreaker(
                name=executor.node_type,
                threshold=self.settings.circuit_breaker_threshold,
                reset_timeout=self.settings.circuit_breaker_reset_seconds,
            )
            self._breakers[executor.node_type] = breaker
        return breaker

    def circuit_breaker(self, node_type: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(self.registry.resolve_type(node_type))

    async def aclose(self) -> None:
        """Close backends the engine created itself."""
        if self._owned_backends is not None:
            await self._owned_backends.aclose()

    async def _backoff(self, attempt: int) -> None:
        """
        Backoff before retry with jitter.

        Args:
            attempt: Current attempt number (0-indexed)
        """
        await asyncio.sleep(backoff_delay(attempt, self.settings.retry_base_delay_seconds))
