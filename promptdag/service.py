"""
Command surface: validate, run and discover node types.

A transport collaborator feeds inbound run commands to ``handle_command``
and forwards subscribed events to its observers.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from promptdag.config import EngineSettings
from promptdag.engine import Engine, RunResult
from promptdag.errors import SessionError, ValidationError
from promptdag.events import Event, EventCallback, EventEmitter, EventKind, ExecutionErrorEvent
from promptdag.graph import Graph
from promptdag.session import ExecutionSession, SessionReducer
from promptdag.validation import ValidationResult

logger = logging.getLogger(__name__)

GraphSource = Union[Graph, Mapping[str, Any]]
GraphLoader = Callable[[str], Optional[GraphSource]]

DEFAULT_RETAINED_SESSIONS = 256


class RunCommand(BaseModel):
    """Inbound "run this graph with this input" message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    graph: Optional[dict[str, Any]] = None
    input_data: Any = Field(
        default=None, validation_alias=AliasChoices("inputData", "input_data")
    )
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("sessionId", "session_id")
    )
    pipeline_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("pipelineId", "blueprintId", "pipeline_id"),
    )
    enable_streaming: bool = Field(
        default=True,
        validation_alias=AliasChoices("enableStreaming", "enable_streaming"),
    )


def _coerce_graph(graph: GraphSource) -> Graph:
    if isinstance(graph, Graph):
        return graph
    return Graph.from_definition(graph)


class PipelineService:
    """
    Session-scoped front end over the engine.

    Each logical pipeline has one SessionReducer. Starting a new run for the
    same pipeline supersedes the previous one: the reducer adopts the new
    session id and discards late events of the old session.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        settings: Optional[EngineSettings] = None,
        graph_loader: Optional[GraphLoader] = None,
        retained_sessions: int = DEFAULT_RETAINED_SESSIONS,
    ) -> None:
        """
        Args:
            engine: Engine to run graphs on
            settings: Settings for a default engine
            graph_loader: Resolves a pipeline id to a stored graph
            retained_sessions: Finished sessions kept for ``wait`` before the
                oldest are dropped
        """
        self.engine = engine or Engine(settings=settings)
        self.graph_loader = graph_loader
        self._emitter = EventEmitter()
        self._reducers: dict[str, SessionReducer] = {}
        self.retained_sessions = retained_sessions
        self._tasks: dict[str, asyncio.Task] = {}
        # Reducers keyed by session id, for runs without a pipeline id
        self._anonymous: set[str] = set()

    def subscribe(self, callback: EventCallback) -> None:
        self._emitter.subscribe(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        self._emitter.unsubscribe(callback)

    def validate_graph(self, graph: GraphSource) -> ValidationResult:
        return self.engine.validator.validate(graph)

    def list_node_types(self, category: Optional[str] = None) -> list[dict[str, Any]]:
        return self.engine.registry.list_types(category)

    def session_state(self, pipeline_id: str) -> Optional[ExecutionSession]:
        """Live state of the latest session for a pipeline."""
        reducer = self._reducers.get(pipeline_id)
        return reducer.state if reducer else None

    async def run(
        self,
        graph: GraphSource,
        input_data: Any = None,
        pipeline_id: Optional[str] = None,
        session_id: Optional[str] = None,
        stream_tokens: bool = True,
    ) -> str:
        """
        Validate a graph and start executing it in the background.

        Args:
            graph: Graph value or editor definition
            input_data: Pipeline input
            pipeline_id: Logical pipeline the session belongs to
            session_id: Session id (default: a new UUID)
            stream_tokens: Forward token_stream events to subscribers

        Returns:
            The session id; results arrive as events or through ``wait``

        Raises:
            ValidationError: If the graph is invalid (result attached unchanged)
            SessionError: If the session id is already running
        """
        graph = _coerce_graph(graph)
        validation = self.validate_graph(graph)
        if not validation.is_valid:
            raise ValidationError(
                f"Graph failed validation with {len(validation.errors)} error(s)",
                result=validation,
                session_id=session_id,
            )

        session_id = session_id or str(uuid.uuid4())
        existing = self._tasks.get(session_id)
        if existing is not None and not existing.done():
            raise SessionError(f"Session '{session_id}' is already running", session_id=session_id)

        if pipeline_id is None:
            self._anonymous.add(session_id)
        reducer = self._reducers.setdefault(pipeline_id or session_id, SessionReducer())
        dispatch = self._dispatcher(reducer, stream_tokens)

        task = asyncio.create_task(
            self.engine.run(
                graph,
                input_data,
                session_id=session_id,
                event_subscribers=[dispatch],
                validate=False,
            )
        )
        task.add_done_callback(lambda _: self._prune())
        self._tasks[session_id] = task
        logger.info("Scheduled session %s for pipeline %s", session_id, pipeline_id)
        return session_id

    async def handle_command(self, message: Union[str, bytes, Mapping[str, Any]]) -> str:
        """
        Parse an inbound run command and start the session.

        Malformed commands are reported to subscribers as ``execution_error``
        and raised as SessionError.
        """
        fallback_session = None
        if isinstance(message, Mapping):
            fallback_session = message.get("sessionId") or message.get("session_id")

        try:
            if isinstance(message, (str, bytes)):
                command = RunCommand.model_validate_json(message)
            else:
                command = RunCommand.model_validate(message)
        except PydanticValidationError as e:
            error = f"Invalid run command: {e.error_count()} validation error(s)"
            self._report_error(fallback_session, error)
            raise SessionError(error, session_id=fallback_session) from e

        graph: Optional[GraphSource] = command.graph
        if graph is None and command.pipeline_id and self.graph_loader is not None:
            graph = self.graph_loader(command.pipeline_id)
        if graph is None:
            error = f"No graph available for pipeline '{command.pipeline_id}'"
            self._report_error(command.session_id, error)
            raise SessionError(error, session_id=command.session_id)

        try:
            return await self.run(
                graph,
                command.input_data,
                pipeline_id=command.pipeline_id,
                session_id=command.session_id,
                stream_tokens=command.enable_streaming,
            )
        except (ValidationError, SessionError) as e:
            self._report_error(command.session_id, e.message)
            raise

    async def wait(self, session_id: str) -> RunResult:
        """
        Wait for a session to finish.

        The session is forgotten once its result has been collected, so a
        second ``wait`` for the same id raises.

        Raises:
            SessionError: If the session is unknown
        """
        task = self._tasks.get(session_id)
        if task is None:
            raise SessionError(f"Unknown session '{session_id}'", session_id=session_id)
        try:
            return await task
        finally:
            if self._tasks.get(session_id) is task:
                self._forget(session_id)

    async def aclose(self) -> None:
        """Let in-flight sessions finish, then release the engine's backends."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.engine.aclose()

    def _forget(self, session_id: str) -> None:
        del self._tasks[session_id]
        if session_id in self._anonymous:
            self._anonymous.discard(session_id)
            self._reducers.pop(session_id, None)

    def _prune(self) -> None:
        """Drop the oldest finished sessions beyond the retention limit."""
        finished = [sid for sid, task in self._tasks.items() if task.done()]
        for session_id in finished[: max(0, len(finished) - self.retained_sessions)]:
            self._forget(session_id)

    def _dispatcher(self, reducer: SessionReducer, stream_tokens: bool) -> EventCallback:
        def dispatch(event: Event) -> None:
            reducer.apply(event)
            if event.kind == EventKind.TOKEN_STREAM and not stream_tokens:
                return
            self._emitter.emit(event)

        return dispatch

    def _report_error(self, session_id: Optional[str], error: str) -> None:
        logger.warning("Run command rejected: %s", error)
        self._emitter.emit(ExecutionErrorEvent(
            session_id=session_id or str(uuid.uuid4()),
            meta={"error": error},
        ))
