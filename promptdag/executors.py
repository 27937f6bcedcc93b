"""
Executors: one strategy per node type behind a uniform contract.

Every executor reports ``running`` before it starts work, then ``success``
or ``error``, and converts all failures into an ``ExecutorResult`` instead
of raising.
"""

import html
import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pydantic import create_model

from promptdag.accounting import UsageReport
from promptdag.backends import Backends, GenerationRequest, RetrievalRequest
from promptdag.context import ExecutorContext
from promptdag.errors import ConfigurationError, ExecutionError
from promptdag.types import ExecutorResult, ExecutorStatus, FieldPath, Node, NodeType


# Upstream fields in the order output formatting prefers them
PAYLOAD_PRECEDENCE = ("processedData", "llmResponse", "results", "data")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at",
    "to", "for", "of", "with", "by",
})

DEFAULT_MODEL = "gpt-4.1-mini-2025-04-14"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TOP_K = 5
DEFAULT_MAX_HISTORY = 10
DEFAULT_SUMMARY_WORDS = 100

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][\w.]*)\}")
_ENVELOPE_FIELDS = ("type", "nodeId", "timestamp")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _envelope(node: Node, **fields: Any) -> dict[str, Any]:
    return {
        "type": node.canonical_type,
        "nodeId": node.id,
        "timestamp": _timestamp(),
        **fields,
    }


def _passthrough(input_data: Any) -> dict[str, Any]:
    """Upstream fields carried through side-channel nodes."""
    if not isinstance(input_data, Mapping):
        return {} if input_data is None else {"data": input_data}
    return {k: v for k, v in input_data.items() if k not in _ENVELOPE_FIELDS}


def select_payload(data: Any) -> Any:
    """
    Pick the most relevant upstream value.

    Precedence: processedData > llmResponse > results > data > raw payload.
    """
    if isinstance(data, Mapping):
        for key in PAYLOAD_PRECEDENCE:
            if data.get(key) is not None:
                return data[key]
    return data


def extract_text(data: Any) -> str:
    """Text form of the most relevant upstream value."""
    value = select_payload(data)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, Mapping) and ("content" in item or "text" in item):
                parts.append(str(item.get("content", item.get("text"))))
            else:
                parts.append(item if isinstance(item, str) else json.dumps(item, default=str))
        return "\n\n".join(parts)
    if isinstance(value, Mapping):
        return json.dumps(value, default=str)
    return str(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str)


def format_output(value: Any, output_format: str) -> str:
    """
    Render a value in a presentation format.

    Args:
        value: Selected upstream payload
        output_format: text, json, markdown or html

    Returns:
        Rendered string; unknown formats fall back to ``str``
    """
    if output_format == "text":
        return _as_text(value)

    if output_format == "json":
        return json.dumps(value, indent=2, default=str)

    if output_format == "markdown":
        lines = ["# Pipeline Output", ""]
        if isinstance(value, list):
            for index, item in enumerate(value, start=1):
                lines.extend([f"## Result {index}", "", extract_text(item) or _as_text(item), ""])
        else:
            lines.append(_as_text(value))
        return "\n".join(lines).rstrip() + "\n"

    if output_format == "html":
        body = []
        if isinstance(value, list):
            for index, item in enumerate(value, start=1):
                text = extract_text(item) or _as_text(item)
                body.append(
                    f'<div class="result"><h2>Result {index}</h2>'
                    f"<p>{html.escape(text)}</p></div>"
                )
        elif isinstance(value, (Mapping, list)):
            body.append(f"<pre>{html.escape(_as_text(value))}</pre>")
        else:
            body.append(f"<p>{html.escape(_as_text(value))}</p>")
        return (
            '<div class="pipeline-output"><h1>Pipeline Output</h1>'
            + "".join(body)
            + "</div>"
        )

    return str(value)


def _require(config: Mapping[str, Any], key: str, message: str) -> Any:
    value = config.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(message)
    return value


class BaseExecutor:
    """
    Base class for node executors.

    Subclasses implement ``run``; ``execute`` wraps it with status reporting,
    timing and failure conversion.
    """

    node_type: str = ""
    category: str = "General"
    description: str = ""
    config_schema: dict[str, Any] = {}
    cacheable: bool = True
    outbound: bool = False

    def __init__(self, backends: Optional[Backends] = None) -> None:
        self.backends = backends or Backends()

    async def execute(self, node: Node, context: ExecutorContext) -> ExecutorResult:
        """
        Run the node and return a uniform result.

        Never raises for node-level failures: configuration problems yield a
        non-retryable failed result, anything else a retryable one.

        Args:
            node: Node to execute
            context: Executor context carrying input and callbacks

        Returns:
            ExecutorResult with timing filled in
        """
        context.report(ExecutorStatus.RUNNING)
        start = time.perf_counter()

        try:
            outcome = await self.run(node, context)
        except ConfigurationError as e:
            context.logger.warning("Configuration error: %s", e.message)
            result = ExecutorResult(success=False, error=e.message, retryable=False)
        except Exception as e:
            context.logger.warning("Execution failed: %s", e)
            result = ExecutorResult(success=False, error=str(e) or type(e).__name__)
        else:
            if isinstance(outcome, ExecutorResult):
                result = outcome
            else:
                result = ExecutorResult(success=True, data=outcome)

        result.execution_time_ms = (time.perf_counter() - start) * 1000

        if result.success:
            context.report(ExecutorStatus.SUCCESS, result.data)
        else:
            context.report(ExecutorStatus.ERROR, result.error)
        return result

    async def run(
        self,
        node: Node,
        context: ExecutorContext,
    ) -> Union[ExecutorResult, dict[str, Any]]:
        raise NotImplementedError


class InputExecutor(BaseExecutor):
    """Yields the configured seed data verbatim."""

    node_type = NodeType.INPUT.value
    category = "Input"
    description = "Seeds the pipeline with test data or the run input"
    config_schema = {"testData": {"type": "any", "required": False}}

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        seed = config.get("testData")
        if seed is None or seed == "":
            seed = context.input_data

        if isinstance(seed, Mapping):
            return {**seed, **_envelope(node, data=seed)}
        return _envelope(node, input=seed, data=seed)


class PromptTemplateExecutor(BaseExecutor):
    """
    Literal ``{variable}`` substitution against upstream fields.

    Dotted variables such as ``{user.name}`` walk nested values. Variables
    with no matching field are left in place.
    """

    node_type = NodeType.PROMPT_TEMPLATE.value
    category = "Prompt"
    description = "Renders a prompt from a template and upstream fields"
    config_schema = {
        "template": {"type": "string", "required": True},
        "variables": {"type": "object", "required": False},
    }

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        template = _require(config, "template", "Prompt template is required")

        variables: dict[str, Any] = {}
        defaults = config.get("variables")
        if isinstance(defaults, Mapping):
            variables.update(defaults)
        if isinstance(context.input_data, Mapping):
            variables.update(context.input_data)
        if "input" not in variables and context.input_data is not None:
            variables["input"] = extract_text(context.input_data)

        resolved: list[str] = []
        unresolved: list[str] = []

        def substitute(match: "re.Match[str]") -> str:
            name = match.group(1)
            try:
                value = FieldPath.parse(name).resolve(variables)
            except (KeyError, TypeError):
                unresolved.append(name)
                return match.group(0)
            resolved.append(name)
            return _as_text(value)

        prompt = _PLACEHOLDER_RE.sub(substitute, str(template))
        if unresolved:
            context.logger.debug("Unresolved template variables: %s", unresolved)

        return _envelope(
            node,
            prompt=prompt,
            data=prompt,
            variables=resolved,
            unresolved=unresolved,
        )


class LLMExecutor(BaseExecutor):
    """Invokes the text generation backend and streams its output."""

    node_type = NodeType.LLM.value
    category = "Model"
    description = "Generates text from the upstream prompt"
    outbound = True
    config_schema = {
        "integrationId": {"type": "string", "required": True},
        "model": {"type": "string", "default": DEFAULT_MODEL},
        "provider": {"type": "string", "required": False},
        "temperature": {"type": "number", "default": DEFAULT_TEMPERATURE},
        "maxTokens": {"type": "integer", "default": DEFAULT_MAX_TOKENS},
        "systemPrompt": {"type": "string", "required": False},
    }

    async def run(self, node: Node, context: ExecutorContext) -> ExecutorResult:
        config = node.config
        integration_id = _require(
            config,
            "integrationId",
            "LLM integration not configured. Please select an integration in node settings.",
        )
        backend = self.backends.text_generation
        if backend is None:
            raise ConfigurationError("Text generation backend not configured")

        input_data = context.input_data
        if isinstance(input_data, Mapping) and isinstance(input_data.get("prompt"), str):
            prompt = input_data["prompt"]
        else:
            prompt = extract_text(input_data)

        request = GenerationRequest(
            prompt=prompt,
            model=config.get("model") or DEFAULT_MODEL,
            temperature=float(config.get("temperature", DEFAULT_TEMPERATURE)),
            max_tokens=int(config.get("maxTokens", DEFAULT_MAX_TOKENS)),
            provider=config.get("provider"),
            integration_id=str(integration_id),
            system_prompt=config.get("systemPrompt"),
        )
        response = await backend.generate(request, on_token=context.stream_tokens)

        tokens_used = None
        if response.input_units is not None and response.output_units is not None:
            tokens_used = response.input_units + response.output_units

        return ExecutorResult(
            success=True,
            data=_envelope(
                node,
                llmResponse=response.text,
                model=response.model,
                provider=response.provider,
                tokensUsed=tokens_used,
            ),
            usage=UsageReport(
                model=response.model,
                input_units=response.input_units,
                output_units=response.output_units,
                input_text=prompt,
                output_text=response.text,
            ),
        )


class RAGRetrieverExecutor(BaseExecutor):
    """Queries the retrieval backend for documents relevant to the input."""

    node_type = NodeType.RAG_RETRIEVER.value
    category = "Retrieval"
    description = "Retrieves ranked documents from a vector store"
    outbound = True
    config_schema = {
        "integrationId": {"type": "string", "required": True},
        "vectorStore": {"type": "string", "required": False},
        "queryTemplate": {"type": "string", "default": "{query}"},
        "topK": {"type": "integer", "default": DEFAULT_TOP_K},
    }

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        integration_id = _require(
            config,
            "integrationId",
            "RAG integration not configured. Please select an integration in node settings.",
        )
        backend = self.backends.retrieval
        if backend is None:
            raise ConfigurationError("Retrieval backend not configured")

        input_data = context.input_data
        query = None
        if isinstance(input_data, Mapping):
            for key in ("query", "prompt"):
                if isinstance(input_data.get(key), str):
                    query = input_data[key]
                    break
        if query is None:
            query = extract_text(input_data)

        query_template = config.get("queryTemplate") or "{query}"
        query = str(query_template).replace("{query}", query)
        top_k = int(config.get("topK") or DEFAULT_TOP_K)

        documents = await backend.search(RetrievalRequest(
            query=query,
            top_k=top_k,
            integration_id=str(integration_id),
            vector_store=config.get("vectorStore"),
            filters=dict(config.get("filters") or {}),
        ))
        context.logger.debug("Retrieved %d documents", len(documents))

        return _envelope(
            node,
            query=query,
            results=[doc.to_dict() for doc in documents],
            documentCount=len(documents),
            vectorStore=config.get("vectorStore"),
            topK=top_k,
        )


class MemoryStoreExecutor(BaseExecutor):
    """
    Reads or writes pipeline memory in the key-value store.

    Upstream fields pass through so the node can sit inline.
    """

    node_type = NodeType.MEMORY_STORE.value
    category = "Memory"
    description = "Stores, appends, retrieves or clears a memory entry"
    cacheable = False
    config_schema = {
        "operation": {"type": "string", "enum": ["store", "retrieve", "append", "clear"]},
        "key": {"type": "string", "required": False},
        "ttl": {"type": "number", "required": False},
        "storeType": {"type": "string", "default": "memory"},
    }

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        operation = str(_require(config, "operation", "Memory node requires operation type"))
        key = config.get("key") or f"memory:{node.id}"
        ttl = config.get("ttl")
        store = self.backends.store

        previous = await store.get(key)
        value: Any = select_payload(context.input_data)
        stored = False

        if operation == "store":
            await store.set(key, value, ttl=ttl)
            stored = True
        elif operation == "append":
            history = list(previous) if isinstance(previous, list) else (
                [] if previous is None else [previous]
            )
            history.append(value)
            await store.set(key, history, ttl=ttl)
            value = history
            stored = True
        elif operation == "retrieve":
            value = previous
        elif operation == "clear":
            await store.delete(key)
            value = None
        else:
            raise ConfigurationError(f"Unsupported memory operation '{operation}'")

        return {
            **_passthrough(context.input_data),
            **_envelope(
                node,
                operation=operation,
                key=key,
                stored=stored,
                value=value,
                previousContext=previous,
                storeType=config.get("storeType", "memory"),
            ),
        }


class StateTrackerExecutor(BaseExecutor):
    """Keeps a bounded history of the states flowing through it."""

    node_type = NodeType.STATE_TRACKER.value
    category = "Memory"
    description = "Tracks conversation or session state across runs"
    cacheable = False
    config_schema = {
        "trackingType": {
            "type": "string",
            "enum": ["conversation", "user_session", "context_window", "custom"],
            "default": "conversation",
        },
        "maxHistory": {"type": "integer", "default": DEFAULT_MAX_HISTORY},
    }

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        tracking_type = config.get("trackingType") or "conversation"
        max_history = max(1, int(config.get("maxHistory") or DEFAULT_MAX_HISTORY))
        key = config.get("key") or f"state:{tracking_type}:{node.id}"
        store = self.backends.store

        current = select_payload(context.input_data)
        history = await store.get(key)
        history = list(history) if isinstance(history, list) else []
        history.append({"state": current, "timestamp": _timestamp()})
        history = history[-max_history:]
        await store.set(key, history)

        return {
            **_passthrough(context.input_data),
            **_envelope(
                node,
                currentState=current,
                history=history,
                historyLength=len(history),
                trackingType=tracking_type,
            ),
        }


def _title_case(text: str) -> str:
    return re.sub(r"\w\S*", lambda m: m.group(0)[0].upper() + m.group(0)[1:].lower(), text)


class ProcessorExecutor(BaseExecutor):
    """Applies one deterministic text operation."""

    node_type = NodeType.PROCESSOR.value
    category = "Processing"
    description = "Transforms text (case, keywords, summary, stop words)"
    config_schema = {
        "operation": {
            "type": "string",
            "enum": [
                "lowercase", "uppercase", "extract-keywords", "summarize-truncate",
                "stopword-filter", "validate", "title-case",
            ],
            "default": "title-case",
        },
        "maxWords": {"type": "integer", "default": DEFAULT_SUMMARY_WORDS},
    }

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        operation = str(config.get("operation") or "title-case")
        text = extract_text(context.input_data)
        words = text.split()

        processed: Any
        if operation == "lowercase":
            processed = text.lower()
        elif operation == "uppercase":
            processed = text.upper()
        elif operation in ("extract", "extract-keywords"):
            keywords = [w for w in words if len(w) > 3 and not w.isdigit()]
            processed = {
                "keywords": keywords[:10],
                "wordCount": len(words),
                "characterCount": len(text),
            }
        elif operation in ("summarize", "summarize-truncate"):
            max_words = int(config.get("maxWords") or DEFAULT_SUMMARY_WORDS)
            processed = " ".join(words[:max_words]) + "..." if len(words) > max_words else text
        elif operation in ("filter", "stopword-filter"):
            processed = " ".join(
                w for w in words if w.lower() not in STOP_WORDS and len(w) > 2
            )
        elif operation == "validate":
            processed = {
                "isValid": bool(text.strip()),
                "length": len(text),
                "wordCount": len(words),
            }
        else:
            processed = _title_case(text)

        return _envelope(
            node,
            operation=operation,
            processedData=processed,
            originalLength=len(text),
        )


_SCHEMA_TYPES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def build_schema_model(schema: Mapping[str, Any]) -> Any:
    """
    Build a pydantic model from a parser schema.

    Accepts a JSON-schema style mapping (``properties``/``required``) or a
    flat ``{"field": "type"}`` mapping where every field is required.
    """
    if isinstance(schema.get("properties"), Mapping):
        properties = schema["properties"]
        required = set(schema.get("required") or [])
    else:
        properties = {name: {"type": definition} if isinstance(definition, str) else definition
                      for name, definition in schema.items()}
        required = set(properties)

    fields: dict[str, Any] = {}
    for name, definition in properties.items():
        field_type = _SCHEMA_TYPES.get(str((definition or {}).get("type", "")), Any)
        if name in required:
            fields[name] = (field_type, ...)
        else:
            fields[name] = (Optional[field_type], None)
    return create_model("StructuredOutput", **fields)


class OutputParserExecutor(BaseExecutor):
    """
    Parses the most relevant upstream payload and renders it.

    ``parserType`` json parses JSON text, structured validates against the
    configured schema, anything else passes the payload through.
    """

    node_type = NodeType.OUTPUT_PARSER.value
    category = "Output"
    description = "Parses and formats the pipeline result"
    config_schema = {
        "parserType": {"type": "string", "enum": ["json", "structured", "text"]},
        "format": {"type": "string", "enum": ["text", "json", "markdown", "html"], "default": "text"},
        "schema": {"type": "object", "required": False},
    }

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        config = node.config
        selected = select_payload(context.input_data)
        parser_type = config.get("parserType")

        parsed: Any = selected
        if parser_type == "json" and isinstance(selected, str):
            try:
                parsed = json.loads(selected)
            except json.JSONDecodeError as e:
                raise ExecutionError(f"Parsing failed: {e}") from e
        elif parser_type == "structured":
            schema = config.get("schema")
            if not isinstance(schema, Mapping) or not schema:
                raise ConfigurationError("Structured parser requires schema definition")
            try:
                raw = json.loads(selected) if isinstance(selected, str) else selected
                parsed = build_schema_model(schema).model_validate(raw).model_dump()
            except (json.JSONDecodeError, PydanticValidationError) as e:
                raise ExecutionError(f"Parsing failed: {e}") from e

        output_format = str(config.get("format") or config.get("outputFormat") or "text")
        formatted = format_output(parsed, output_format)

        return _envelope(
            node,
            format=output_format,
            formattedOutput=formatted,
            parsed=parsed,
            metadata={
                "inputType": type(selected).__name__,
                "outputLength": len(formatted),
                "isArray": isinstance(parsed, list),
            },
        )


class OutputExecutor(OutputParserExecutor):
    """Terminal output node; same behaviour as the output parser."""

    node_type = NodeType.OUTPUT.value
    description = "Formats the final pipeline result"


BUILTIN_EXECUTORS: tuple[type[BaseExecutor], ...] = (
    InputExecutor,
    PromptTemplateExecutor,
    LLMExecutor,
    RAGRetrieverExecutor,
    MemoryStoreExecutor,
    StateTrackerExecutor,
    ProcessorExecutor,
    OutputParserExecutor,
    OutputExecutor,
)
