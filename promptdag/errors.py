"""
Exception hierarchy for the promptdag engine.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from promptdag.validation import ValidationResult


class PromptDagError(Exception):
    """Base exception for all promptdag errors."""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        node_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.node_id = node_id
        self.metadata = metadata or {}
        self.timestamp = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        parts = [f"message={self.message!r}"]
        if self.session_id:
            parts.append(f"session_id={self.session_id!r}")
        if self.node_id:
            parts.append(f"node_id={self.node_id!r}")
        return f"{self.__class__.__name__}({', '.join(parts)})"


class GraphError(PromptDagError):
    """Raised when graph structure prevents a run from starting."""

    pass


class ValidationError(PromptDagError):
    """
    Raised when a graph fails validation.

    The ``result`` attribute holds the ValidationResult exactly as the
    validator produced it.
    """

    def __init__(
        self,
        message: str,
        result: Optional["ValidationResult"] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.result = result


class ConfigurationError(PromptDagError):
    """Raised when a node references a missing or misconfigured backend."""

    pass


class UnknownNodeTypeError(ConfigurationError):
    """Raised when no executor is registered for a node type."""

    pass


class ExecutionError(PromptDagError):
    """Raised when node execution fails."""

    pass


class BackendError(ExecutionError):
    """Raised when an external backend call fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class TimeoutError(PromptDagError):
    """Raised when a node execution exceeds its timeout."""

    pass


class SessionError(PromptDagError):
    """Raised when a session cannot be started or is aborted."""

    pass
