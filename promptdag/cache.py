"""
Time-bounded cache of node results.
"""

import hashlib
import json
import threading
import time
from typing import Any, Callable, Mapping, Optional

from promptdag.types import Node

# Top-level input fields that change on every run without changing meaning
VOLATILE_FIELDS = frozenset({"timestamp"})


def _strip_volatile(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: v for k, v in value.items() if k not in VOLATILE_FIELDS}
    return value


def cache_key(node: Node, input_data: Any) -> str:
    """SHA-256 over the node's identity, configuration and input."""
    material = {
        "node_id": node.id,
        "type": node.canonical_type,
        "config": node.config,
        "input": _strip_volatile(input_data),
    }
    encoded = json.dumps(material, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class ResultCache:
    """
    Node output cache with a fixed time-to-live.

    Args:
        ttl_seconds: Lifetime of an entry
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, node: Node, input_data: Any) -> Optional[Any]:
        key = cache_key(node, input_data)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, node: Node, input_data: Any, value: Any) -> None:
        key = cache_key(node, input_data)
        with self._lock:
            self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
