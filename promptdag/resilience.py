"""
Failure containment for outbound node types.
"""

import logging
import random
import threading
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

CIRCUIT_OPEN_MESSAGE = "Circuit breaker is OPEN - service unavailable"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing service until it has had time to recover.

    After ``threshold`` consecutive failures the breaker opens and rejects
    requests. Once ``reset_timeout`` seconds have passed it lets one trial
    request through (half-open); success closes it, failure re-opens it.
    """

    def __init__(
        self,
        name: str = "",
        threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and self._clock() - self._opened_at >= self.reset_timeout
            ):
                self._state = CircuitState.HALF_OPEN
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker %r opened after %d failures",
                        self.name,
                        self._failures,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


def backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 30.0) -> float:
    """
    Exponential backoff with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Delay before the first retry

    Returns:
        Seconds to wait, at most ``max_delay``
    """
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0, base_delay)
    return min(max_delay, delay + jitter)
