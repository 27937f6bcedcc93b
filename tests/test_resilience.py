"""Tests for circuit breaking and backoff."""

import pytest

from promptdag.resilience import CircuitBreaker, CircuitState, backoff_delay


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCircuitBreaker:
    """Test CircuitBreaker transitions."""

    def test_opens_at_threshold(self) -> None:
        breaker = CircuitBreaker("llm", threshold=3)

        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_success_resets_count(self) -> None:
        breaker = CircuitBreaker(threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_half_open_after_timeout(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, reset_timeout=60, clock=clock)
        breaker.record_failure()

        clock.now = 59.9
        assert breaker.state == CircuitState.OPEN

        clock.now = 60.0
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

    def test_half_open_trial_outcome(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=5, reset_timeout=10, clock=clock)
        for _ in range(5):
            breaker.record_failure()
        clock.now = 10
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        clock.now = 20
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestBackoff:
    @pytest.mark.parametrize("attempt", [0, 1, 2, 3])
    def test_exponential_with_jitter(self, attempt: int) -> None:
        delay = backoff_delay(attempt, base_delay=0.5)

        assert 0.5 * 2 ** attempt <= delay <= 0.5 * 2 ** attempt + 0.5

    def test_capped(self) -> None:
        assert backoff_delay(20, base_delay=1.0, max_delay=30.0) == 30.0
