"""Tests for farmflow.error_coordination.circuit_breaker module."""
import pytest

from farmflow.error_coordination.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from farmflow.error_coordination.errors import CircuitOpenError, FailureKind


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "market-prices", CircuitBreakerConfig(failure_threshold=5, open_duration=60.0), clock=clock
    )


def fail_times(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        breaker.before_call()
        breaker.record_failure()


class TestCircuitBreakerConfig:
    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)

    def test_invalid_duration(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(open_duration=-1)


class TestCircuitBreaker:
    def test_starts_closed(self, breaker):
        assert breaker.state is CircuitState.CLOSED
        assert breaker.before_call() is False
        assert breaker.is_available()

    def test_opens_at_threshold_and_fails_fast(self, breaker, clock):
        fail_times(breaker, 5)

        assert breaker.state is CircuitState.OPEN
        clock.advance(30)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()

        error = exc_info.value
        assert error.kind is FailureKind.CIRCUIT_OPEN
        assert error.dependency == "market-prices"
        assert error.failure_count == 5
        assert error.retry_after == pytest.approx(30.0)

    def test_success_resets_consecutive_count(self, breaker):
        fail_times(breaker, 4)
        breaker.before_call()
        breaker.record_success()
        fail_times(breaker, 4)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 4

    def test_exactly_one_probe_after_open_duration(self, breaker, clock):
        fail_times(breaker, 5)
        clock.advance(60)

        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.before_call() is True
        assert not breaker.is_available()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_successful_probe_closes(self, breaker, clock):
        fail_times(breaker, 5)
        clock.advance(60)
        breaker.record_success(breaker.before_call())

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.before_call() is False

    def test_failed_probe_reopens_for_full_duration(self, breaker, clock):
        fail_times(breaker, 5)
        clock.advance(60)
        breaker.record_failure(breaker.before_call())

        assert breaker.state is CircuitState.OPEN
        clock.advance(59)
        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        clock.advance(1)
        assert breaker.before_call() is True

    def test_late_success_does_not_close_open_circuit(self, clock):
        breaker = CircuitBreaker(
            "weather", CircuitBreakerConfig(failure_threshold=2, open_duration=60.0), clock=clock
        )
        admitted = [breaker.before_call() for _ in range(3)]
        breaker.record_failure(admitted[0])
        breaker.record_failure(admitted[1])
        assert breaker.state is CircuitState.OPEN

        breaker.record_success(admitted[2])
        clock.advance(1)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_late_results_do_not_settle_half_open_state(self, clock):
        breaker = CircuitBreaker(
            "weather", CircuitBreakerConfig(failure_threshold=2, open_duration=60.0), clock=clock
        )
        admitted = [breaker.before_call() for _ in range(4)]
        breaker.record_failure(admitted[0])
        breaker.record_failure(admitted[1])
        clock.advance(60)
        probe = breaker.before_call()
        assert probe is True

        breaker.record_failure(admitted[2])
        breaker.record_success(admitted[3])

        snapshot = breaker.snapshot()
        assert snapshot["state"] == "half_open"
        assert snapshot["probe_in_flight"] is True
        assert snapshot["failure_count"] == 2

        breaker.record_success(probe)
        assert breaker.state is CircuitState.CLOSED

    def test_release_frees_probe_slot(self, breaker, clock):
        fail_times(breaker, 5)
        clock.advance(60)
        was_probe = breaker.before_call()
        breaker.release(was_probe)

        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.before_call() is True

    def test_release_of_ordinary_call_is_noop(self, breaker):
        breaker.release(breaker.before_call())
        assert breaker.state is CircuitState.CLOSED

    def test_force_open_and_reset(self, breaker):
        breaker.force_open()
        assert not breaker.is_available()

        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.is_available()

    def test_snapshot(self, breaker):
        fail_times(breaker, 2)
        snapshot = breaker.snapshot()

        assert snapshot["dependency"] == "market-prices"
        assert snapshot["state"] == "closed"
        assert snapshot["failure_count"] == 2
        assert snapshot["failure_threshold"] == 5


class TestCircuitBreakerRegistry:
    def test_one_breaker_per_dependency(self):
        registry = CircuitBreakerRegistry()

        assert registry.get("weather") is registry.get("weather")
        assert registry.get("weather") is not registry.get("speech-to-text")

    def test_per_dependency_overrides(self):
        registry = CircuitBreakerRegistry(
            default_config=CircuitBreakerConfig(failure_threshold=5),
            overrides={"weather": CircuitBreakerConfig(failure_threshold=2)},
        )
        registry.configure("vision", CircuitBreakerConfig(failure_threshold=3))

        assert registry.get("weather").config.failure_threshold == 2
        assert registry.get("vision").config.failure_threshold == 3
        assert registry.get("market-prices").config.failure_threshold == 5

    def test_snapshot_lists_created_breakers(self):
        registry = CircuitBreakerRegistry()
        registry.get("weather").force_open()

        assert registry.snapshot()["weather"]["state"] == "open"
