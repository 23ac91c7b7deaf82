"""Per-dependency circuit breakers shared across workflow instances."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional, Union

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Requests fail fast
    HALF_OPEN = "half_open"  # One probe allowed through


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures before opening the circuit
        open_duration: Seconds the circuit stays open before a probe is allowed
    """

    failure_threshold: int = 5
    open_duration: float = 60.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.open_duration < 0:
            raise ValueError("open_duration must be non-negative")


class CircuitBreaker:
    """Failure tracker for one external dependency.

    The lock only guards state reads and transitions; callers perform the
    dependency call between :meth:`before_call` and one of
    :meth:`record_success`, :meth:`record_failure` or :meth:`release`,
    passing back the flag :meth:`before_call` returned. Results of calls
    admitted before the circuit opened are ignored once it is open.
    """

    def __init__(
        self,
        dependency: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dependency = dependency
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_state_change = clock()
        self._probe_in_flight = False
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds the lock
        if new_state is self._state:
            return
        logger.info(f"Circuit for {self.dependency}: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._last_state_change = self._clock()

    def _maybe_half_open(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._last_state_change >= self.config.open_duration
        ):
            self._transition(CircuitState.HALF_OPEN)
            self._probe_in_flight = False

    def _retry_after(self) -> float:
        if self._state is CircuitState.OPEN:
            return max(0.0, self._last_state_change + self.config.open_duration - self._clock())
        return 0.0

    def before_call(self) -> bool:
        """Admit or reject a call.

        Returns:
            True if the admitted call is the half-open probe

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a probe in flight
        """
        with self._lock:
            self._maybe_half_open()

            if self._state is CircuitState.CLOSED:
                return False

            if self._state is CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                logger.info(f"Circuit for {self.dependency} admitting recovery probe")
                return True

            raise CircuitOpenError(self.dependency, self._failure_count, self._retry_after())

    def _is_stale(self, was_probe: bool) -> bool:
        # Caller holds the lock. While open or half-open only the probe's verdict counts.
        self._maybe_half_open()
        if self._state is CircuitState.CLOSED:
            return False
        return not (was_probe and self._state is CircuitState.HALF_OPEN and self._probe_in_flight)

    def record_success(self, was_probe: bool = False) -> None:
        """The dependency answered; close the circuit and reset the counter.

        Args:
            was_probe: Value returned by the matching :meth:`before_call`
        """
        with self._lock:
            if self._is_stale(was_probe):
                logger.debug(f"Ignoring late success from {self.dependency} while {self._state.value}")
                return
            self._failure_count = 0
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def record_failure(self, was_probe: bool = False) -> None:
        """Count a failure; open the circuit at the threshold or when a probe fails.

        Args:
            was_probe: Value returned by the matching :meth:`before_call`
        """
        with self._lock:
            if self._is_stale(was_probe):
                logger.debug(f"Ignoring late failure from {self.dependency} while {self._state.value}")
                return
            self._failure_count += 1

            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._transition(CircuitState.OPEN)
                logger.warning(f"Recovery probe for {self.dependency} failed; circuit re-opened")
            elif self._failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)
                logger.warning(
                    f"Circuit breaker for {self.dependency} opened after {self._failure_count} failures. "
                    f"Will attempt recovery in {self.config.open_duration}s"
                )

    def release(self, was_probe: bool) -> None:
        """Free the probe slot when a call ends without a verdict (cancelled)."""
        if not was_probe:
            return
        with self._lock:
            self._probe_in_flight = False

    def force_open(self) -> None:
        with self._lock:
            self._probe_in_flight = False
            self._transition(CircuitState.OPEN)
            self._last_state_change = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def is_available(self) -> bool:
        """Whether a call made now would be admitted (without consuming the probe)."""
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.CLOSED:
                return True
            return self._state is CircuitState.HALF_OPEN and not self._probe_in_flight

    def snapshot(self) -> Dict[str, Union[str, int, float, bool]]:
        """Get current circuit breaker state information."""
        with self._lock:
            self._maybe_half_open()
            return {
                "dependency": self.dependency,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.config.failure_threshold,
                "open_duration": self.config.open_duration,
                "last_state_change": self._last_state_change,
                "probe_in_flight": self._probe_in_flight,
                "time_until_probe": self._retry_after(),
            }


class CircuitBreakerRegistry:
    """Owns exactly one breaker per dependency name."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        overrides: Optional[Dict[str, CircuitBreakerConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_config = default_config or CircuitBreakerConfig()
        self._overrides: Dict[str, CircuitBreakerConfig] = dict(overrides or {})
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, dependency: str) -> CircuitBreaker:
        """Return the breaker for a dependency, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(dependency)
            if breaker is None:
                config = self._overrides.get(dependency, self.default_config)
                breaker = CircuitBreaker(dependency, config, clock=self._clock)
                self._breakers[dependency] = breaker
            return breaker

    def configure(self, dependency: str, config: CircuitBreakerConfig) -> None:
        """Set a per-dependency config; applies to breakers created afterwards."""
        with self._lock:
            self._overrides[dependency] = config

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.dependency: breaker.snapshot() for breaker in breakers}
