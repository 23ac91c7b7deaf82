"""Retry decisions with exponential backoff and additive jitter."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import FailureKind

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial attempt)
        base_delay: Delay in seconds before the second attempt; doubles afterwards
        max_delay: Ceiling on the whole delay, jitter included
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.max_attempts > 10:
            raise ValueError("max_attempts should not exceed 10 for practical purposes")


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of consulting the retry policy after a failed attempt."""

    retry: bool
    delay: float = 0.0
    reason: str = ""


def calculate_delay(attempt: int, base_delay: float, max_delay: float, rng: random.Random) -> float:
    """Calculate the delay before a given attempt.

    Args:
        attempt: Attempt number about to be made (1-based; attempt 1 has no delay)
        base_delay: Base delay in seconds
        max_delay: Ceiling for the returned delay
        rng: Random source for jitter

    Returns:
        ``base * 2 ** (attempt - 2)`` plus jitter drawn from ``[0, base)``, capped at
        ``max_delay`` so delays never decrease from one attempt to the next
    """
    if attempt <= 1:
        return 0.0

    backoff = base_delay * (2 ** (attempt - 2))
    jitter = rng.random() * base_delay if base_delay > 0 else 0.0
    return min(backoff + jitter, max_delay)


class RetryBudget:
    """Limits retries within a sliding window to prevent retry storms.

    One budget is shared by every instance calling the same dependency.
    """

    def __init__(self, max_budget: int = 100, window_seconds: float = 60.0, clock=time.monotonic) -> None:
        """Initialize retry budget manager.

        Args:
            max_budget: Maximum number of retries allowed within the time window
            window_seconds: Time window in seconds for budget tracking
            clock: Monotonic time source
        """
        self.max_budget = max_budget
        self.window_seconds = window_seconds
        self.attempts: List[float] = []
        self._clock = clock
        self._lock = threading.Lock()

    def can_retry(self) -> bool:
        """Consume one retry from the budget if available."""
        with self._lock:
            now = self._clock()
            self.attempts = [t for t in self.attempts if now - t < self.window_seconds]

            if len(self.attempts) < self.max_budget:
                self.attempts.append(now)
                return True
            return False

    def get_budget_status(self) -> Dict[str, Any]:
        """Get current budget status information."""
        with self._lock:
            now = self._clock()
            self.attempts = [t for t in self.attempts if now - t < self.window_seconds]

            return {
                "used_budget": len(self.attempts),
                "max_budget": self.max_budget,
                "remaining_budget": self.max_budget - len(self.attempts),
                "window_seconds": self.window_seconds,
                "budget_available": len(self.attempts) < self.max_budget,
            }


class RetryPolicy:
    """Decides whether and when a failed step attempt is retried.

    Only transient failures are retried. Attempts are capped at
    ``max_attempts`` in total, and the delay before attempt ``n`` is
    ``base * 2 ** (n - 2)`` plus jitter in ``[0, base)``, capped at
    ``max_delay``. The base delay can be overridden per dependency.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        dependency_configs: Optional[Dict[str, RetryConfig]] = None,
        budgets: Optional[Dict[str, RetryBudget]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._dependency_configs: Dict[str, RetryConfig] = dict(dependency_configs or {})
        self._budgets: Dict[str, RetryBudget] = dict(budgets or {})
        self._rng = rng or random.Random()

    def config_for(self, dependency: Optional[str]) -> RetryConfig:
        """Return the retry configuration for a dependency."""
        if dependency and dependency in self._dependency_configs:
            return self._dependency_configs[dependency]
        return self.config

    def set_dependency_config(self, dependency: str, config: RetryConfig) -> None:
        self._dependency_configs[dependency] = config

    def set_budget(self, dependency: str, budget: RetryBudget) -> None:
        self._budgets[dependency] = budget

    def should_retry(
        self, attempt_number: int, failure_kind: FailureKind, dependency: Optional[str] = None
    ) -> RetryDecision:
        """Decide what to do after attempt ``attempt_number`` failed.

        Args:
            attempt_number: The attempt that just failed (1-based)
            failure_kind: Classification of the failure
            dependency: Dependency name, used for per-dependency base delay and budget

        Returns:
            RetryDecision with the delay to wait before the next attempt
        """
        config = self.config_for(dependency)

        if failure_kind is not FailureKind.TRANSIENT:
            return RetryDecision(retry=False, reason=f"{failure_kind.value} failures are not retried")

        if attempt_number >= config.max_attempts:
            logger.debug(f"Retry attempts exhausted for {dependency or 'local step'} after {attempt_number}")
            return RetryDecision(retry=False, reason=f"exhausted {config.max_attempts} attempts")

        budget = self._budgets.get(dependency) if dependency else None
        if budget is not None and not budget.can_retry():
            logger.warning(f"Retry budget exhausted for {dependency}, giving up early")
            return RetryDecision(retry=False, reason="retry budget exhausted")

        delay = calculate_delay(attempt_number + 1, config.base_delay, config.max_delay, self._rng)
        return RetryDecision(retry=True, delay=delay)
