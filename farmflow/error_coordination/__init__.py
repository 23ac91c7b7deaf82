"""Error Coordination Module - resilience primitives for the workflow executor.

This module provides the failure taxonomy, retry policy, per-dependency circuit
breakers and step fallback policies used when calling external capability
providers.

Quick Start:
-----------
from farmflow.error_coordination import CircuitBreakerRegistry, FailureKind, RetryPolicy

breakers = CircuitBreakerRegistry()
policy = RetryPolicy()

breaker = breakers.get("speech-to-text")
was_probe = breaker.before_call()          # raises CircuitOpenError when open
breaker.record_failure(was_probe)          # pass the admission flag back with the verdict
decision = policy.should_retry(1, FailureKind.TRANSIENT, "speech-to-text")
if decision.retry:
    await asyncio.sleep(decision.delay)
"""
from __future__ import annotations

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .errors import (
    CapacityExceededError,
    CircuitOpenError,
    DefinitionError,
    DuplicateOperationError,
    ExecutorUnavailableError,
    FailureKind,
    FarmflowError,
    InvalidTransitionError,
    PermanentFailureError,
    StepTimeoutError,
    TransientFailureError,
    UnknownInstanceError,
    UnknownWorkflowError,
    ValidationError,
)
from .fallback import FallbackAction, FallbackPolicy, WorkflowError
from .retry import RetryBudget, RetryConfig, RetryDecision, RetryPolicy, calculate_delay

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",

    # Retry
    "RetryBudget",
    "RetryConfig",
    "RetryDecision",
    "RetryPolicy",
    "calculate_delay",

    # Fallback
    "FallbackAction",
    "FallbackPolicy",
    "WorkflowError",

    # Errors
    "CapacityExceededError",
    "CircuitOpenError",
    "DefinitionError",
    "DuplicateOperationError",
    "ExecutorUnavailableError",
    "FailureKind",
    "FarmflowError",
    "InvalidTransitionError",
    "PermanentFailureError",
    "StepTimeoutError",
    "TransientFailureError",
    "UnknownInstanceError",
    "UnknownWorkflowError",
    "ValidationError",
]
