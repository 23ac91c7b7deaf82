"""Error taxonomy shared by the executor, the resilience layer and the sync queue."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Classification of a step or workflow failure."""

    VALIDATION = "validation"  # Bad input, never retried
    TRANSIENT = "transient"  # Retried per the retry policy
    PERMANENT = "permanent"  # Not retried, triggers fallback
    CIRCUIT_OPEN = "circuit_open"  # Failed fast, dependency degraded
    TIMEOUT = "timeout"  # Step or workflow budget exceeded
    CANCELLED = "cancelled"

    @property
    def is_retryable(self) -> bool:
        """Whether a later replay could succeed without changing the input."""
        return self in {FailureKind.TRANSIENT, FailureKind.CIRCUIT_OPEN}


class FarmflowError(Exception):
    """Base class for all orchestration errors."""

    kind: FailureKind = FailureKind.PERMANENT


class ValidationError(FarmflowError):
    """Raised when workflow input does not match the entry step schema."""

    kind = FailureKind.VALIDATION

    def __init__(self, message: str, errors: Optional[list] = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class DefinitionError(FarmflowError):
    """Raised when a workflow definition is malformed or conflicts with a published one."""


class UnknownWorkflowError(FarmflowError):
    """Raised when a definition name/version is not registered."""


class TransientFailureError(FarmflowError):
    """A dependency failed in a way that may succeed on retry."""

    kind = FailureKind.TRANSIENT


class PermanentFailureError(FarmflowError):
    """A dependency rejected the request; retrying would not help."""

    kind = FailureKind.PERMANENT


class StepTimeoutError(FarmflowError):
    """A step or workflow exceeded its time budget.

    Treated as a permanent failure of the current step.
    """

    kind = FailureKind.TIMEOUT

    def __init__(self, message: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(message)


class CircuitOpenError(FarmflowError):
    """Raised when a breaker rejects a call without contacting the dependency."""

    kind = FailureKind.CIRCUIT_OPEN

    def __init__(self, dependency: str, failure_count: int, retry_after: float) -> None:
        self.dependency = dependency
        self.failure_count = failure_count
        self.retry_after = retry_after
        super().__init__(
            f"Circuit for '{dependency}' is open after {failure_count} consecutive failures. "
            f"Next probe allowed in {retry_after:.1f}s"
        )


class CapacityExceededError(FarmflowError):
    """Raised when a client's offline queue would exceed its storage cap."""

    def __init__(self, client_id: str, used_bytes: int, requested_bytes: int, cap_bytes: int) -> None:
        self.client_id = client_id
        self.used_bytes = used_bytes
        self.requested_bytes = requested_bytes
        self.cap_bytes = cap_bytes
        super().__init__(
            f"Offline storage exceeded for client {client_id}: "
            f"{used_bytes} + {requested_bytes} bytes > cap of {cap_bytes} bytes"
        )


class DuplicateOperationError(FarmflowError):
    """Raised when a (client, sequence number) pair was already queued or replayed."""

    def __init__(self, client_id: str, sequence_number: int, replayed: bool) -> None:
        self.client_id = client_id
        self.sequence_number = sequence_number
        self.replayed = replayed
        state = "already replayed" if replayed else "already queued"
        super().__init__(f"Operation {client_id}#{sequence_number} {state}")


class InvalidTransitionError(FarmflowError):
    """Raised on an attempt to move an instance or step out of a terminal state."""


class ExecutorUnavailableError(FarmflowError):
    """Raised when the executor cannot accept new work."""

    kind = FailureKind.TRANSIENT


class UnknownInstanceError(FarmflowError, KeyError):
    """Raised when no instance with the given ID is known to the executor."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
