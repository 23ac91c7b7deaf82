"""Fallback policies and the user-facing failure shape."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .errors import FailureKind


class FallbackAction(Enum):
    """What the executor does once a step has definitively failed."""

    ABORT = "abort"  # Fail the workflow with a degraded response
    SUBSTITUTE = "substitute"  # Use a cached/default output and continue
    SKIP = "skip"  # Skip an optional step and continue


class FallbackPolicy(BaseModel):
    """Declared fallback for a step."""

    model_config = ConfigDict(frozen=True)

    action: FallbackAction
    default_output: Any = None
    use_cached: bool = True
    message: Optional[str] = None


# Human-readable causes and next actions, keyed by failure kind
_USER_MESSAGES: Dict[FailureKind, tuple] = {
    FailureKind.VALIDATION: (
        "The request could not be understood.",
        "Check the details you entered and try again.",
    ),
    FailureKind.TRANSIENT: (
        "A service we rely on is temporarily unreachable.",
        "Your request will be retried automatically; please check back shortly.",
    ),
    FailureKind.CIRCUIT_OPEN: (
        "A service we rely on is currently degraded.",
        "Please try again in a few minutes.",
    ),
    FailureKind.PERMANENT: (
        "We could not complete this request.",
        "Try rephrasing the request or contact your field officer.",
    ),
    FailureKind.TIMEOUT: (
        "The request took too long to complete.",
        "Please try again; shorter voice notes or smaller photos process faster.",
    ),
    FailureKind.CANCELLED: (
        "The request was cancelled.",
        "Submit it again if you still need an answer.",
    ),
}


class WorkflowError(BaseModel):
    """Structured failure attached to a failed workflow instance.

    ``message`` and ``suggested_action`` are safe to show to a farmer;
    ``reason`` keeps the internal cause for logs and operators.
    """

    model_config = ConfigDict(frozen=True)

    step_id: Optional[str]
    failure_kind: FailureKind
    reason: str
    message: str
    suggested_action: str
    fallback_applied: bool = False

    @property
    def retryable(self) -> bool:
        return self.failure_kind.is_retryable and not self.fallback_applied

    @classmethod
    def build(
        cls,
        step_id: Optional[str],
        failure_kind: FailureKind,
        reason: str,
        fallback_message: Optional[str] = None,
        fallback_applied: Optional[bool] = None,
    ) -> "WorkflowError":
        """Create a failure with a user-facing message for the failure kind.

        Args:
            step_id: Step that caused the abort, if any
            failure_kind: Classification of the failure
            reason: Internal cause, never shown to the user
            fallback_message: Degraded response configured on the step or workflow
            fallback_applied: Whether an abort fallback handled the failure;
                defaults to whether a fallback message was given
        """
        message, action = _USER_MESSAGES[failure_kind]
        return cls(
            step_id=step_id,
            failure_kind=failure_kind,
            reason=reason,
            message=fallback_message or message,
            suggested_action=action,
            fallback_applied=(
                fallback_message is not None if fallback_applied is None else fallback_applied
            ),
        )
