"""Result shape every capability provider call is adapted to."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from ..error_coordination.errors import FailureKind


@dataclass(frozen=True)
class Success:
    """The dependency answered with a usable payload."""

    payload: Any = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class TransientFailure:
    """The dependency failed in a way that may clear up (network, 5xx, throttling)."""

    reason: str
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> FailureKind:
        return FailureKind.TRANSIENT


@dataclass(frozen=True)
class PermanentFailure:
    """The dependency rejected the request (bad input, unsupported operation)."""

    reason: str
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> FailureKind:
        return FailureKind.PERMANENT


StepOutcome = Union[Success, TransientFailure, PermanentFailure]
