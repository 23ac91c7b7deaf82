"""Data models shared across the orchestration core.

This module provides the execution context carried by every workflow instance
and the outcome types every capability provider call is adapted to.
"""

from .context import ExecutionContext
from .outcomes import PermanentFailure, StepOutcome, Success, TransientFailure

__all__ = [
    "ExecutionContext",
    "PermanentFailure",
    "StepOutcome",
    "Success",
    "TransientFailure",
]
