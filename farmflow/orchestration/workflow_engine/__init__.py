"""
Workflow execution engine.

This package contains the workflow engine components:
- steps: Definitions, step records and instances
- core: DAG scheduling, fallbacks and instance lifecycle
- executors: Per-step execution with breaker, retry and idempotency handling
"""

from __future__ import annotations

# Export main public API
from .steps import (
    StepDefinition,
    StepDependency,
    StepInput,
    StepRecord,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)

from .core import WorkflowExecutor

from .executors import StepResolution, StepRunner

__all__ = [
    # Step models
    "StepDefinition",
    "StepDependency",
    "StepInput",
    "StepRecord",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowStatus",

    # Core executor
    "WorkflowExecutor",

    # Step execution
    "StepResolution",
    "StepRunner",
]
