"""
Workflow step models and data structures.

This module defines the declarative workflow graph (steps, dependency edges,
definitions) and the mutable per-execution state (step records, instances).
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ...error_coordination.errors import FailureKind, InvalidTransitionError
from ...error_coordination.fallback import FallbackAction, FallbackPolicy, WorkflowError
from ...models.context import ExecutionContext


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(Enum):
    """Workflow instance status."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    QUEUED = "queued"


class StepStatus(Enum):
    """Individual step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_WORKFLOW_STATUSES = {WorkflowStatus.SUCCEEDED, WorkflowStatus.FAILED}
TERMINAL_STEP_STATUSES = {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED}


class StepDependency(BaseModel):
    """Dependency edge: this step consumes the output of ``step_id``.

    A non-required dependency only has to be finished (succeeded or skipped);
    its output is absent when it was skipped.
    """

    model_config = ConfigDict(frozen=True)

    step_id: str
    required: bool = True


class StepDefinition(BaseModel):
    """Individual workflow step definition. Immutable once published."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    dependency: Optional[str] = None
    operation: Optional[str] = None
    handler: Optional[str] = None
    input_schema: Optional[str] = None
    dependencies: Tuple[StepDependency, ...] = ()
    timeout: float = Field(30.0, gt=0)
    idempotent: bool = True
    idempotency_key: Tuple[str, ...] = ()
    optional: bool = False
    fallback: Optional[FallbackPolicy] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("dependencies", mode="before")
    @classmethod
    def normalize_dependencies(cls, v):
        """Accept plain step ids alongside ``{step_id, required}`` mappings."""
        if v is None:
            return ()
        return tuple(StepDependency(step_id=dep) if isinstance(dep, str) else dep for dep in v)

    @model_validator(mode="after")
    def validate_step(self) -> "StepDefinition":
        if self.dependency is None and not self.handler:
            raise ValueError(f"Local step '{self.id}' must name a handler")
        if self.fallback and self.fallback.action is FallbackAction.SKIP and not self.optional:
            raise ValueError(f"Step '{self.id}' uses the skip fallback but is not optional")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_external(self) -> bool:
        return self.dependency is not None

    @property
    def operation_name(self) -> str:
        return self.operation or self.id

    @property
    def dependency_ids(self) -> List[str]:
        return [dep.step_id for dep in self.dependencies]


class WorkflowDefinition(BaseModel):
    """Versioned, acyclic graph of steps describing one end-to-end use case."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    version: int = Field(1, ge=1)
    description: str = ""
    steps: Tuple[StepDefinition, ...]
    timeout: Optional[float] = Field(None, gt=0)
    max_parallel: int = Field(10, ge=1, le=100)
    fallback_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v):
        """Validate step definitions."""
        if not v:
            raise ValueError("Workflow must have at least one step")

        step_ids: Set[str] = set()
        for step in v:
            if step.id in step_ids:
                raise ValueError(f"Duplicate step ID: {step.id}")
            step_ids.add(step.id)

        for step in v:
            for dep in step.dependency_ids:
                if dep not in step_ids:
                    raise ValueError(f"Step '{step.id}' depends on unknown step '{dep}'")
                if dep == step.id:
                    raise ValueError(f"Step '{step.id}' depends on itself")

        return v

    @model_validator(mode="after")
    def validate_graph(self) -> "WorkflowDefinition":
        self.to_dag()
        return self

    @property
    def key(self) -> Tuple[str, int]:
        return (self.name, self.version)

    def to_dag(self) -> nx.DiGraph:
        """Convert workflow definition to directed acyclic graph."""
        dag = nx.DiGraph()

        for step in self.steps:
            dag.add_node(step.id, step=step)

        for step in self.steps:
            for dep in step.dependencies:
                dag.add_edge(dep.step_id, step.id, required=dep.required)

        if not nx.is_directed_acyclic_graph(dag):
            cycle = nx.find_cycle(dag)
            raise ValueError(f"Workflow contains cycles: {cycle}")

        return dag

    def step(self, step_id: str) -> StepDefinition:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def entry_steps(self) -> List[StepDefinition]:
        """Steps with no dependencies; the workflow input is validated against their schemas."""
        return [step for step in self.steps if not step.dependencies]

    def sink_steps(self) -> List[StepDefinition]:
        """Steps nothing depends on; their outputs form the aggregate result."""
        consumed = {dep for step in self.steps for dep in step.dependency_ids}
        return [step for step in self.steps if step.id not in consumed]

    def topological_order(self) -> List[str]:
        return list(nx.lexicographical_topological_sort(self.to_dag()))

    def execution_levels(self) -> List[List[str]]:
        """Group step IDs into levels whose members may run concurrently."""
        return [sorted(level) for level in nx.topological_generations(self.to_dag())]

    def external_dependencies(self) -> Set[str]:
        return {step.dependency for step in self.steps if step.dependency}

    def dependents_of(self, step_id: str) -> List[str]:
        return [step.id for step in self.steps if step_id in step.dependency_ids]


@dataclass(frozen=True)
class StepInput:
    """Everything a step handler may read: workflow input, context and upstream outputs."""

    step_id: str
    data: Mapping[str, Any]
    context: ExecutionContext
    dependencies: Mapping[str, Any]


@dataclass
class StepRecord:
    """Execution record of one step within an instance."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    attempts: int = 0
    failure_kind: Optional[FailureKind] = None
    reason: Optional[str] = None
    substituted: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def transition(self, status: StepStatus) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Step {self.step_id} is already {self.status.value}; cannot become {status.value}"
            )
        self.status = status
        if status is StepStatus.RUNNING:
            self.started_at = _now()
        elif status in TERMINAL_STEP_STATUSES:
            self.finished_at = _now()

    def succeed(self, output: Any, substituted: bool = False) -> None:
        self.transition(StepStatus.SUCCEEDED)
        self.output = output
        self.substituted = substituted

    def fail(self, kind: FailureKind, reason: str) -> None:
        self.transition(StepStatus.FAILED)
        self.failure_kind = kind
        self.reason = reason

    def skip(self, reason: str) -> None:
        self.transition(StepStatus.SKIPPED)
        self.reason = reason

    def get_duration(self) -> Optional[float]:
        if not self.started_at or not self.finished_at:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "attempts": self.attempts,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "reason": self.reason,
            "substituted": self.substituted,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data["status"]),
            output=data.get("output"),
            attempts=data.get("attempts", 0),
            failure_kind=FailureKind(data["failure_kind"]) if data.get("failure_kind") else None,
            reason=data.get("reason"),
            substituted=data.get("substituted", False),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            finished_at=datetime.fromisoformat(data["finished_at"]) if data.get("finished_at") else None,
        )


@dataclass
class WorkflowInstance:
    """One execution of a workflow definition.

    Only the executor mutates an instance; everyone else receives snapshots.
    Terminal states are final.
    """

    definition_name: str
    definition_version: int
    input: Dict[str, Any]
    context: ExecutionContext
    instance_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: WorkflowStatus = WorkflowStatus.RUNNING
    steps: Dict[str, StepRecord] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[WorkflowError] = None
    created_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls, definition: WorkflowDefinition, data: Dict[str, Any], context: ExecutionContext
    ) -> "WorkflowInstance":
        return cls(
            definition_name=definition.name,
            definition_version=definition.version,
            input=copy.deepcopy(data),
            context=context,
            steps={step.id: StepRecord(step_id=step.id) for step in definition.steps},
        )

    def is_terminal(self) -> bool:
        """Check if workflow is in terminal state."""
        return self.status in TERMINAL_WORKFLOW_STATUSES

    def _finish(self, status: WorkflowStatus) -> None:
        if self.is_terminal():
            raise InvalidTransitionError(
                f"Instance {self.instance_id} is already {self.status.value}; cannot become {status.value}"
            )
        self.status = status
        self.finished_at = _now()

    def mark_succeeded(self, output: Dict[str, Any]) -> None:
        self._finish(WorkflowStatus.SUCCEEDED)
        self.output = output

    def mark_failed(self, error: WorkflowError) -> None:
        self._finish(WorkflowStatus.FAILED)
        self.error = error

    def get_duration(self) -> Optional[float]:
        """Get workflow execution duration."""
        end = self.finished_at or _now()
        return (end - self.created_at).total_seconds()

    def step_outputs(self) -> Dict[str, Any]:
        return {
            step_id: record.output
            for step_id, record in self.steps.items()
            if record.status is StepStatus.SUCCEEDED
        }

    def snapshot(self) -> "WorkflowInstance":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "definition_name": self.definition_name,
            "definition_version": self.definition_version,
            "input": self.input,
            "context": self.context.to_record(),
            "status": self.status.value,
            "steps": {step_id: record.to_dict() for step_id, record in self.steps.items()},
            "output": self.output,
            "error": self.error.model_dump(mode="json") if self.error else None,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowInstance":
        return cls(
            instance_id=data["instance_id"],
            definition_name=data["definition_name"],
            definition_version=data["definition_version"],
            input=data.get("input", {}),
            context=ExecutionContext.from_record(data["context"]),
            status=WorkflowStatus(data["status"]),
            steps={
                step_id: StepRecord.from_dict(record)
                for step_id, record in data.get("steps", {}).items()
            },
            output=data.get("output") or {},
            error=WorkflowError.model_validate(data["error"]) if data.get("error") else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]) if data.get("finished_at") else None,
            metadata=data.get("metadata", {}),
        )
