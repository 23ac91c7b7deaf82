"""Workflow definitions, execution and state management."""

from .definitions import DefinitionRegistry, load_definitions, parse_definition
from .events import EventBus, StepEvent, Subscription, WorkflowEvent
from .handlers import HandlerRegistry
from .idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqliteIdempotencyStore,
    derive_idempotency_key,
)
from .state_manager import InMemoryStateManager, PersistentStateManager, WorkflowStateManager
from .templates import (
    CropDiagnosisWorkflow,
    PriceLookupWorkflow,
    SoilReportWorkflow,
    VoicePriceQueryWorkflow,
    builtin_definitions,
    get_workflow_template,
    register_builtin_handlers,
)
from .workflow_engine import (
    StepDefinition,
    StepDependency,
    StepInput,
    StepRecord,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecutor,
    WorkflowInstance,
    WorkflowStatus,
)

__all__ = [
    # Definitions
    "DefinitionRegistry",
    "HandlerRegistry",
    "StepDefinition",
    "StepDependency",
    "StepInput",
    "WorkflowDefinition",
    "load_definitions",
    "parse_definition",
    # Execution
    "StepRecord",
    "StepStatus",
    "WorkflowExecutor",
    "WorkflowInstance",
    "WorkflowStatus",
    # Events
    "EventBus",
    "StepEvent",
    "Subscription",
    "WorkflowEvent",
    # Idempotency
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "SqliteIdempotencyStore",
    "derive_idempotency_key",
    # State management
    "InMemoryStateManager",
    "PersistentStateManager",
    "WorkflowStateManager",
    # Workflow templates
    "CropDiagnosisWorkflow",
    "PriceLookupWorkflow",
    "SoilReportWorkflow",
    "VoicePriceQueryWorkflow",
    "builtin_definitions",
    "get_workflow_template",
    "register_builtin_handlers",
]
