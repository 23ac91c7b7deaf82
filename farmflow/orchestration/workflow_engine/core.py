"""
Core DAG orchestration engine.

This module contains the workflow executor that schedules the steps of each
instance as their dependencies complete, applies step fallbacks, enforces the
workflow time budget, publishes events, persists snapshots and collects
metrics.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from threading import Lock
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from ...error_coordination.circuit_breaker import CircuitBreakerRegistry
from ...error_coordination.errors import (
    DefinitionError,
    ExecutorUnavailableError,
    FailureKind,
    UnknownInstanceError,
    ValidationError,
)
from ...error_coordination.fallback import FallbackAction, FallbackPolicy, WorkflowError
from ...error_coordination.retry import RetryPolicy
from ...models.context import ExecutionContext
from ...providers.factory import ProviderRegistry
from ..events import EventBus, StepEvent, Subscription, WorkflowEvent
from ..handlers import HandlerRegistry
from ..idempotency import IdempotencyStore, InMemoryIdempotencyStore, derive_request_key
from .executors import StepResolution, StepRunner
from .steps import (
    TERMINAL_STEP_STATUSES,
    StepDefinition,
    StepInput,
    StepRecord,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)

if TYPE_CHECKING:
    from ...config import Config
    from ..definitions import DefinitionRegistry
    from ..state_manager import WorkflowStateManager

logger = logging.getLogger(__name__)


def _substitutes_cached(step: StepDefinition) -> bool:
    fallback = step.fallback
    return (
        fallback is not None
        and fallback.action is FallbackAction.SUBSTITUTE
        and fallback.use_cached
    )


class WorkflowExecutor:
    """Main workflow orchestration engine."""

    def __init__(
        self,
        definitions: "DefinitionRegistry",
        providers: Optional[ProviderRegistry] = None,
        handlers: Optional[HandlerRegistry] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        idempotency_store: Optional[IdempotencyStore] = None,
        state_manager: Optional["WorkflowStateManager"] = None,
        events: Optional[EventBus] = None,
        output_cache: Optional[IdempotencyStore] = None,
        default_timeout: Optional[float] = None,
        max_instances: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize workflow executor.

        Args:
            definitions: Published workflow definitions
            providers: Capability providers, by dependency name
            handlers: Local step handlers and input schemas
            breakers: One circuit breaker per dependency
            retry_policy: Retry policy for transient failures
            idempotency_store: Outputs of non-idempotent calls, by key
            state_manager: Instance snapshot persistence
            events: Event bus for step and workflow events
            output_cache: Last good step outputs used by substitute fallbacks
            default_timeout: Workflow budget when a definition declares none
            max_instances: Running instances accepted before submit is refused
            sleep: Coroutine used to wait between retries
        """
        # Import here to avoid circular imports
        from ..state_manager import InMemoryStateManager

        self.definitions = definitions
        self.providers = providers or ProviderRegistry()
        self.handlers = handlers or HandlerRegistry()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.state_manager = state_manager or InMemoryStateManager()
        self.events = events or EventBus()
        self.output_cache = output_cache or InMemoryIdempotencyStore()
        self.default_timeout = default_timeout
        self.max_instances = max_instances

        self.runner = StepRunner(
            providers=self.providers,
            handlers=self.handlers,
            breakers=self.breakers,
            retry_policy=self.retry_policy,
            idempotency_store=idempotency_store,
            sleep=sleep,
        )

        self._instances: Dict[str, WorkflowInstance] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._accepting = True
        self._lock = Lock()

        # Metrics
        self._metrics = {
            "workflows_started": 0,
            "workflows_succeeded": 0,
            "workflows_failed": 0,
            "workflows_cancelled": 0,
            "steps_executed": 0,
            "steps_failed": 0,
            "steps_substituted": 0,
            "steps_skipped": 0,
            "total_duration": 0.0,
        }

    @classmethod
    def from_config(
        cls,
        config: Optional["Config"] = None,
        definitions: Optional["DefinitionRegistry"] = None,
        **kwargs: Any,
    ) -> "WorkflowExecutor":
        """Build an executor from ``FARMFLOW_*`` settings.

        Retry policy, breakers, workflow budget and instance limit come from
        the config. With ``persist_state`` the instance snapshots and
        idempotency records live in SQLite under the data directory. Keyword
        arguments override any configured component.

        Args:
            config: Settings; the global config when omitted
            definitions: Published definitions; built-in templates plus
                ``FARMFLOW_DEFINITIONS`` when omitted
        """
        # Import here to avoid circular imports
        from ...config import get_config
        from ..definitions import DefinitionRegistry
        from ..idempotency import SqliteIdempotencyStore
        from ..state_manager import PersistentStateManager
        from ..templates import configured_definitions, register_builtin_handlers

        config = config or get_config()
        if definitions is None:
            definitions = DefinitionRegistry(configured_definitions(config))
        if config.persist_state:
            if "state_manager" not in kwargs:
                kwargs["state_manager"] = PersistentStateManager(config.state_db_path)
            if "idempotency_store" not in kwargs:
                kwargs["idempotency_store"] = SqliteIdempotencyStore(config.idempotency_db_path)
        if "handlers" not in kwargs:
            kwargs["handlers"] = register_builtin_handlers(HandlerRegistry())
        kwargs.setdefault("retry_policy", config.build_retry_policy())
        kwargs.setdefault("breakers", config.build_breakers())
        kwargs.setdefault("default_timeout", config.workflow_timeout)
        kwargs.setdefault("max_instances", config.max_instances)

        logger.info(
            f"Building executor from config (persist_state={config.persist_state}, "
            f"max_instances={config.max_instances}, data_dir={config.data_dir})"
        )
        return cls(definitions, **kwargs)

    async def submit(
        self,
        definition_name: str,
        data: Dict[str, Any],
        context: ExecutionContext,
        version: Optional[int] = None,
    ) -> str:
        """Start a new instance of a published workflow.

        Args:
            definition_name: Name of the workflow
            data: Workflow input
            context: Execution context attached to every step
            version: Definition version; latest when omitted

        Returns:
            Instance ID

        Raises:
            UnknownWorkflowError: If the definition is not published
            ValidationError: If the input does not match the entry step schemas
            DefinitionError: If a step names an unregistered handler or provider
            ExecutorUnavailableError: If the executor is shutting down or full
        """
        if not self._accepting:
            raise ExecutorUnavailableError("Executor is shutting down")

        definition = self.definitions.resolve(definition_name, version)
        self._check_resolvable(definition)
        self.validate_input(definition, data)

        with self._lock:
            if self.max_instances is not None and len(self._tasks) >= self.max_instances:
                raise ExecutorUnavailableError(
                    f"Executor at capacity ({self.max_instances} running instances)"
                )
            instance = WorkflowInstance.create(definition, data, context.model_copy(deep=True))
            self._instances[instance.instance_id] = instance
            self._metrics["workflows_started"] += 1

        self.state_manager.save_state(instance)
        logger.info(
            f"Started workflow {definition.name} v{definition.version} as instance "
            f"{instance.instance_id} (correlation_id={context.correlation_id}, "
            f"client_id={context.client_id})"
        )
        self.events.publish(
            WorkflowEvent(instance.instance_id, context.correlation_id, WorkflowStatus.RUNNING)
        )

        task = asyncio.create_task(self._execute(definition, instance))
        with self._lock:
            self._tasks[instance.instance_id] = task
        task.add_done_callback(
            lambda t, d=definition, i=instance: self._on_task_done(d, i, t)
        )
        return instance.instance_id

    async def run(
        self,
        definition_name: str,
        data: Dict[str, Any],
        context: ExecutionContext,
        version: Optional[int] = None,
    ) -> WorkflowInstance:
        """Submit an instance and wait for its terminal snapshot."""
        instance_id = await self.submit(definition_name, data, context, version)
        return await self.wait(instance_id)

    async def wait(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowInstance:
        """Wait until an instance is terminal (or ``timeout`` elapses) and return its snapshot.

        Cancelling the waiter does not cancel the instance.
        """
        task = self._tasks.get(instance_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.status(instance_id)

    def status(self, instance_id: str) -> WorkflowInstance:
        """Get a snapshot of an instance.

        Raises:
            UnknownInstanceError: If the instance is unknown
        """
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is not None:
                return instance.snapshot()

        stored = self.state_manager.load_state(instance_id)
        if stored is None:
            raise UnknownInstanceError(f"Unknown workflow instance {instance_id}")
        return stored

    def subscribe(self, instance_id: Optional[str] = None) -> Subscription:
        """Subscribe to step and workflow events, optionally for one instance.

        Subscribing to an instance that already finished yields its terminal
        event and stops; an unknown instance yields nothing.
        """
        subscription = self.events.subscribe(instance_id)
        if instance_id is None:
            return subscription

        try:
            instance = self.status(instance_id)
        except UnknownInstanceError:
            subscription.close()
            return subscription

        if instance.is_terminal():
            subscription.deliver(
                WorkflowEvent(
                    instance_id=instance.instance_id,
                    correlation_id=instance.context.correlation_id,
                    status=instance.status,
                    detail=instance.error.message if instance.error else None,
                )
            )
        return subscription

    def cancel(self, instance_id: str) -> bool:
        """Cancel a running instance.

        Returns:
            True if a running instance was cancelled
        """
        task = self._tasks.get(instance_id)
        if task is None or task.done():
            return False
        with self._lock:
            self._metrics["workflows_cancelled"] += 1
        logger.info(f"Cancelling workflow instance {instance_id}")
        task.cancel()
        return True

    def validate_input(self, definition: WorkflowDefinition, data: Dict[str, Any]) -> None:
        """Validate workflow input against the schemas of the entry steps.

        Raises:
            ValidationError: If the input is not a mapping or fails a schema
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Workflow input must be a mapping, got {type(data).__name__}")
        for step in definition.entry_steps():
            if step.input_schema:
                self.handlers.validate_input(step.input_schema, data)

    def dependencies_available(self, definition_name: str, version: Optional[int] = None) -> bool:
        """Whether no breaker guarding the workflow's dependencies is rejecting calls."""
        definition = self.definitions.resolve(definition_name, version)
        return all(
            self.breakers.get(dependency).is_available()
            for dependency in definition.external_dependencies()
        )

    async def shutdown(self, cancel_running: bool = False) -> None:
        """Stop accepting work and wait for running instances.

        Args:
            cancel_running: Cancel running instances instead of letting them finish
        """
        self._accepting = False
        tasks = list(self._tasks.values())
        if cancel_running:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.runner.drain()
        logger.info("Workflow executor shut down")

    def _check_resolvable(self, definition: WorkflowDefinition) -> None:
        missing = self.handlers.missing([step.handler for step in definition.steps if step.handler])
        for step in definition.entry_steps():
            if step.input_schema:
                try:
                    self.handlers.schema(step.input_schema)
                except KeyError:
                    missing.append(f"schema:{step.input_schema}")
        missing.extend(
            f"provider:{dependency}"
            for dependency in sorted(definition.external_dependencies())
            if dependency not in self.providers
        )
        if missing:
            raise DefinitionError(
                f"Workflow {definition.name} v{definition.version} references "
                f"unregistered names: {', '.join(missing)}"
            )

    async def _execute(self, definition: WorkflowDefinition, instance: WorkflowInstance) -> None:
        timeout = definition.timeout or self.default_timeout
        try:
            if timeout:
                await asyncio.wait_for(self._schedule(definition, instance), timeout)
            else:
                await self._schedule(definition, instance)
        except asyncio.TimeoutError:
            logger.warning(
                f"Workflow instance {instance.instance_id} exceeded its {timeout}s budget "
                f"(correlation_id={instance.context.correlation_id})"
            )
            self._abort(definition, instance, FailureKind.TIMEOUT, f"Workflow exceeded its {timeout}s budget")
        except asyncio.CancelledError:
            self._abort(definition, instance, FailureKind.CANCELLED, "Workflow instance was cancelled")
        except Exception as e:
            logger.error(f"Workflow instance {instance.instance_id} failed: {e}")
            self._abort(definition, instance, FailureKind.PERMANENT, f"{type(e).__name__}: {e}")
        finally:
            self._finalize_workflow(instance)

    def _on_task_done(
        self, definition: WorkflowDefinition, instance: WorkflowInstance, task: asyncio.Task
    ) -> None:
        with self._lock:
            self._tasks.pop(instance.instance_id, None)
        # Cancelled before its first step ever ran
        if task.cancelled() and not instance.is_terminal():
            self._abort(definition, instance, FailureKind.CANCELLED, "Workflow instance was cancelled")
            self._finalize_workflow(instance)

    async def _schedule(self, definition: WorkflowDefinition, instance: WorkflowInstance) -> None:
        """Start steps as their dependencies complete until none are left or one aborts."""
        records = instance.steps
        order = [definition.step(step_id) for step_id in definition.topological_order()]
        running: Dict[asyncio.Task, StepDefinition] = {}
        abort_error: Optional[WorkflowError] = None

        try:
            while True:
                self._skip_unreachable(order, instance)

                for step in order:
                    if len(running) >= definition.max_parallel:
                        break
                    record = records[step.id]
                    if record.status is StepStatus.PENDING and self._is_ready(step, records):
                        record.transition(StepStatus.RUNNING)
                        self._publish_step(instance, record)
                        task = asyncio.create_task(self._run_step(definition, instance, step))
                        running[task] = step

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step = running.pop(task)
                    try:
                        resolution = task.result()
                    except Exception as e:
                        logger.error(f"Step {step.id} crashed: {e}")
                        resolution = StepResolution.failure(
                            step.id, FailureKind.PERMANENT, f"{type(e).__name__}: {e}", 0
                        )
                    error = self._apply_resolution(definition, instance, step, resolution)
                    abort_error = abort_error or error

                self.state_manager.save_state(instance)
                if abort_error:
                    break
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        if abort_error:
            self._close_unfinished(
                definition, instance, FailureKind.CANCELLED,
                f"Workflow aborted after step {abort_error.step_id} failed",
            )
            instance.mark_failed(abort_error)
            return

        self._close_unfinished(definition, instance, FailureKind.CANCELLED, "Step was never reached")
        instance.mark_succeeded(
            {
                step.id: records[step.id].output
                for step in definition.sink_steps()
                if records[step.id].status is StepStatus.SUCCEEDED
            }
        )

    def _is_ready(self, step: StepDefinition, records: Dict[str, StepRecord]) -> bool:
        for dep in step.dependencies:
            status = records[dep.step_id].status
            if dep.required and status is not StepStatus.SUCCEEDED:
                return False
            if not dep.required and status not in TERMINAL_STEP_STATUSES:
                return False
        return True

    def _skip_unreachable(self, order: List[StepDefinition], instance: WorkflowInstance) -> None:
        # Topological order lets skips cascade in a single pass
        records = instance.steps
        for step in order:
            record = records[step.id]
            if record.status is not StepStatus.PENDING:
                continue
            blocked = [
                dep.step_id
                for dep in step.dependencies
                if dep.required and records[dep.step_id].status in {StepStatus.SKIPPED, StepStatus.FAILED}
            ]
            if blocked:
                record.skip(f"Required dependency {blocked[0]} did not succeed")
                with self._lock:
                    self._metrics["steps_skipped"] += 1
                self._publish_step(instance, record, record.reason)

    def _upstream_outputs(self, step: StepDefinition, records: Dict[str, StepRecord]) -> Dict[str, Any]:
        return {
            dep.step_id: copy.deepcopy(records[dep.step_id].output)
            for dep in step.dependencies
            if records[dep.step_id].status is StepStatus.SUCCEEDED
        }

    async def _run_step(
        self, definition: WorkflowDefinition, instance: WorkflowInstance, step: StepDefinition
    ) -> StepResolution:
        records = instance.steps
        step_input = StepInput(
            step_id=step.id,
            data=copy.deepcopy(instance.input),
            context=instance.context.model_copy(deep=True),
            dependencies=self._upstream_outputs(step, records),
        )

        def on_retry(step_id: str, attempt: int, delay: float, reason: str) -> None:
            records[step_id].attempts = attempt
            self._publish_step(instance, records[step_id], f"Retrying in {delay:.2f}s after: {reason}")

        return await self.runner.run(definition.name, step, step_input, on_retry)

    def _request_key(
        self, definition: WorkflowDefinition, instance: WorkflowInstance, step: StepDefinition
    ) -> str:
        return derive_request_key(
            definition.name,
            step,
            instance.input,
            self._upstream_outputs(step, instance.steps),
            instance.context,
        )

    def _apply_resolution(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        step: StepDefinition,
        resolution: StepResolution,
    ) -> Optional[WorkflowError]:
        """Record a step's resolution, applying its fallback on failure.

        Returns:
            The workflow error when the failure aborts the instance
        """
        record = instance.steps[step.id]
        record.attempts = max(record.attempts, resolution.attempts)

        if resolution.succeeded:
            record.succeed(resolution.output)
            with self._lock:
                self._metrics["steps_executed"] += 1
            if _substitutes_cached(step):
                self.output_cache.put(self._request_key(definition, instance, step), resolution.output)
            self._publish_step(instance, record, "Reused stored output" if resolution.from_cache else None)
            return None

        kind, reason = resolution.failure_kind, resolution.reason
        with self._lock:
            self._metrics["steps_failed"] += 1
        logger.warning(
            f"Step {step.id} of instance {instance.instance_id} failed ({kind.value}): {reason} "
            f"(correlation_id={instance.context.correlation_id})"
        )

        fallback = step.fallback
        if fallback is None and step.optional:
            fallback = FallbackPolicy(action=FallbackAction.SKIP)

        if fallback is not None and fallback.action is FallbackAction.SUBSTITUTE:
            output = fallback.default_output
            if fallback.use_cached:
                found, cached = self.output_cache.get(self._request_key(definition, instance, step))
                if found:
                    output = cached
            record.succeed(copy.deepcopy(output), substituted=True)
            record.failure_kind = kind
            record.reason = reason
            with self._lock:
                self._metrics["steps_substituted"] += 1
            self._publish_step(instance, record, f"Substituted fallback output after {kind.value} failure")
            return None

        if fallback is not None and fallback.action is FallbackAction.SKIP:
            record.skip(reason)
            record.failure_kind = kind
            with self._lock:
                self._metrics["steps_skipped"] += 1
            self._publish_step(instance, record, f"Skipped after {kind.value} failure")
            return None

        record.fail(kind, reason)
        self._publish_step(instance, record, reason)
        if fallback is not None:
            return WorkflowError.build(
                step.id,
                kind,
                reason,
                fallback.message or definition.fallback_message,
                fallback_applied=True,
            )
        return WorkflowError.build(step.id, kind, reason)

    def _close_unfinished(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        kind: FailureKind,
        reason: str,
    ) -> Optional[str]:
        """Fail running steps and skip pending ones.

        Returns:
            ID of the first step that was still running, if any
        """
        first_running = None
        for step_id in definition.topological_order():
            record = instance.steps[step_id]
            if record.status is StepStatus.RUNNING:
                record.fail(kind, reason)
                first_running = first_running or step_id
                self._publish_step(instance, record, reason)
            elif record.status is StepStatus.PENDING:
                record.skip(reason)
                self._publish_step(instance, record, reason)
        return first_running

    def _abort(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        kind: FailureKind,
        reason: str,
    ) -> None:
        if instance.is_terminal():
            return
        step_id = self._close_unfinished(definition, instance, kind, reason)
        instance.mark_failed(WorkflowError.build(step_id, kind, reason))

    def _publish_step(
        self, instance: WorkflowInstance, record: StepRecord, detail: Optional[str] = None
    ) -> None:
        self.events.publish(
            StepEvent(
                instance_id=instance.instance_id,
                correlation_id=instance.context.correlation_id,
                step_id=record.step_id,
                status=record.status,
                attempt=record.attempts,
                detail=detail,
            )
        )

    def _finalize_workflow(self, instance: WorkflowInstance) -> None:
        """Finalize workflow execution.

        Args:
            instance: Terminal instance
        """
        with self._lock:
            if instance.status is WorkflowStatus.SUCCEEDED:
                self._metrics["workflows_succeeded"] += 1
            else:
                self._metrics["workflows_failed"] += 1
            self._metrics["total_duration"] += instance.get_duration() or 0.0

        # Persisted snapshots serve status queries for finished instances
        if self.state_manager.save_state(instance):
            with self._lock:
                self._instances.pop(instance.instance_id, None)

        self.events.publish(
            WorkflowEvent(
                instance_id=instance.instance_id,
                correlation_id=instance.context.correlation_id,
                status=instance.status,
                detail=instance.error.message if instance.error else None,
            )
        )

        logger.info(
            f"Workflow instance {instance.instance_id} ({instance.definition_name} "
            f"v{instance.definition_version}) finished with status {instance.status.value} "
            f"in {instance.get_duration():.2f}s (correlation_id={instance.context.correlation_id})"
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get executor metrics.

        Returns:
            Metrics dictionary
        """
        with self._lock:
            metrics = self._metrics.copy()
            metrics["running_instances"] = len(self._tasks)
        for key, value in self.runner.get_metrics().items():
            metrics[f"step_{key}"] = value
        return metrics
