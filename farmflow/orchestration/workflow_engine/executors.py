"""
Step execution strategy.

This module runs one step of a workflow instance to a resolution: it calls the
local handler or the external capability provider, consults the circuit
breaker before every external attempt, applies the retry policy to transient
failures and deduplicates non-idempotent calls through the idempotency store.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ...error_coordination.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from ...error_coordination.errors import (
    CircuitOpenError,
    FailureKind,
    FarmflowError,
    StepTimeoutError,
)
from ...error_coordination.retry import RetryPolicy
from ...models.outcomes import StepOutcome
from ...providers.base import CapabilityProvider, classify_exception
from ...providers.factory import ProviderRegistry, UnknownProviderError
from ..handlers import HandlerRegistry
from ..idempotency import IdempotencyStore, InMemoryIdempotencyStore, derive_idempotency_key
from .steps import StepDefinition, StepInput

logger = logging.getLogger(__name__)

RetryCallback = Callable[[str, int, float, str], None]


@dataclass
class StepResolution:
    """Final result of running a step, before fallback is applied."""

    step_id: str
    succeeded: bool
    output: Any = None
    failure_kind: Optional[FailureKind] = None
    reason: Optional[str] = None
    attempts: int = 0
    from_cache: bool = False

    @classmethod
    def success(cls, step_id: str, output: Any, attempts: int, from_cache: bool = False) -> "StepResolution":
        return cls(step_id=step_id, succeeded=True, output=output, attempts=attempts, from_cache=from_cache)

    @classmethod
    def failure(cls, step_id: str, kind: FailureKind, reason: str, attempts: int) -> "StepResolution":
        return cls(step_id=step_id, succeeded=False, failure_kind=kind, reason=reason, attempts=attempts)


def _consume_result(task: asyncio.Task) -> None:
    # Results of calls whose caller went away are discarded
    if not task.cancelled():
        task.exception()


class StepRunner:
    """Runs individual steps with breaker, retry and idempotency handling."""

    def __init__(
        self,
        providers: ProviderRegistry,
        handlers: HandlerRegistry,
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        idempotency_store: Optional[IdempotencyStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.handlers = handlers
        self.breakers = breakers
        self.retry_policy = retry_policy
        self.idempotency_store = idempotency_store or InMemoryIdempotencyStore()
        self._sleep = sleep
        self._in_flight: Set[asyncio.Task] = set()
        self._metrics = {
            "attempts": 0,
            "retries": 0,
            "circuit_rejections": 0,
            "deduplicated": 0,
        }

    async def run(
        self,
        workflow_name: str,
        step: StepDefinition,
        step_input: StepInput,
        on_retry: Optional[RetryCallback] = None,
    ) -> StepResolution:
        """Run a step until it succeeds or definitively fails.

        Never raises for step failures; only cancellation propagates.
        """
        if step.is_external:
            return await self._run_external(workflow_name, step, step_input, on_retry)
        return await self._run_local(step, step_input, on_retry)

    async def _run_local(
        self, step: StepDefinition, step_input: StepInput, on_retry: Optional[RetryCallback]
    ) -> StepResolution:
        attempt = 0
        while True:
            attempt += 1
            self._metrics["attempts"] += 1
            try:
                handler = self.handlers.get(step.handler)
                output = handler(step_input)
                return StepResolution.success(step.id, output, attempt)
            except FarmflowError as e:
                kind, reason = e.kind, str(e)
            except KeyError as e:
                kind, reason = FailureKind.PERMANENT, f"KeyError: {e}"
            except Exception as e:
                logger.error(f"Step {step.id} handler raised {type(e).__name__}: {e}")
                kind, reason = FailureKind.PERMANENT, f"{type(e).__name__}: {e}"

            decision = self.retry_policy.should_retry(attempt, kind)
            if not decision.retry:
                return StepResolution.failure(step.id, kind, reason, attempt)
            await self._wait_before_retry(step, attempt, decision.delay, reason, on_retry)

    def _build_payload(self, step: StepDefinition, step_input: StepInput) -> Dict[str, Any]:
        if step.handler:
            payload = self.handlers.get(step.handler)(step_input)
            if not isinstance(payload, dict):
                raise TypeError(f"Request builder '{step.handler}' must return a dict")
            payload = dict(payload)
        else:
            payload = {"input": dict(step_input.data), "upstream": dict(step_input.dependencies)}

        context = step_input.context
        payload["context"] = {
            "client_id": context.client_id,
            "farmer_id": context.farmer_id,
            "locale": context.locale,
            "correlation_id": context.correlation_id,
            "auth_grant": context.grant_value(),
        }
        return payload

    async def _run_external(
        self,
        workflow_name: str,
        step: StepDefinition,
        step_input: StepInput,
        on_retry: Optional[RetryCallback],
    ) -> StepResolution:
        dependency = step.dependency
        idempotency_key = None
        if not step.idempotent:
            idempotency_key = derive_idempotency_key(
                workflow_name, step, dict(step_input.data), step_input.context
            )
            found, output = self.idempotency_store.get(idempotency_key)
            if found:
                self._metrics["deduplicated"] += 1
                logger.info(
                    f"Step {step.id} already applied for key {idempotency_key[:12]}; "
                    f"reusing stored output (correlation_id={step_input.context.correlation_id})"
                )
                return StepResolution.success(step.id, copy.deepcopy(output), 0, from_cache=True)

        try:
            provider = self.providers.get(dependency)
            payload = self._build_payload(step, step_input)
        except UnknownProviderError as e:
            return StepResolution.failure(step.id, FailureKind.PERMANENT, str(e), 0)
        except FarmflowError as e:
            return StepResolution.failure(step.id, e.kind, str(e), 0)
        except Exception as e:
            return StepResolution.failure(
                step.id, FailureKind.PERMANENT, f"{type(e).__name__}: {e}", 0
            )

        breaker = self.breakers.get(dependency)
        attempt = 0

        while True:
            attempt += 1
            try:
                was_probe = breaker.before_call()
            except CircuitOpenError as e:
                self._metrics["circuit_rejections"] += 1
                logger.warning(f"Step {step.id} failed fast: {e}")
                return StepResolution.failure(step.id, FailureKind.CIRCUIT_OPEN, str(e), attempt)

            self._metrics["attempts"] += 1
            try:
                outcome = await self._dispatch(provider, breaker, was_probe, step, payload)
            except StepTimeoutError as e:
                return StepResolution.failure(step.id, FailureKind.TIMEOUT, str(e), attempt)

            if outcome.ok:
                if idempotency_key is not None:
                    self.idempotency_store.put(idempotency_key, outcome.payload)
                return StepResolution.success(step.id, outcome.payload, attempt)

            decision = self.retry_policy.should_retry(attempt, outcome.kind, dependency)
            if not decision.retry:
                logger.warning(
                    f"Step {step.id} failed on {dependency} after {attempt} attempt(s): "
                    f"{outcome.reason} ({decision.reason})"
                )
                return StepResolution.failure(step.id, outcome.kind, outcome.reason, attempt)
            await self._wait_before_retry(step, attempt, decision.delay, outcome.reason, on_retry)

    async def _dispatch(
        self,
        provider: CapabilityProvider,
        breaker: CircuitBreaker,
        was_probe: bool,
        step: StepDefinition,
        payload: Dict[str, Any],
    ) -> StepOutcome:
        """Call the provider in its own task.

        If the instance is cancelled while the call is in flight, the call is
        allowed to finish (and still updates the breaker) but its output is
        discarded.
        """
        call = asyncio.ensure_future(self._guarded_invoke(provider, breaker, was_probe, step, payload))
        self._in_flight.add(call)
        call.add_done_callback(self._in_flight.discard)
        call.add_done_callback(_consume_result)
        return await asyncio.shield(call)

    async def _guarded_invoke(
        self,
        provider: CapabilityProvider,
        breaker: CircuitBreaker,
        was_probe: bool,
        step: StepDefinition,
        payload: Dict[str, Any],
    ) -> StepOutcome:
        try:
            outcome = await asyncio.wait_for(
                provider.invoke(step.operation_name, payload, step.timeout), step.timeout
            )
        except asyncio.TimeoutError:
            breaker.record_failure(was_probe)
            raise StepTimeoutError(
                f"Step {step.id} timed out after {step.timeout}s waiting for {step.dependency}",
                step.timeout,
            )
        except asyncio.CancelledError:
            breaker.release(was_probe)
            raise
        except Exception as e:
            # Adapters should report failures as outcomes; classify stray exceptions anyway
            outcome = classify_exception(e)

        if outcome.ok or outcome.kind is FailureKind.PERMANENT:
            breaker.record_success(was_probe)
        else:
            breaker.record_failure(was_probe)
        return outcome

    async def _wait_before_retry(
        self,
        step: StepDefinition,
        attempt: int,
        delay: float,
        reason: str,
        on_retry: Optional[RetryCallback],
    ) -> None:
        self._metrics["retries"] += 1
        logger.info(
            f"Attempt {attempt} of step {step.id} failed: {reason}. Retrying in {delay:.2f}s..."
        )
        if on_retry:
            on_retry(step.id, attempt, delay, reason)
        await self._sleep(delay)

    async def drain(self) -> None:
        """Wait for provider calls still running on behalf of cancelled instances."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def get_metrics(self) -> Dict[str, Any]:
        return self._metrics.copy()
