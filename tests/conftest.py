"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- A clean FARMFLOW_* environment and config singleton per test
- Scripted capability providers with call recording
- A retry sleep recorder and a jitter-free random source
- An executor factory wired with the built-in handlers
"""
from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, Dict, List, Optional, Sequence
from unittest.mock import Mock

import pytest

from farmflow.config import reset_config
from farmflow.error_coordination.retry import RetryConfig, RetryPolicy
from farmflow.models.context import ExecutionContext
from farmflow.models.outcomes import StepOutcome, Success
from farmflow.orchestration.definitions import DefinitionRegistry
from farmflow.orchestration.handlers import HandlerRegistry
from farmflow.orchestration.templates import register_builtin_handlers
from farmflow.orchestration.workflow_engine.core import WorkflowExecutor
from farmflow.orchestration.workflow_engine.steps import StepInput, WorkflowDefinition
from farmflow.providers.base import CapabilityProvider
from farmflow.providers.factory import ProviderRegistry


class ScriptedProvider(CapabilityProvider):
    """Provider that plays back a list of outcomes.

    Each call consumes the next outcome; the last one repeats forever. An
    outcome may also be a callable taking the payload. When ``gate`` is set
    every call waits for it before answering.
    """

    def __init__(
        self,
        name: str,
        outcomes: Optional[Sequence[Any]] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        super().__init__(name)
        self.outcomes: List[Any] = list(outcomes or [Success({})])
        self.gate = gate
        self.calls: List[tuple] = []

    async def invoke(self, operation: str, payload: Dict[str, Any], timeout: Optional[float]) -> StepOutcome:
        self.calls.append((operation, payload))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        return outcome(payload) if callable(outcome) else outcome


class SleepRecorder:
    """Stands in for asyncio.sleep between retries; records the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def echo_handler(step_input: StepInput) -> Dict[str, Any]:
    return {"step": step_input.step_id, "upstream": dict(step_input.dependencies)}


@pytest.fixture(autouse=True)
def clean_farmflow_env(monkeypatch):
    """Ensure no FARMFLOW_* variable leaks in from the host environment."""
    for key in list(os.environ):
        if key.startswith("FARMFLOW_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(
        client_id="device-1",
        farmer_id="farmer-1",
        locale="hi-IN",
        correlation_id="corr-1",
        auth_grant="grant-token",
    )


@pytest.fixture
def make_context() -> Callable[..., ExecutionContext]:
    def _make(client_id: str = "device-1", **kwargs) -> ExecutionContext:
        return ExecutionContext(client_id=client_id, farmer_id=f"farmer-of-{client_id}", **kwargs)

    return _make


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def zero_jitter_rng() -> Mock:
    """Random source whose jitter is always zero."""
    return Mock(random=Mock(return_value=0.0))


@pytest.fixture
def handlers() -> HandlerRegistry:
    registry = register_builtin_handlers(HandlerRegistry())
    registry.register("echo", echo_handler)
    return registry


@pytest.fixture
def make_executor(handlers, sleep_recorder, zero_jitter_rng) -> Callable[..., WorkflowExecutor]:
    """Build an executor for the given definitions and providers.

    Retries use max_attempts=3, base_delay=1.0, no jitter and the sleep recorder.
    """

    def _make(
        definitions: Sequence[WorkflowDefinition],
        providers: Sequence[CapabilityProvider] = (),
        **kwargs,
    ) -> WorkflowExecutor:
        kwargs.setdefault(
            "retry_policy",
            RetryPolicy(RetryConfig(max_attempts=3, base_delay=1.0), rng=zero_jitter_rng),
        )
        kwargs.setdefault("sleep", sleep_recorder)
        return WorkflowExecutor(
            DefinitionRegistry(list(definitions)),
            providers=ProviderRegistry(list(providers)),
            handlers=handlers,
            **kwargs,
        )

    return _make
