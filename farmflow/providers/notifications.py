"""Fire-and-forget notification dispatch to farmers over voice or SMS."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from ..error_coordination.circuit_breaker import CircuitBreakerRegistry
from ..error_coordination.errors import CircuitOpenError, FailureKind
from ..error_coordination.retry import RetryPolicy
from ..models.outcomes import StepOutcome, TransientFailure
from .base import CapabilityProvider, classify_exception
from .factory import ProviderRegistry, UnknownProviderError

logger = logging.getLogger(__name__)


class NotificationChannel(Enum):
    VOICE = "voice"
    SMS = "sms"


class NotificationDispatcher:
    """Sends notifications through the provider registered for each channel.

    ``send`` returns immediately; delivery runs in a background task that
    applies the same retry policy and circuit breakers as workflow steps.
    Delivery failures are logged, never raised to the caller.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        channel_dependencies: Optional[dict] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.retry_policy = retry_policy or RetryPolicy()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.channel_dependencies = channel_dependencies or {
            NotificationChannel.VOICE: "voice-notifications",
            NotificationChannel.SMS: "sms-notifications",
        }
        self.timeout = timeout
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()

    def send(self, farmer_id: str, message: str, channel: NotificationChannel | str) -> asyncio.Task:
        """Queue a notification for background delivery.

        Args:
            farmer_id: Recipient
            message: Text to deliver (spoken for the voice channel)
            channel: ``voice`` or ``sms``

        Returns:
            The delivery task; callers are not required to await it
        """
        channel = NotificationChannel(channel)
        task = asyncio.create_task(self._deliver(farmer_id, message, channel))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for all in-flight deliveries (used at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, farmer_id: str, message: str, channel: NotificationChannel) -> bool:
        dependency = self.channel_dependencies[channel]
        payload = {"farmer_id": farmer_id, "message": message, "channel": channel.value}
        try:
            provider = self.providers.get(dependency)
        except UnknownProviderError as e:
            logger.error(f"Notification to {farmer_id} dropped: {e}")
            return False

        breaker = self.breakers.get(dependency)
        attempt = 0

        while True:
            attempt += 1
            try:
                was_probe = breaker.before_call()
            except CircuitOpenError as e:
                logger.warning(f"Notification to {farmer_id} via {channel.value} dropped: {e}")
                return False

            settled = False
            try:
                outcome = await self._attempt(provider, payload)
                if outcome.ok or outcome.kind is FailureKind.PERMANENT:
                    breaker.record_success(was_probe)
                else:
                    breaker.record_failure(was_probe)
                settled = True
            finally:
                if not settled:
                    breaker.release(was_probe)

            if outcome.ok:
                logger.debug(f"Delivered {channel.value} notification to {farmer_id}")
                return True

            decision = self.retry_policy.should_retry(attempt, outcome.kind, dependency)
            if not decision.retry:
                logger.error(
                    f"Notification to {farmer_id} via {channel.value} failed after {attempt} attempts: "
                    f"{outcome.reason}"
                )
                return False
            await self._sleep(decision.delay)

    async def _attempt(self, provider: CapabilityProvider, payload: dict) -> StepOutcome:
        try:
            return await asyncio.wait_for(provider.invoke("send", payload, self.timeout), self.timeout)
        except asyncio.TimeoutError:
            return TransientFailure(f"notification timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"Notification provider {provider.name} raised {type(e).__name__}: {e}")
            return classify_exception(e)
