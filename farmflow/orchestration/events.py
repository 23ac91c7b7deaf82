"""Step-completion and workflow status events for real-time status surfaces."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Union

from .workflow_engine.steps import TERMINAL_WORKFLOW_STATUSES, StepStatus, WorkflowStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepEvent:
    instance_id: str
    correlation_id: str
    step_id: str
    status: StepStatus
    attempt: int = 0
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class WorkflowEvent:
    instance_id: str
    correlation_id: str
    status: WorkflowStatus
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Event = Union[StepEvent, WorkflowEvent]


def is_terminal_event(event: Any) -> bool:
    return isinstance(event, WorkflowEvent) and event.status in TERMINAL_WORKFLOW_STATUSES


class Subscription:
    """Async iterator over events, optionally filtered to one instance.

    Iteration stops after the filtered instance reaches a terminal status, or
    when the subscription is closed.
    """

    _CLOSED = object()

    def __init__(self, bus: "EventBus", instance_id: Optional[str], maxsize: int) -> None:
        self._bus = bus
        self.instance_id = instance_id
        # Unbounded so the close marker always fits; the limit applies to events only
        self._queue: asyncio.Queue = asyncio.Queue()
        self._maxsize = maxsize
        self._closed = False
        self._finished = False

    def matches(self, event: Event) -> bool:
        return self.instance_id is None or event.instance_id == self.instance_id

    def deliver(self, event: Any) -> None:
        if self._closed:
            return
        # Terminal events are never dropped; they end per-instance iteration
        if self._maxsize and self._queue.qsize() >= self._maxsize and not is_terminal_event(event):
            logger.warning(f"Dropping event for slow subscriber on {self.instance_id or 'all instances'}")
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        if self.instance_id is not None and is_terminal_event(item):
            self._finished = True
            self.close()
        return item


class EventBus:
    """Fan-out of executor events to subscribers and callbacks."""

    def __init__(self, subscriber_queue_size: int = 1000) -> None:
        self._subscriptions: List[Subscription] = []
        self._callbacks: List[Callable[[Event], None]] = []
        self._queue_size = subscriber_queue_size

    def subscribe(self, instance_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, instance_id, self._queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def add_callback(self, callback: Callable[[Event], None]) -> None:
        self._callbacks.append(callback)

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Callback error: {e}")
