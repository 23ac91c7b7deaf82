"""Offline submission gateway and replay of queued operations."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config import Config, get_config
from ..error_coordination.errors import (
    DefinitionError,
    ExecutorUnavailableError,
    UnknownWorkflowError,
    ValidationError,
)
from ..error_coordination.fallback import WorkflowError
from ..models.context import ExecutionContext
from ..orchestration.workflow_engine.core import WorkflowExecutor
from ..orchestration.workflow_engine.steps import WorkflowStatus
from .queue import InMemoryOfflineQueue, OfflineQueue, QueuedOperation, SqliteOfflineQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionReceipt:
    """What the client is told right after submitting."""

    client_id: str
    status: WorkflowStatus
    instance_id: Optional[str] = None
    sequence_number: Optional[int] = None
    reason: Optional[str] = None

    @property
    def queued(self) -> bool:
        return self.status is WorkflowStatus.QUEUED


@dataclass(frozen=True)
class ReplayResult:
    sequence_number: int
    status: WorkflowStatus
    instance_id: Optional[str] = None
    error: Optional[WorkflowError] = None


@dataclass
class SyncReport:
    """Outcome of one replay pass for a client."""

    client_id: str
    replayed: List[ReplayResult] = field(default_factory=list)
    remaining: int = 0
    stopped_reason: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.stopped_reason is None and self.remaining == 0


class SyncManager:
    """Queues submissions while offline and replays them in order once connected.

    Replays for one client are serialized: concurrent ``sync_now`` calls for
    the same client run one after another, and each operation is awaited to
    a terminal status before the next one starts.
    """

    def __init__(
        self,
        executor: WorkflowExecutor,
        queue: Optional[OfflineQueue] = None,
        is_online: Callable[[], bool] = lambda: True,
    ) -> None:
        """Initialize sync manager.

        Args:
            executor: Executor that replayed operations run on
            queue: Durable offline queue
            is_online: Connectivity probe
        """
        self.executor = executor
        self.queue = queue or InMemoryOfflineQueue()
        self.is_online = is_online
        self._client_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(
        cls,
        executor: Optional[WorkflowExecutor] = None,
        config: Optional[Config] = None,
        is_online: Callable[[], bool] = lambda: True,
    ) -> "SyncManager":
        """Build a sync manager whose queue honours ``FARMFLOW_QUEUE_CAP_BYTES``.

        The queue is the SQLite database under the data directory when
        ``persist_state`` is on, in memory otherwise.
        """
        config = config or get_config()
        executor = executor or WorkflowExecutor.from_config(config)
        if config.persist_state:
            queue: OfflineQueue = SqliteOfflineQueue(config.queue_db_path, cap_bytes=config.queue_cap_bytes)
        else:
            queue = InMemoryOfflineQueue(cap_bytes=config.queue_cap_bytes)
        return cls(executor, queue=queue, is_online=is_online)

    def enqueue(
        self,
        client_id: str,
        definition_name: str,
        data: Dict[str, Any],
        context: ExecutionContext,
        sequence_number: int,
        version: Optional[int] = None,
    ) -> QueuedOperation:
        """Queue an operation for later replay.

        The input is validated now so a request that can never succeed is
        rejected while the farmer is still looking at it.

        Raises:
            ValidationError: If the input is invalid or the context belongs to another client
            UnknownWorkflowError: If the definition is not published
            CapacityExceededError: If the client's storage cap would be exceeded
            DuplicateOperationError: If the sequence number was already used
        """
        if context.client_id != client_id:
            raise ValidationError(
                f"Context belongs to client {context.client_id}, not {client_id}"
            )
        definition = self.executor.definitions.resolve(definition_name, version)
        self.executor.validate_input(definition, data)

        operation = QueuedOperation(
            client_id=client_id,
            sequence_number=sequence_number,
            definition_name=definition_name,
            definition_version=version,
            input=data,
            context=context,
        )
        self.queue.enqueue(operation)
        logger.info(
            f"Queued {definition_name} for client {client_id} as #{sequence_number} "
            f"(correlation_id={context.correlation_id})"
        )
        return operation

    def next_sequence_number(self, client_id: str) -> int:
        used = [op.sequence_number for op in self.queue.pending(client_id)]
        used.extend(record.sequence_number for record in self.queue.replay_log(client_id))
        return max(used) + 1 if used else 1

    async def submit(
        self,
        definition_name: str,
        data: Dict[str, Any],
        context: ExecutionContext,
        sequence_number: Optional[int] = None,
        version: Optional[int] = None,
    ) -> SubmissionReceipt:
        """Run a submission now, or queue it when it cannot run.

        The submission is queued when the device is offline, when a breaker
        guarding one of the workflow's dependencies is open, when the
        executor refuses new work, or when earlier operations of the same
        client are still queued.
        """
        client_id = context.client_id
        reason = None

        if not self.is_online():
            reason = "offline"
        elif self.queue.pending(client_id):
            reason = "earlier operations are still queued"
        elif not self.executor.dependencies_available(definition_name, version):
            reason = "a required service is degraded"
        else:
            try:
                instance_id = await self.executor.submit(definition_name, data, context, version)
                return SubmissionReceipt(client_id, WorkflowStatus.RUNNING, instance_id=instance_id)
            except ExecutorUnavailableError as e:
                reason = str(e)

        if sequence_number is None:
            sequence_number = self.next_sequence_number(client_id)
        self.enqueue(client_id, definition_name, data, context, sequence_number, version)
        return SubmissionReceipt(
            client_id, WorkflowStatus.QUEUED, sequence_number=sequence_number, reason=reason
        )

    async def sync_now(self, client_id: str) -> SyncReport:
        """Replay a client's queued operations in ascending sequence order.

        A pass stops at the first operation that failed only because a
        dependency is unreachable; it stays queued so later operations never
        overtake it.
        """
        report = SyncReport(client_id=client_id)
        async with self._client_locks[client_id]:
            if not self.is_online():
                report.stopped_reason = "offline"
                report.remaining = len(self.queue.pending(client_id))
                return report

            for operation in self.queue.pending(client_id):
                seq = operation.sequence_number
                try:
                    instance = await self.executor.run(
                        operation.definition_name,
                        operation.input,
                        operation.context,
                        operation.definition_version,
                    )
                except ExecutorUnavailableError as e:
                    self.queue.record_attempt(client_id, seq, str(e))
                    report.stopped_reason = str(e)
                    break
                except (ValidationError, UnknownWorkflowError, DefinitionError) as e:
                    logger.warning(f"Dropping operation {client_id}#{seq}: {e}")
                    self.queue.complete(client_id, seq, WorkflowStatus.FAILED, reason=str(e))
                    report.replayed.append(ReplayResult(seq, WorkflowStatus.FAILED))
                    continue

                if instance.status is WorkflowStatus.FAILED and instance.error and instance.error.retryable:
                    self.queue.record_attempt(client_id, seq, instance.error.reason)
                    report.stopped_reason = instance.error.reason
                    logger.info(
                        f"Operation {client_id}#{seq} will be retried later: {instance.error.reason}"
                    )
                    break

                self.queue.complete(
                    client_id,
                    seq,
                    instance.status,
                    instance_id=instance.instance_id,
                    reason=instance.error.reason if instance.error else None,
                )
                report.replayed.append(
                    ReplayResult(seq, instance.status, instance.instance_id, instance.error)
                )

            report.remaining = len(self.queue.pending(client_id))

        logger.info(
            f"Sync for client {client_id}: replayed {len(report.replayed)}, "
            f"{report.remaining} remaining"
        )
        return report

    async def sync_all(self) -> List[SyncReport]:
        """Replay every client's queue; clients are independent and run concurrently."""
        clients = self.queue.clients()
        if not clients:
            return []
        return list(await asyncio.gather(*(self.sync_now(client_id) for client_id in clients)))
