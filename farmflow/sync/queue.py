"""Durable per-client queue of workflow submissions made while offline.

Operations are replayed strictly in ascending sequence number per client. Each
client has a storage cap; an enqueue that would exceed it is rejected and
nothing already queued is ever evicted.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, local
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from ..error_coordination.errors import CapacityExceededError, DuplicateOperationError
from ..models.context import ExecutionContext
from ..orchestration.workflow_engine.steps import WorkflowStatus

logger = logging.getLogger(__name__)

DEFAULT_CAP_BYTES = 5 * 1024 * 1024


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QueuedOperation(BaseModel):
    """A workflow submission waiting for connectivity."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1)
    sequence_number: int = Field(..., ge=0)
    definition_name: str = Field(..., min_length=1)
    definition_version: Optional[int] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext
    enqueued_at: datetime = Field(default_factory=_now)
    attempts: int = 0
    last_error: Optional[str] = None

    def payload(self) -> str:
        """Serialized form stored on the device; its size counts against the cap."""
        return json.dumps(
            {
                "definition_name": self.definition_name,
                "definition_version": self.definition_version,
                "input": self.input,
                "context": self.context.to_record(),
            },
            sort_keys=True,
            default=str,
        )

    @property
    def size_bytes(self) -> int:
        return len(self.payload().encode("utf-8"))

    @classmethod
    def from_payload(
        cls,
        client_id: str,
        sequence_number: int,
        payload: str,
        enqueued_at: datetime,
        attempts: int = 0,
        last_error: Optional[str] = None,
    ) -> "QueuedOperation":
        data = json.loads(payload)
        return cls(
            client_id=client_id,
            sequence_number=sequence_number,
            definition_name=data["definition_name"],
            definition_version=data.get("definition_version"),
            input=data.get("input") or {},
            context=ExecutionContext.from_record(data["context"]),
            enqueued_at=enqueued_at,
            attempts=attempts,
            last_error=last_error,
        )


@dataclass(frozen=True)
class ReplayRecord:
    """Acknowledgment that a queued operation was replayed to a terminal status."""

    client_id: str
    sequence_number: int
    status: WorkflowStatus
    instance_id: Optional[str] = None
    reason: Optional[str] = None
    completed_at: datetime = field(default_factory=_now)


class OfflineQueue(ABC):
    """Abstract base class for offline operation queues."""

    def __init__(self, cap_bytes: int = DEFAULT_CAP_BYTES) -> None:
        if cap_bytes <= 0:
            raise ValueError("cap_bytes must be positive")
        self.cap_bytes = cap_bytes

    @abstractmethod
    def enqueue(self, operation: QueuedOperation) -> QueuedOperation:
        """Persist an operation.

        Raises:
            CapacityExceededError: If the client's cap would be exceeded
            DuplicateOperationError: If the sequence number was already used
        """
        pass

    @abstractmethod
    def pending(self, client_id: str) -> List[QueuedOperation]:
        """Queued operations of a client, in ascending sequence order."""
        pass

    @abstractmethod
    def complete(
        self,
        client_id: str,
        sequence_number: int,
        status: WorkflowStatus,
        instance_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Remove an operation and record its replay acknowledgment atomically.

        Returns:
            True if the operation was pending
        """
        pass

    @abstractmethod
    def record_attempt(self, client_id: str, sequence_number: int, reason: str) -> None:
        """Note a replay attempt that left the operation queued."""
        pass

    @abstractmethod
    def used_bytes(self, client_id: str) -> int:
        pass

    @abstractmethod
    def clients(self) -> List[str]:
        """Clients with at least one pending operation."""
        pass

    @abstractmethod
    def replay_log(self, client_id: str) -> List[ReplayRecord]:
        pass

    def peek(self, client_id: str) -> Optional[QueuedOperation]:
        operations = self.pending(client_id)
        return operations[0] if operations else None

    def _check_capacity(self, operation: QueuedOperation, used: int) -> int:
        size = operation.size_bytes
        if used + size > self.cap_bytes:
            logger.warning(
                f"Rejecting operation {operation.client_id}#{operation.sequence_number}: "
                f"{used + size} bytes would exceed the {self.cap_bytes} byte cap"
            )
            raise CapacityExceededError(operation.client_id, used, size, self.cap_bytes)
        return size


class InMemoryOfflineQueue(OfflineQueue):
    """In-memory queue for development/testing."""

    def __init__(self, cap_bytes: int = DEFAULT_CAP_BYTES) -> None:
        super().__init__(cap_bytes)
        self._pending: Dict[Tuple[str, int], QueuedOperation] = {}
        self._log: Dict[Tuple[str, int], ReplayRecord] = {}
        self._lock = Lock()

    def enqueue(self, operation: QueuedOperation) -> QueuedOperation:
        key = (operation.client_id, operation.sequence_number)
        with self._lock:
            if key in self._pending or key in self._log:
                raise DuplicateOperationError(
                    operation.client_id, operation.sequence_number, replayed=key in self._log
                )
            self._check_capacity(operation, self._used_bytes(operation.client_id))
            self._pending[key] = operation
        logger.debug(f"Queued operation {operation.client_id}#{operation.sequence_number}")
        return operation

    def pending(self, client_id: str) -> List[QueuedOperation]:
        with self._lock:
            operations = [op for (cid, _), op in self._pending.items() if cid == client_id]
        return sorted(operations, key=lambda op: op.sequence_number)

    def complete(
        self,
        client_id: str,
        sequence_number: int,
        status: WorkflowStatus,
        instance_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        key = (client_id, sequence_number)
        with self._lock:
            if self._pending.pop(key, None) is None:
                return False
            self._log[key] = ReplayRecord(client_id, sequence_number, status, instance_id, reason)
            return True

    def record_attempt(self, client_id: str, sequence_number: int, reason: str) -> None:
        key = (client_id, sequence_number)
        with self._lock:
            operation = self._pending.get(key)
            if operation is not None:
                self._pending[key] = operation.model_copy(
                    update={"attempts": operation.attempts + 1, "last_error": reason}
                )

    def _used_bytes(self, client_id: str) -> int:
        return sum(op.size_bytes for (cid, _), op in self._pending.items() if cid == client_id)

    def used_bytes(self, client_id: str) -> int:
        with self._lock:
            return self._used_bytes(client_id)

    def clients(self) -> List[str]:
        with self._lock:
            return sorted({cid for cid, _ in self._pending})

    def replay_log(self, client_id: str) -> List[ReplayRecord]:
        with self._lock:
            records = [record for (cid, _), record in self._log.items() if cid == client_id]
        return sorted(records, key=lambda record: record.sequence_number)


class SqliteOfflineQueue(OfflineQueue):
    """Persistent, thread-safe queue using SQLite with WAL mode.

    Removal of a replayed operation and its acknowledgment in ``replay_log``
    happen in one transaction, so a crash between replay and removal replays
    the operation again; idempotency keys make that replay harmless.

    Thread Safety:
        Uses thread-local storage for SQLite connections (one per thread).
        All operations are additionally protected by a Lock.
    """

    def __init__(
        self, db_path: Optional[Union[str, Path]] = None, cap_bytes: int = DEFAULT_CAP_BYTES
    ) -> None:
        """Initialize offline queue.

        Args:
            db_path: Path to SQLite database
            cap_bytes: Storage cap per client in bytes
        """
        super().__init__(cap_bytes)
        self.db_path = Path(db_path) if db_path else Path.home() / ".farmflow" / "offline_queue.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

        # Thread-local storage for connections (SQLite connections aren't thread-safe)
        self._local = local()

        self._init_database()
        logger.info(f"Initialized offline queue at {self.db_path} with cap={cap_bytes} bytes (WAL mode)")

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn"):
            self._local.conn = sqlite3.connect(str(self.db_path))
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            # FULL sync: a queued operation must survive power loss
            self._local.conn.execute("PRAGMA synchronous=FULL")
        return self._local.conn

    def _init_database(self):
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_operations (
                client_id TEXT NOT NULL,
                sequence_number INTEGER NOT NULL,
                definition_name TEXT NOT NULL,
                payload TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                attempts INTEGER DEFAULT 0,
                last_error TEXT,
                enqueued_at TEXT NOT NULL,
                PRIMARY KEY (client_id, sequence_number)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS replay_log (
                client_id TEXT NOT NULL,
                sequence_number INTEGER NOT NULL,
                instance_id TEXT,
                status TEXT NOT NULL,
                reason TEXT,
                completed_at TEXT NOT NULL,
                PRIMARY KEY (client_id, sequence_number)
            )
        """
        )

        conn.commit()

    def enqueue(self, operation: QueuedOperation) -> QueuedOperation:
        key = (operation.client_id, operation.sequence_number)
        payload = operation.payload()
        with self._lock:
            conn = self._get_connection()
            with conn:
                if conn.execute(
                    "SELECT 1 FROM replay_log WHERE client_id = ? AND sequence_number = ?", key
                ).fetchone():
                    raise DuplicateOperationError(*key, replayed=True)
                if conn.execute(
                    "SELECT 1 FROM pending_operations WHERE client_id = ? AND sequence_number = ?", key
                ).fetchone():
                    raise DuplicateOperationError(*key, replayed=False)

                size = self._check_capacity(operation, self._used_bytes(conn, operation.client_id))
                conn.execute(
                    """
                    INSERT INTO pending_operations
                    (client_id, sequence_number, definition_name, payload, size_bytes,
                     attempts, last_error, enqueued_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        operation.client_id,
                        operation.sequence_number,
                        operation.definition_name,
                        payload,
                        size,
                        operation.attempts,
                        operation.last_error,
                        operation.enqueued_at.isoformat(),
                    ),
                )
        logger.debug(f"Queued operation {operation.client_id}#{operation.sequence_number} ({size} bytes)")
        return operation

    def pending(self, client_id: str) -> List[QueuedOperation]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT sequence_number, payload, enqueued_at, attempts, last_error
                FROM pending_operations WHERE client_id = ?
                ORDER BY sequence_number ASC
            """,
                (client_id,),
            ).fetchall()
        return [
            QueuedOperation.from_payload(
                client_id, row[0], row[1], datetime.fromisoformat(row[2]), row[3], row[4]
            )
            for row in rows
        ]

    def complete(
        self,
        client_id: str,
        sequence_number: int,
        status: WorkflowStatus,
        instance_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        with self._lock:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(
                    "DELETE FROM pending_operations WHERE client_id = ? AND sequence_number = ?",
                    (client_id, sequence_number),
                )
                if cursor.rowcount == 0:
                    return False
                conn.execute(
                    """
                    INSERT OR REPLACE INTO replay_log
                    (client_id, sequence_number, instance_id, status, reason, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """,
                    (client_id, sequence_number, instance_id, status.value, reason, _now().isoformat()),
                )
        logger.debug(f"Acknowledged operation {client_id}#{sequence_number} as {status.value}")
        return True

    def record_attempt(self, client_id: str, sequence_number: int, reason: str) -> None:
        with self._lock:
            conn = self._get_connection()
            with conn:
                conn.execute(
                    """
                    UPDATE pending_operations SET attempts = attempts + 1, last_error = ?
                    WHERE client_id = ? AND sequence_number = ?
                """,
                    (reason, client_id, sequence_number),
                )

    def _used_bytes(self, conn: sqlite3.Connection, client_id: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(SUM(size_bytes), 0) FROM pending_operations WHERE client_id = ?",
            (client_id,),
        ).fetchone()
        return int(row[0])

    def used_bytes(self, client_id: str) -> int:
        with self._lock:
            return self._used_bytes(self._get_connection(), client_id)

    def clients(self) -> List[str]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT DISTINCT client_id FROM pending_operations ORDER BY client_id"
            ).fetchall()
        return [row[0] for row in rows]

    def replay_log(self, client_id: str) -> List[ReplayRecord]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT sequence_number, status, instance_id, reason, completed_at
                FROM replay_log WHERE client_id = ? ORDER BY sequence_number ASC
            """,
                (client_id,),
            ).fetchall()
        return [
            ReplayRecord(
                client_id=client_id,
                sequence_number=row[0],
                status=WorkflowStatus(row[1]),
                instance_id=row[2],
                reason=row[3],
                completed_at=datetime.fromisoformat(row[4]),
            )
            for row in rows
        ]

    def close(self):
        """Close the calling thread's database connection."""
        if hasattr(self._local, "conn"):
            try:
                self._local.conn.close()
                delattr(self._local, "conn")
            except sqlite3.Error as e:
                logger.error(f"Failed to close database connection: {e}")
