"""Workflow instance snapshot persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from .workflow_engine.steps import WorkflowInstance, WorkflowStatus

logger = logging.getLogger(__name__)


class WorkflowStateManager(ABC):
    """Abstract base class for workflow instance persistence."""

    @abstractmethod
    def save_state(self, instance: WorkflowInstance) -> bool:
        """Save an instance snapshot.

        Args:
            instance: Instance to save

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def load_state(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Load an instance snapshot.

        Args:
            instance_id: Instance identifier

        Returns:
            Saved snapshot or None
        """
        pass

    @abstractmethod
    def delete_state(self, instance_id: str) -> bool:
        pass

    @abstractmethod
    def list_states(self) -> Dict[str, WorkflowStatus]:
        """List all saved instances.

        Returns:
            Dictionary of instance ID to status
        """
        pass

    @abstractmethod
    def cleanup_old_states(self, days: int = 30) -> int:
        """Clean up old succeeded/failed instances.

        Args:
            days: Age threshold in days

        Returns:
            Number of snapshots cleaned up
        """
        pass


class InMemoryStateManager(WorkflowStateManager):
    """In-memory state manager for development/testing.

    Running instances are always kept. At most ``max_finished`` terminal
    snapshots are retained; the oldest finished ones are dropped first.
    """

    def __init__(self, max_finished: Optional[int] = 1000):
        if max_finished is not None and max_finished < 0:
            raise ValueError("max_finished must be non-negative")
        self.max_finished = max_finished
        self._states: "OrderedDict[str, WorkflowInstance]" = OrderedDict()
        self._lock = Lock()

    def save_state(self, instance: WorkflowInstance) -> bool:
        with self._lock:
            self._states[instance.instance_id] = instance.snapshot()
            self._states.move_to_end(instance.instance_id)
            logger.debug(f"Saved state for instance {instance.instance_id} in memory")
            self._evict_finished()
            return True

    def _evict_finished(self) -> None:
        # Caller holds the lock
        if self.max_finished is None:
            return
        finished = [iid for iid, state in self._states.items() if state.is_terminal()]
        for instance_id in finished[: max(0, len(finished) - self.max_finished)]:
            del self._states[instance_id]

    def load_state(self, instance_id: str) -> Optional[WorkflowInstance]:
        with self._lock:
            instance = self._states.get(instance_id)
            return instance.snapshot() if instance else None

    def delete_state(self, instance_id: str) -> bool:
        with self._lock:
            if instance_id in self._states:
                del self._states[instance_id]
                logger.debug(f"Deleted state for instance {instance_id}")
                return True
            return False

    def list_states(self) -> Dict[str, WorkflowStatus]:
        with self._lock:
            return {instance_id: state.status for instance_id, state in self._states.items()}

    def cleanup_old_states(self, days: int = 30) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._lock:
            expired = [
                instance_id
                for instance_id, state in self._states.items()
                if state.is_terminal() and state.finished_at is not None and state.finished_at < cutoff
            ]
            for instance_id in expired:
                del self._states[instance_id]
        logger.info(f"Cleaned up {len(expired)} old workflow states")
        return len(expired)


class PersistentStateManager(WorkflowStateManager):
    """Persistent state manager using SQLite."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize persistent state manager.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path) if db_path else Path.home() / ".farmflow" / "workflows.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_instances (
                    instance_id TEXT PRIMARY KEY,
                    definition_name TEXT NOT NULL,
                    definition_version INTEGER NOT NULL,
                    client_id TEXT NOT NULL,
                    correlation_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    state_data TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_instances_status
                ON workflow_instances(status)
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_instances_client
                ON workflow_instances(client_id)
            """
            )

            conn.commit()
            logger.info(f"Initialized workflow database at {self.db_path}")

    def save_state(self, instance: WorkflowInstance) -> bool:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO workflow_instances
                        (instance_id, definition_name, definition_version, client_id,
                         correlation_id, status, state_data, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                        (
                            instance.instance_id,
                            instance.definition_name,
                            instance.definition_version,
                            instance.context.client_id,
                            instance.context.correlation_id,
                            instance.status.value,
                            json.dumps(instance.to_dict(), default=str),
                        ),
                    )
                    conn.commit()
                    logger.debug(f"Persisted state for instance {instance.instance_id}")
                    return True

        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"Failed to save workflow state: {e}")
            return False

    def load_state(self, instance_id: str) -> Optional[WorkflowInstance]:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    row = conn.execute(
                        "SELECT state_data FROM workflow_instances WHERE instance_id = ?",
                        (instance_id,),
                    ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to load workflow state: {e}")
            return None

        if row is None:
            return None
        return WorkflowInstance.from_dict(json.loads(row[0]))

    def delete_state(self, instance_id: str) -> bool:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.execute(
                        "DELETE FROM workflow_instances WHERE instance_id = ?", (instance_id,)
                    )
                    conn.commit()
                    return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to delete workflow state: {e}")
            return False

    def list_states(self) -> Dict[str, WorkflowStatus]:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    rows = conn.execute("SELECT instance_id, status FROM workflow_instances").fetchall()
                    return {row[0]: WorkflowStatus(row[1]) for row in rows}
        except sqlite3.Error as e:
            logger.error(f"Failed to list workflow states: {e}")
            return {}

    def cleanup_old_states(self, days: int = 30) -> int:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.execute(
                        """
                        DELETE FROM workflow_instances
                        WHERE status IN ('succeeded', 'failed')
                        AND updated_at < datetime('now', '-' || ? || ' days')
                    """,
                        (days,),
                    )
                    conn.commit()
                    logger.info(f"Cleaned up {cursor.rowcount} old workflow states")
                    return cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup old states: {e}")
            return 0
