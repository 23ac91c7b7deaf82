"""Offline queueing and ordered replay of workflow submissions."""

from .manager import ReplayResult, SubmissionReceipt, SyncManager, SyncReport
from .queue import (
    DEFAULT_CAP_BYTES,
    InMemoryOfflineQueue,
    OfflineQueue,
    QueuedOperation,
    ReplayRecord,
    SqliteOfflineQueue,
)

__all__ = [
    "DEFAULT_CAP_BYTES",
    "InMemoryOfflineQueue",
    "OfflineQueue",
    "QueuedOperation",
    "ReplayRecord",
    "ReplayResult",
    "SqliteOfflineQueue",
    "SubmissionReceipt",
    "SyncManager",
    "SyncReport",
]
