"""Narrow repository interfaces for the external data stores.

The core never talks to a concrete time-series, object or relational store.
Steps reach them through these interfaces, keyed by entity ID and time range,
usually via :class:`farmflow.providers.stores.StoreProvider` so that store
calls share the same retry and circuit-breaker handling as AI providers.

The in-memory implementations back tests and local development.
"""
from __future__ import annotations

import bisect
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeSeriesPoint:
    """One observation for an entity (e.g. a mandi price or soil moisture reading)."""

    entity_id: str
    timestamp: datetime
    value: float
    tags: Tuple[Tuple[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "tags": dict(self.tags),
        }


class TimeSeriesRepository(ABC):
    """Append/query access to a time-series store."""

    @abstractmethod
    def append(self, point: TimeSeriesPoint) -> None:
        pass

    @abstractmethod
    def query(self, entity_id: str, start: datetime, end: datetime) -> List[TimeSeriesPoint]:
        """Return points for ``entity_id`` with ``start <= timestamp < end``, oldest first."""
        pass


class BlobRepository(ABC):
    """Put/get access to an object store."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store bytes and return the key they were stored under."""
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        pass


class RecordRepository(ABC):
    """Upsert/get access to a relational store."""

    @abstractmethod
    def upsert(self, table: str, entity_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or merge a record; returns the stored record."""
        pass

    @abstractmethod
    def get(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        pass


class InMemoryTimeSeriesRepository(TimeSeriesRepository):
    """Thread-safe in-memory time series keyed by entity."""

    def __init__(self) -> None:
        self._series: Dict[str, List[TimeSeriesPoint]] = {}
        self._lock = RLock()

    def append(self, point: TimeSeriesPoint) -> None:
        with self._lock:
            series = self._series.setdefault(point.entity_id, [])
            keys = [p.timestamp for p in series]
            series.insert(bisect.bisect_right(keys, point.timestamp), point)

    def query(self, entity_id: str, start: datetime, end: datetime) -> List[TimeSeriesPoint]:
        with self._lock:
            return [p for p in self._series.get(entity_id, []) if start <= p.timestamp < end]


class InMemoryBlobRepository(BlobRepository):
    def __init__(self) -> None:
        self._blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = RLock()

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        with self._lock:
            self._blobs[key] = (bytes(data), content_type)
            logger.debug(f"Stored blob {key} ({len(data)} bytes)")
            return key

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._blobs.get(key)
            return entry[0] if entry else None


class InMemoryRecordRepository(RecordRepository):
    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = RLock()

    def upsert(self, table: str, entity_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._tables.setdefault(table, {})
            merged = {**rows.get(entity_id, {}), **record}
            rows[entity_id] = merged
            return copy.deepcopy(merged)

    def get(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._tables.get(table, {}).get(entity_id)
            return copy.deepcopy(row) if row is not None else None
