"""Idempotency keys and the store that deduplicates non-idempotent step calls."""
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from ..models.context import ExecutionContext
from .workflow_engine.steps import StepDefinition

logger = logging.getLogger(__name__)

_MISSING = object()


def _lookup(path: str, data: Dict[str, Any], context: ExecutionContext) -> Any:
    """Resolve ``input.a.b`` or ``context.x`` against the workflow input and context."""
    root, _, rest = path.partition(".")
    if root == "context":
        value: Any = context.to_record()
    elif root == "input":
        value = data
    else:
        value, rest = data, path

    for part in rest.split(".") if rest else []:
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def derive_idempotency_key(
    definition_name: str,
    step: StepDefinition,
    data: Dict[str, Any],
    context: ExecutionContext,
) -> str:
    """Derive the deterministic deduplication key for a step.

    With declared ``idempotency_key`` fields the key covers those values only,
    so two submissions that mean the same side effect share a key. Otherwise it
    covers the client, correlation ID and the full workflow input, which stay
    constant across retries and offline replays of one submission.
    """
    if step.idempotency_key:
        parts = {}
        for path in step.idempotency_key:
            value = _lookup(path, data, context)
            parts[path] = None if value is _MISSING else value
        material: Dict[str, Any] = {"fields": parts}
    else:
        material = {
            "client_id": context.client_id,
            "correlation_id": context.correlation_id,
            "input": data,
        }

    material["workflow"] = definition_name
    material["step"] = step.id
    canonical = json.dumps(material, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def derive_request_key(
    definition_name: str,
    step: StepDefinition,
    data: Dict[str, Any],
    dependencies: Dict[str, Any],
    context: ExecutionContext,
) -> str:
    """Key identifying what a step asks for, independent of who asked.

    Used to find the last good output of an equivalent request when a
    ``substitute`` fallback applies. Declared ``idempotency_key`` fields win;
    otherwise the upstream outputs identify the request, or the workflow input
    for entry steps.
    """
    if step.idempotency_key:
        material: Dict[str, Any] = {
            path: (None if value is _MISSING else value)
            for path, value in ((p, _lookup(p, data, context)) for p in step.idempotency_key)
        }
    elif dependencies:
        material = {"upstream": dependencies}
    else:
        material = {"input": data}

    material = {"request": material, "workflow": definition_name, "step": step.id}
    canonical = json.dumps(material, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyStore(ABC):
    """Remembers outputs of completed non-idempotent step calls by key."""

    @abstractmethod
    def get(self, key: str) -> Tuple[bool, Any]:
        """Return ``(found, output)``."""
        pass

    @abstractmethod
    def put(self, key: str, output: Any) -> None:
        pass


class InMemoryIdempotencyStore(IdempotencyStore):
    """Bounded in-process store; the least recently used entry is evicted first."""

    def __init__(self, max_entries: Optional[int] = 10000) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = Lock()

    def get(self, key: str) -> Tuple[bool, Any]:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return True, self._entries[key]
            return False, None

    def put(self, key: str, output: Any) -> None:
        with self._lock:
            self._entries[key] = output
            self._entries.move_to_end(key)
            while self.max_entries is not None and len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)


class SqliteIdempotencyStore(IdempotencyStore):
    """Durable idempotency records, so a replay after a crash reuses prior outputs."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path) if db_path else Path.home() / ".farmflow" / "idempotency.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_records (
                    key TEXT PRIMARY KEY,
                    output TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )
            conn.commit()

    def get(self, key: str) -> Tuple[bool, Any]:
        with self._lock:
            with sqlite3.connect(str(self.db_path)) as conn:
                row = conn.execute(
                    "SELECT output FROM idempotency_records WHERE key = ?", (key,)
                ).fetchone()
        if row is None:
            return False, None
        return True, json.loads(row[0])

    def put(self, key: str, output: Any) -> None:
        with self._lock:
            with sqlite3.connect(str(self.db_path)) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO idempotency_records (key, output) VALUES (?, ?)",
                    (key, json.dumps(output, default=str)),
                )
                conn.commit()
        logger.debug(f"Recorded idempotency key {key[:12]}")
