"""Exposes the repository interfaces as a capability provider.

Store calls go through the same breaker/retry path as AI providers, so a
degraded time-series store is isolated exactly like a degraded vision API.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.outcomes import PermanentFailure, StepOutcome, Success
from ..storage.repositories import (
    BlobRepository,
    RecordRepository,
    TimeSeriesPoint,
    TimeSeriesRepository,
)
from .base import CapabilityProvider, classify_exception

logger = logging.getLogger(__name__)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class StoreProvider(CapabilityProvider):
    """Routes ``timeseries.*``, ``blob.*`` and ``records.*`` operations to repositories."""

    def __init__(
        self,
        name: str = "stores",
        timeseries: Optional[TimeSeriesRepository] = None,
        blobs: Optional[BlobRepository] = None,
        records: Optional[RecordRepository] = None,
    ) -> None:
        super().__init__(name)
        self.timeseries = timeseries
        self.blobs = blobs
        self.records = records
        self._operations: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        if timeseries is not None:
            self._operations["timeseries.append"] = self._timeseries_append
            self._operations["timeseries.query"] = self._timeseries_query
        if blobs is not None:
            self._operations["blob.put"] = self._blob_put
            self._operations["blob.get"] = self._blob_get
        if records is not None:
            self._operations["records.upsert"] = self._records_upsert
            self._operations["records.get"] = self._records_get

    def get_supported_operations(self) -> List[str]:
        return sorted(self._operations)

    async def invoke(self, operation: str, payload: Dict[str, Any], timeout: Optional[float]) -> StepOutcome:
        handler = self._operations.get(operation)
        if handler is None:
            return PermanentFailure(f"{self.name} does not support operation '{operation}'")

        try:
            result = await asyncio.to_thread(handler, payload)
        except (KeyError, TypeError, ValueError) as e:
            return PermanentFailure(f"Invalid {operation} request: {e}")
        except Exception as e:
            return classify_exception(e)

        return Success(result)

    def _timeseries_append(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        point = TimeSeriesPoint(
            entity_id=payload["entity_id"],
            timestamp=_parse_time(payload["timestamp"]),
            value=float(payload["value"]),
            tags=tuple(sorted((payload.get("tags") or {}).items())),
        )
        self.timeseries.append(point)
        return point.to_dict()

    def _timeseries_query(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        points = self.timeseries.query(
            payload["entity_id"], _parse_time(payload["start"]), _parse_time(payload["end"])
        )
        return [point.to_dict() for point in points]

    def _blob_put(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = base64.b64decode(payload["data"])
        key = self.blobs.put(payload["key"], data, payload.get("content_type", "application/octet-stream"))
        return {"key": key, "size": len(data)}

    def _blob_get(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = self.blobs.get(payload["key"])
        if data is None:
            raise KeyError(payload["key"])
        return {"key": payload["key"], "data": base64.b64encode(data).decode("ascii")}

    def _records_upsert(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.records.upsert(payload["table"], payload["entity_id"], payload["record"])

    def _records_get(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self.records.get(payload["table"], payload["entity_id"])
        if record is None:
            raise KeyError(f"{payload['table']}/{payload['entity_id']}")
        return record
