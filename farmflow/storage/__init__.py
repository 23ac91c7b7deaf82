"""Repository interfaces for time-series, blob and relational stores."""

from .repositories import (
    BlobRepository,
    InMemoryBlobRepository,
    InMemoryRecordRepository,
    InMemoryTimeSeriesRepository,
    RecordRepository,
    TimeSeriesPoint,
    TimeSeriesRepository,
)

__all__ = [
    "BlobRepository",
    "InMemoryBlobRepository",
    "InMemoryRecordRepository",
    "InMemoryTimeSeriesRepository",
    "RecordRepository",
    "TimeSeriesPoint",
    "TimeSeriesRepository",
]
