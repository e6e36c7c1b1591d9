"""
Models Package
==============

This is where all our data models live.
Import from here instead of the individual files.

Example:
    from app.models import Monitor, NoiseReading
"""

from .noise import (
    # Constants
    METRIC_FIELDS,
    DATETIME_FORMAT,
    parse_timestamp,

    # Status values
    MonitorStatus,
    SyncOutcome,

    # What we store
    Monitor,
    NoiseReading,

    # What the frontend sends us
    ReadingsRequest,
    SaveReadingsRequest,

    # What we send back
    MonitorResponse,
    UpsertResult,
    InitializeResult,
    CleanupResult,
    MonitorStats,
    MergedRow,
)

__all__ = [
    "METRIC_FIELDS",
    "DATETIME_FORMAT",
    "parse_timestamp",
    "MonitorStatus",
    "SyncOutcome",
    "Monitor",
    "NoiseReading",
    "ReadingsRequest",
    "SaveReadingsRequest",
    "MonitorResponse",
    "UpsertResult",
    "InitializeResult",
    "CleanupResult",
    "MonitorStats",
    "MergedRow",
]
