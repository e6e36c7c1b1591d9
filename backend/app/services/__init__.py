"""
Services Package
================

These are the "workers" that do the actual work.

- SonitusClient: Talks to the upstream noise monitoring API
- ReadingStore: Caches readings in SQLite, one table per monitor
- SyncOrchestrator: The boss - decides cache vs upstream, runs the background sync
"""

from .exceptions import (
    NoiseMonitorError,
    InvalidRequest,
    MonitorNotFound,
    UpstreamUnavailable,
    PersistenceError,
)
from .sonitus_client import SonitusClient
from .reading_store import ReadingStore
from .sync_orchestrator import SyncOrchestrator, merge_readings

__all__ = [
    "NoiseMonitorError",
    "InvalidRequest",
    "MonitorNotFound",
    "UpstreamUnavailable",
    "PersistenceError",
    "SonitusClient",
    "ReadingStore",
    "SyncOrchestrator",
    "merge_readings",
]
