"""
Noise Monitor Models
====================
Pydantic models for noise monitors, readings and API payloads.

This module defines all data structures used throughout the application:
- Domain models: Monitor and NoiseReading (what we store)
- Request models: What the frontend sends to the backend
- Response models: What the backend returns to the frontend

THE EIGHT METRICS:
    Every reading carries eight decibel values, A- and C-weighted:
    laeq, la10, la90, lafmax, lceq, lcfmax, lc10, lc90

Author: Noise Monitor Dashboard Team
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional
from datetime import datetime, timezone
from enum import Enum


# The eight metric columns, in storage order
METRIC_FIELDS = ("laeq", "la10", "la90", "lafmax", "lceq", "lcfmax", "lc10", "lc90")

# Wire format used by the upstream API and by our responses
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# =============================================================================
# ENUMS
# =============================================================================

class MonitorStatus(str, Enum):
    """
    Operational status of a monitor.

    - ACTIVE: Listed by the upstream API, synced by the background job
    - INACTIVE: No longer listed upstream (never deleted, just flipped)
    - UNKNOWN: Registered without a known status
    """
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class SyncOutcome(str, Enum):
    """Result of the last sync attempt for a monitor."""
    SYNCHRONIZED = "synchronized"
    FAILED = "failed"


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class Monitor(BaseModel):
    """
    A registered noise monitor.

    The id is kept in the upstream (dot-separated) form, e.g. "10.1.3".
    The storage form ("10_1_3") is derived when needed, see
    app.utils.validation.to_storage_id.
    """
    monitor_id: str = Field(..., description="Monitor id in upstream form (dots)")
    display_name: str = Field(..., description="Human-readable name")
    location: Optional[str] = Field(None, description="Where the monitor is")
    status: MonitorStatus = Field(default=MonitorStatus.ACTIVE)
    data_table_name: Optional[str] = Field(None, description="Readings table for this monitor")
    created_at: Optional[datetime] = Field(None, description="When we first saw it")
    last_sync_time: Optional[datetime] = Field(None, description="Last successful sync")
    sync_status: Optional[SyncOutcome] = Field(None, description="Last sync outcome")


class NoiseReading(BaseModel):
    """
    One reading for one monitor.

    Identity is (monitor, timestamp). Timestamps are UTC, second resolution.
    """
    timestamp: datetime = Field(..., description="Reading timestamp (UTC)")
    laeq: float = Field(..., description="A-weighted equivalent level (dB)")
    la10: float = Field(..., description="A-weighted level exceeded 10% of the time")
    la90: float = Field(..., description="A-weighted level exceeded 90% of the time")
    lafmax: float = Field(..., description="A-weighted max level, fast response")
    lceq: float = Field(..., description="C-weighted equivalent level (dB)")
    lcfmax: float = Field(..., description="C-weighted max level, fast response")
    lc10: float = Field(..., description="C-weighted level exceeded 10% of the time")
    lc90: float = Field(..., description="C-weighted level exceeded 90% of the time")

    @property
    def datetime_str(self) -> str:
        return self.timestamp.strftime(DATETIME_FORMAT)

    def metrics(self) -> tuple:
        """Metric values in storage order."""
        return tuple(getattr(self, name) for name in METRIC_FIELDS)

    def to_wire(self) -> dict:
        """Convert to the {datetime, laeq, ...} shape the frontend charts."""
        data = {"datetime": self.datetime_str}
        for name in METRIC_FIELDS:
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_wire(cls, item: dict) -> "NoiseReading":
        """
        Parse an upstream/frontend record.

        Accepts "YYYY-MM-DD HH:MM:SS" or ISO strings under "datetime" (or
        "timestamp"), and metric values as numbers or numeric strings.

        Raises:
            ValueError, KeyError, TypeError: if the record is malformed
        """
        raw_ts = item.get("datetime", item.get("timestamp"))
        timestamp = parse_timestamp(raw_ts)
        values = {}
        for name in METRIC_FIELDS:
            value = float(item[name])
            if value != value:  # NaN
                raise ValueError(f"{name} is not a number")
            values[name] = value
        return cls(timestamp=timestamp, **values)


def parse_timestamp(raw) -> datetime:
    """
    Parse a timestamp into an aware UTC datetime truncated to the second.

    Naive values are treated as UTC (upstream sends UTC without offset).
    """
    if raw is None:
        raise ValueError("missing timestamp")
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, (int, float)):
        parsed = datetime.fromtimestamp(raw, tz=timezone.utc)
    else:
        text = str(raw).strip().replace("Z", "+00:00")
        parsed = datetime.fromisoformat(text.replace(" ", "T", 1))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).replace(microsecond=0)


# =============================================================================
# REQUEST MODELS - What frontend sends to backend
# =============================================================================

class ReadingsRequest(BaseModel):
    """
    Request body for POST /api/data/{monitor_ids}.

    Times are unix seconds. When realtime is true the bounds are ignored
    and the trailing hour is returned.

    Example Request:
        POST /api/data/10.1.3,10.1.4
        {"startTime": 1760000000, "endTime": 1760003600, "realtime": false}
    """
    model_config = ConfigDict(populate_by_name=True)

    start_time: Optional[int] = Field(None, alias="startTime", description="Window start (unix seconds)")
    end_time: Optional[int] = Field(None, alias="endTime", description="Window end (unix seconds)")
    realtime: bool = Field(default=False, description="Ignore bounds, return the last hour")


class SaveReadingsRequest(BaseModel):
    """
    Request body for POST /api/data/{monitor_id}/save.

    Items are raw records ({datetime, laeq, ...}); malformed ones are
    skipped by the store, not rejected here.
    """
    data: list[Any] = Field(..., description="Readings to upsert")


# =============================================================================
# RESPONSE MODELS - What backend returns to frontend
# =============================================================================

class MonitorResponse(BaseModel):
    """A monitor as listed by POST /api/monitors."""
    monitor_id: str
    display_name: str
    location: Optional[str] = None
    status: MonitorStatus = MonitorStatus.ACTIVE
    last_sync_time: Optional[datetime] = None
    sync_status: Optional[SyncOutcome] = None


class UpsertResult(BaseModel):
    """How many readings a batch tried to save, and how many it saved."""
    attempted: int
    saved: int


class InitializeResult(BaseModel):
    """Result of initializing a monitor's cache."""
    initialized: bool
    record_count: int = Field(..., serialization_alias="recordCount")
    start_time: Optional[int] = Field(None, serialization_alias="startTime")
    end_time: Optional[int] = Field(None, serialization_alias="endTime")


class CleanupResult(BaseModel):
    """Per-monitor outcome of the retention sweep."""
    monitor_id: str
    deleted_count: Optional[int] = None
    error: Optional[str] = None


class MonitorStats(BaseModel):
    """Summary of a monitor's readings over a trailing window."""
    monitor_id: str
    window_days: int
    total_records: int
    oldest_record: Optional[datetime] = None
    newest_record: Optional[datetime] = None
    min_laeq: Optional[float] = None
    max_laeq: Optional[float] = None
    avg_laeq: Optional[float] = None
    avg_la10: Optional[float] = None
    avg_la90: Optional[float] = None


class MergedRow(BaseModel):
    """
    One timestamp in a multi-monitor response.

    readings maps monitor_id -> that monitor's values at this timestamp.
    Monitors with no reading at this timestamp are simply absent.
    """
    datetime: str
    readings: dict[str, dict[str, float]]
