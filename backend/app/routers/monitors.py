"""
Monitors API Router
===================

This is where the dashboard's API endpoints live.

HOW IT WORKS:
------------
1. Frontend sends an HTTP request
2. FastAPI routes it to the right function here
3. We call the SyncOrchestrator (or its store) to do the work
4. We send back JSON

Service errors (InvalidRequest, MonitorNotFound, ...) are turned into HTTP
responses by the handlers registered in main.py, so most endpoints here
don't catch anything.

ALL ENDPOINTS:
-------------
POST   /api/monitors                       - List active monitors
POST   /api/monitors/refresh               - Pull the monitor list from upstream
POST   /api/data/{ids}                     - Readings for one or more (comma separated) monitors
POST   /api/data/{id}/initialize           - Cache the last 7 days if the monitor has nothing
POST   /api/data/{id}/save                 - Save readings (retried up to 3 times)
POST   /api/data/{id}/latest               - Newest reading
POST   /api/stats/{id}                     - 7-day stats
POST   /api/maintenance/cleanup            - Delete readings older than 7 days
GET    /api/db/status                      - Database and sync status
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.models import (
    MonitorResponse,
    NoiseReading,
    ReadingsRequest,
    SaveReadingsRequest,
)
from app.services import InvalidRequest, PersistenceError, merge_readings
from app.utils.validation import parse_monitor_ids

logger = logging.getLogger(__name__)


# Create the router - this groups all our monitor endpoints together
router = APIRouter(prefix="/api", tags=["monitors"])


# Save endpoint retry policy: attempt n waits SAVE_RETRY_DELAY * n seconds
SAVE_MAX_ATTEMPTS = 3
SAVE_RETRY_DELAY = 1.0


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================
# Give the endpoints access to the SyncOrchestrator

_orchestrator = None  # This gets set when the app starts


def set_orchestrator(orchestrator):
    """
    Called when the app starts to give us the orchestrator.

    Pass None on shutdown so late requests get a clean 500.
    """
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator():
    """
    Get the orchestrator for use in endpoints.

    Every endpoint function that needs it uses this.
    """
    if _orchestrator is None:
        raise HTTPException(status_code=500, detail="Server not fully started yet")
    return _orchestrator


def _to_datetime(unix_seconds: Optional[int]) -> Optional[datetime]:
    if unix_seconds is None:
        return None
    try:
        return datetime.fromtimestamp(int(unix_seconds), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise InvalidRequest("Invalid startTime/endTime") from e


def _format_reading(reading: NoiseReading, monitor=None) -> dict:
    data = reading.to_wire()
    if monitor is not None:
        data["monitorId"] = monitor.monitor_id
        data["displayName"] = monitor.display_name
    return data


# =============================================================================
# MONITOR ENDPOINTS
# =============================================================================

@router.post("/monitors", response_model=list[MonitorResponse])
async def list_monitors(orchestrator = Depends(get_orchestrator)):
    """
    Get all active monitors.

    These are the monitors the dashboard lets you pick from.
    """
    monitors = await orchestrator.store.list_monitors()
    logger.info(f"Retrieved {len(monitors)} monitors")
    return [MonitorResponse(**m.model_dump()) for m in monitors]


@router.post("/monitors/refresh", response_model=list[MonitorResponse])
async def refresh_monitors(orchestrator = Depends(get_orchestrator)):
    """
    Pull the monitor list from the upstream API.

    New monitors get registered, missing ones are marked inactive.
    """
    monitors = await orchestrator.refresh_monitors()
    return [MonitorResponse(**m.model_dump()) for m in monitors]


# =============================================================================
# DATA ENDPOINTS
# =============================================================================

@router.post("/data/{monitor_ids}")
async def get_data(
    monitor_ids: str,
    request: Optional[ReadingsRequest] = None,
    orchestrator = Depends(get_orchestrator),
):
    """
    Get readings for one monitor, or several separated by commas.

    Send us:
    - startTime / endTime: unix seconds, within the last 7 days
    - realtime: true to ignore the times and get the last hour

    One monitor: a list of readings, each tagged with monitorId/displayName.
    Several monitors: rows lined up by timestamp, plus per-monitor errors
    for any monitor that couldn't be loaded.
    """
    request = request or ReadingsRequest()
    ids = parse_monitor_ids(monitor_ids)
    start = _to_datetime(request.start_time)
    end = _to_datetime(request.end_time)

    logger.info(
        f"Data request: monitors={ids} start={request.start_time} "
        f"end={request.end_time} realtime={request.realtime}"
    )

    if len(ids) == 1:
        result = await orchestrator.get_readings(ids, start, end, request.realtime)
        monitor_id, readings = next(iter(result.items()))
        if not readings:
            raise HTTPException(status_code=404, detail="No data available for the selected time range")
        monitor = await orchestrator.store.get_monitor(monitor_id)
        return [_format_reading(r, monitor) for r in readings]

    settled = await orchestrator.get_readings_settled(ids, start, end, request.realtime)
    readings_by_monitor = {
        monitor_id: outcome["readings"]
        for monitor_id, outcome in settled.items()
        if "readings" in outcome
    }
    errors = {
        monitor_id: outcome["error"]
        for monitor_id, outcome in settled.items()
        if "error" in outcome
    }

    monitors = []
    for monitor_id in settled:
        monitor = await orchestrator.store.get_monitor(monitor_id)
        monitors.append({"monitorId": monitor.monitor_id, "displayName": monitor.display_name})

    return {
        "monitors": monitors,
        "data": [row.model_dump() for row in merge_readings(readings_by_monitor)],
        "errors": errors,
    }


@router.post("/data/{monitor_id}/initialize")
async def initialize_monitor(monitor_id: str, orchestrator = Depends(get_orchestrator)):
    """
    Make sure a monitor has data.

    If it already has readings we just tell you how many. Otherwise we pull
    the last 7 days from upstream and save them.
    """
    result = await orchestrator.initialize_monitor(monitor_id)
    return result.model_dump(by_alias=True, exclude_none=True)


@router.post("/data/{monitor_id}/save")
async def save_data(
    monitor_id: str,
    request: SaveReadingsRequest,
    orchestrator = Depends(get_orchestrator),
):
    """
    Save readings for a monitor.

    Send us:
    - data: list of {datetime, laeq, la10, la90, lafmax, lceq, lcfmax, lc10, lc90}

    Saving the same data twice is harmless. If the database write fails we
    try again (up to 3 attempts, waiting 1s, then 2s).
    """
    logger.info(
        f"Save request: monitor={monitor_id} data_points={len(request.data)} "
        f"sample={request.data[0] if request.data else None}"
    )

    for attempt in range(1, SAVE_MAX_ATTEMPTS + 1):
        try:
            result = await orchestrator.store.upsert(monitor_id, request.data)
            return {
                "success": True,
                "message": "Data saved successfully",
                "count": len(request.data),
                "result": result.model_dump(),
            }
        except PersistenceError as e:
            logger.error(f"Save attempt {attempt} failed: {e}")
            if attempt == SAVE_MAX_ATTEMPTS:
                raise HTTPException(
                    status_code=500,
                    detail={"error": str(e), "attempts": attempt},
                )
            await asyncio.sleep(SAVE_RETRY_DELAY * attempt)


@router.post("/data/{monitor_id}/latest")
async def get_latest(monitor_id: str, orchestrator = Depends(get_orchestrator)):
    """Get the newest reading for a monitor."""
    monitor = await orchestrator.store.get_monitor(monitor_id)
    reading = await orchestrator.store.query_latest(monitor_id)
    if reading is None:
        raise HTTPException(status_code=404, detail="No data available")
    return _format_reading(reading, monitor)


@router.post("/stats/{monitor_id}")
async def get_stats(monitor_id: str, orchestrator = Depends(get_orchestrator)):
    """Count, min/max/avg LAeq and LA10/LA90 averages over the last 7 days."""
    stats = await orchestrator.store.query_stats(monitor_id)
    return stats.model_dump()


# =============================================================================
# MAINTENANCE ENDPOINTS
# =============================================================================

@router.post("/maintenance/cleanup")
async def cleanup(orchestrator = Depends(get_orchestrator)):
    """
    Delete readings older than 7 days for every active monitor.

    A monitor that fails shows up with an "error" instead of a count.
    """
    results = await orchestrator.cleanup()
    return {
        "success": True,
        "message": "Cleanup completed successfully",
        "results": [r.model_dump(exclude_none=True) for r in results],
    }


@router.get("/db/status")
async def db_status(orchestrator = Depends(get_orchestrator)):
    """Database health plus per-monitor sync status."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": await orchestrator.store.database_status(),
        "sync": await orchestrator.store.sync_status(),
    }
