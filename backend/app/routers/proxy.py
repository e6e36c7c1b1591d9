"""
Upstream Proxy Router
=====================

Passes requests straight through to the Sonitus API, adding the server's
static credentials. The browser never sees the username/password.

Endpoints:
  POST /api/proxy/monitors  - Raw monitor list
  POST /api/proxy/data      - Raw readings (form fields: monitor, start, end)

Nothing here touches the cache. Use /api/data for cached reads.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException

from app.routers.monitors import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proxy", tags=["proxy"])


@router.post("/monitors")
async def proxy_monitors(orchestrator = Depends(get_orchestrator)):
    """Monitor list exactly as the upstream API returns it."""
    logger.info("Fetching monitors from upstream API...")
    data = await orchestrator.client.raw_monitors()
    return data


@router.post("/data")
async def proxy_data(
    monitor: Optional[str] = Form(None),
    start: Optional[int] = Form(None),
    end: Optional[int] = Form(None),
    orchestrator = Depends(get_orchestrator),
):
    """
    Readings exactly as the upstream API returns them.

    Send us (form-encoded):
    - monitor: upstream monitor id (like "10.1.3")
    - start / end: unix seconds
    """
    if not monitor or start is None or end is None:
        raise HTTPException(
            status_code=400,
            detail={"error": "Missing required parameters", "required": ["monitor", "start", "end"]},
        )

    logger.info(f"Proxy data request: monitor={monitor} start={start} end={end}")
    data = await orchestrator.client.raw_readings(monitor, start, end)
    if isinstance(data, list):
        logger.info(f"[{monitor}] Upstream returned {len(data)} data points")
    return data
