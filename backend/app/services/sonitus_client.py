"""
Sonitus API Client
==================

Talks to the third-party noise monitoring API (Sonitus, run for Dublin City).

WHAT THIS DOES:
--------------
1. Lists the monitors the API knows about
2. Grabs readings for one monitor over a time range
3. Cleans up the response so the rest of the app sees one shape

HOW THE API WORKS:
-----------------
Both calls are form-encoded POSTs with a static username/password:

    POST {base}/api/monitors   username, password
    POST {base}/api/data       username, password, monitor, start, end

start/end are unix seconds. Responses are JSON arrays of plain records,
sometimes wrapped as {"monitors": [...]} or {"measurements": [...]}.

THE DATA FLOW:
-------------
    Sonitus API
        |
        | POST /api/data (form)
        v
    [This Client Normalizes Records]
        |
        v
    [SyncOrchestrator persists them]
"""

import httpx
import logging
from datetime import datetime, timezone
from typing import Optional

from app.models import Monitor, MonitorStatus
from app.services.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class SonitusClient:
    """
    Async client for the Sonitus API.

    HOW TO USE:
    ----------
    client = SonitusClient(base_url, username, password)

    monitors = await client.list_monitors()
    records = await client.fetch_readings("10.1.3", start, end)

    await client.close()

    Every network or HTTP failure comes out as UpstreamUnavailable.
    """

    DEFAULT_BASE_URL = "https://data.smartdublin.ie/sonitus-api"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        username: str = "",
        password: str = "",
        request_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Set up the client.

        Args:
            base_url: API root, without trailing slash
            username: Static API username (forwarded on every call)
            password: Static API password
            request_timeout: Seconds to wait for the API before giving up
            http_client: Pre-built client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.http_client = http_client or httpx.AsyncClient(timeout=request_timeout)


    async def _post(self, endpoint: str, params: dict):
        """
        POST a form to the API and return the decoded JSON.

        Credentials are added here so callers never handle them.
        """
        url = f"{self.base_url}{endpoint}"
        form = {"username": self.username, "password": self.password, **params}

        try:
            response = await self.http_client.post(url, data=form)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Sonitus request to {endpoint} timed out: {e}")
            raise UpstreamUnavailable(f"Upstream request to {endpoint} timed out") from e
        except httpx.HTTPStatusError as e:
            error_body = e.response.text[:500]
            logger.error(
                f"Sonitus request to {endpoint} failed - HTTP {e.response.status_code}\n"
                f"Response: {error_body}"
            )
            raise UpstreamUnavailable(
                f"Upstream returned HTTP {e.response.status_code} for {endpoint}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Sonitus request to {endpoint} failed: {e}")
            raise UpstreamUnavailable(f"Cannot reach upstream API: {e}") from e
        except ValueError as e:
            # Body was not JSON
            logger.error(f"Sonitus response from {endpoint} was not JSON: {e}")
            raise UpstreamUnavailable(f"Upstream sent an invalid response for {endpoint}") from e


    # =========================================================================
    # RAW CALLS (used by the proxy router)
    # =========================================================================

    async def raw_monitors(self):
        """Monitor list exactly as the API returns it."""
        return await self._post("/api/monitors", {})


    async def raw_readings(self, monitor: str, start: int, end: int):
        """Readings exactly as the API returns them."""
        return await self._post(
            "/api/data",
            {"monitor": monitor, "start": str(int(start)), "end": str(int(end))},
        )


    # =========================================================================
    # NORMALIZED CALLS
    # =========================================================================

    async def list_monitors(self) -> list[Monitor]:
        """
        Get the noise monitors the API knows about.

        The API lists every kind of monitor; we keep the ones whose label
        mentions "noise". Results are sorted by display name.
        """
        data = await self.raw_monitors()
        records = data if isinstance(data, list) else (data or {}).get("monitors", [])

        monitors = []
        for record in records:
            monitor = self.parse_monitor(record)
            if monitor is not None:
                monitors.append(monitor)

        monitors.sort(key=lambda m: m.display_name)
        logger.info(f"Retrieved {len(monitors)} noise monitors from upstream")
        return monitors


    @staticmethod
    def parse_monitor(record) -> Optional[Monitor]:
        """Turn one upstream monitor record into a Monitor (None if unusable)."""
        if not isinstance(record, dict):
            return None

        label = record.get("label")
        serial = record.get("serial_number")
        if not label or not serial or "noise" not in str(label).lower():
            return None

        location = record.get("location") or "Unknown"
        return Monitor(
            monitor_id=str(serial),
            display_name=f"{label} - {location}",
            location=location,
            status=MonitorStatus.ACTIVE,
        )


    async def fetch_readings(self, monitor_id: str, start: datetime, end: datetime) -> list[dict]:
        """
        Get raw reading records for one monitor in [start, end].

        Args:
            monitor_id: Upstream (dot) form of the id
            start: Window start (aware datetime)
            end: Window end (aware datetime)

        Returns:
            List of dicts like {"datetime": "2026-10-18 10:00:00", "laeq": "55.1", ...}
            Records are not validated here - the store skips malformed ones.
        """
        start_ts = int(start.astimezone(timezone.utc).timestamp())
        end_ts = int(end.astimezone(timezone.utc).timestamp())

        data = await self.raw_readings(monitor_id, start_ts, end_ts)
        records = data if isinstance(data, list) else (data or {}).get("measurements", [])
        records = [r for r in records if isinstance(r, dict)]

        logger.info(f"[{monitor_id}] Retrieved {len(records)} records from upstream")
        return records


    async def close(self):
        """
        Clean up when we're done.

        Called when the server shuts down.
        """
        await self.http_client.aclose()
