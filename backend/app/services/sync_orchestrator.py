"""
Sync Orchestrator
=================

This is the BRAIN of the whole operation!

WHAT IT DOES:
------------
1. Answers "give me readings for these monitors in this window"
2. Decides whether to serve from the local cache or go to the Sonitus API
3. Saves whatever it fetched so the next request is served locally
4. Keeps the monitor registry in step with the upstream monitor list
5. Runs a background sync every 5 minutes and a 7-day retention sweep

THE CACHE POLICY:
----------------
For each monitor in a request:
- Cache has ANY rows in the window  -> return them, no upstream call
- Cache has NO rows in the window   -> fetch the whole window upstream,
                                       save it, return what was fetched

Once a window has some data it is trusted as-is, so a gap inside a
partially cached window is not filled by a request. The background sync
is what fills it in.

TIME LIMITS:
-----------
- Only the last 7 days can be queried, and only 7 days are kept
  (RETENTION_DAYS is used for both)
- Realtime requests ignore their bounds and get the last hour
- At most 5 monitors per request
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from app.models import (
    DATETIME_FORMAT,
    CleanupResult,
    InitializeResult,
    MergedRow,
    Monitor,
    NoiseReading,
    SyncOutcome,
)
from app.services.exceptions import InvalidRequest
from app.services.reading_store import ReadingStore
from app.services.sonitus_client import SonitusClient

logger = logging.getLogger(__name__)


# Queryable window and retention horizon. Must stay the same number.
RETENTION_DAYS = 7
REALTIME_WINDOW = timedelta(hours=1)
MAX_MONITORS_PER_REQUEST = 5
SYNC_INTERVAL_SECONDS = 5 * 60


def normalize_records(records: Iterable) -> list[NoiseReading]:
    """
    Parse upstream records into readings, sorted by time.

    Malformed records are dropped. If the same timestamp shows up twice
    the later record wins, same as the store's upsert.
    """
    by_timestamp: dict[datetime, NoiseReading] = {}
    for record in records:
        try:
            reading = record if isinstance(record, NoiseReading) else NoiseReading.from_wire(record)
        except (ValueError, KeyError, TypeError, AttributeError, ValidationError):
            continue
        by_timestamp[reading.timestamp] = reading
    return [by_timestamp[ts] for ts in sorted(by_timestamp)]


def merge_readings(readings_by_monitor: dict[str, list[NoiseReading]]) -> list[MergedRow]:
    """
    Line up several monitors' readings by timestamp.

    Every distinct timestamp from any monitor gets a row. A monitor with no
    reading at that exact timestamp is left out of that row; the row itself
    is always kept.

    Example:
        A has 10:00 and 10:05, B has 10:05
        -> 10:00 {A}, 10:05 {A, B}
    """
    rows: dict[datetime, dict[str, dict[str, float]]] = {}
    for monitor_id, readings in readings_by_monitor.items():
        for reading in readings:
            values = reading.to_wire()
            values.pop("datetime")
            rows.setdefault(reading.timestamp, {})[monitor_id] = values

    return [
        MergedRow(datetime=ts.strftime(DATETIME_FORMAT), readings=rows[ts])
        for ts in sorted(rows)
    ]


class SyncOrchestrator:
    """
    Coordinates the reading cache and the upstream API.

    HOW TO USE:
    ----------
    orchestrator = SyncOrchestrator(store, client)
    orchestrator.start()                      # background sync every 5 min

    data = await orchestrator.get_readings(["10.1.3"], start, end)
    await orchestrator.initialize_monitor("10.1.3")
    await orchestrator.cleanup()

    await orchestrator.shutdown()
    """

    SYNC_JOB_ID = "sync_all_monitors"

    def __init__(
        self,
        store: ReadingStore,
        client: SonitusClient,
        sync_interval: int = SYNC_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Set up the orchestrator.

        Args:
            store: An opened ReadingStore
            client: The Sonitus API client
            sync_interval: Seconds between background syncs. Default is 300.
            clock: Returns "now" as an aware datetime (tests pin it)
        """
        self.store = store
        self.client = client
        self.sync_interval = sync_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # This is the scheduler - it runs the background sync on a timer
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._sync_running = False


    def now(self) -> datetime:
        return self._clock().replace(microsecond=0)


    # =========================================================================
    # READINGS
    # =========================================================================

    def resolve_window(
        self,
        window_start: Optional[datetime],
        window_end: Optional[datetime],
        realtime: bool = False,
    ) -> tuple[datetime, datetime]:
        """
        Work out the window a request actually covers.

        Realtime requests always get [now - 1h, now]. Everything else must
        have start < end and start no older than RETENTION_DAYS.

        Raises:
            InvalidRequest: if the window is missing or out of range
        """
        now = self.now()
        if realtime:
            return now - REALTIME_WINDOW, now

        if window_start is None or window_end is None:
            raise InvalidRequest("Missing required parameters: startTime and endTime")
        if window_start >= window_end:
            raise InvalidRequest("Start time must be before end time")
        if window_start < now - timedelta(days=RETENTION_DAYS):
            raise InvalidRequest(f"Data is only available for the last {RETENTION_DAYS} days")
        return window_start, window_end


    async def _resolve_monitors(self, monitor_ids: list[str]) -> list[Monitor]:
        if not monitor_ids:
            raise InvalidRequest("Please select at least one monitor")
        if len(monitor_ids) > MAX_MONITORS_PER_REQUEST:
            raise InvalidRequest(f"Maximum {MAX_MONITORS_PER_REQUEST} monitors can be selected")

        monitors = []
        for monitor_id in monitor_ids:
            # Raises MonitorNotFound
            monitors.append(await self.store.get_monitor(monitor_id))
        return monitors


    async def get_readings(
        self,
        monitor_ids: list[str],
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        realtime: bool = False,
    ) -> dict[str, list[NoiseReading]]:
        """
        Readings for up to 5 monitors, oldest first per monitor.

        All monitors are fetched concurrently. If any of them fails, the
        first failure is raised once they have all finished.

        Raises:
            InvalidRequest: bad window or too many monitors (nothing touched)
            MonitorNotFound: an id isn't registered
            UpstreamUnavailable: nothing cached and the API call failed
        """
        outcomes = await self._gather_readings(monitor_ids, window_start, window_end, realtime)
        for outcome in outcomes.values():
            if isinstance(outcome, BaseException):
                raise outcome
        return outcomes


    async def get_readings_settled(
        self,
        monitor_ids: list[str],
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        realtime: bool = False,
    ) -> dict[str, dict]:
        """
        Same as get_readings, but one monitor's failure doesn't sink the rest.

        Returns:
            {monitor_id: {"readings": [...]}} or {monitor_id: {"error": "..."}}
        """
        outcomes = await self._gather_readings(monitor_ids, window_start, window_end, realtime)
        settled = {}
        for monitor_id, outcome in outcomes.items():
            if isinstance(outcome, BaseException):
                settled[monitor_id] = {"error": str(outcome), "error_type": type(outcome).__name__}
            else:
                settled[monitor_id] = {"readings": outcome}
        return settled


    async def _gather_readings(self, monitor_ids, window_start, window_end, realtime) -> dict:
        start, end = self.resolve_window(window_start, window_end, realtime)
        monitors = await self._resolve_monitors(monitor_ids)

        logger.info(
            f"Readings request: monitors={[m.monitor_id for m in monitors]} "
            f"start={start.isoformat()} end={end.isoformat()} realtime={realtime}"
        )

        results = await asyncio.gather(
            *(self._readings_for_monitor(m.monitor_id, start, end) for m in monitors),
            return_exceptions=True,
        )
        return {m.monitor_id: result for m, result in zip(monitors, results)}


    async def _readings_for_monitor(
        self, monitor_id: str, start: datetime, end: datetime
    ) -> list[NoiseReading]:
        """Cache first; on a completely empty window, fetch it upstream and save it."""
        cached = await self.store.query_range(monitor_id, start, end)
        if cached:
            logger.debug(f"[{monitor_id}] Serving {len(cached)} cached readings")
            return cached

        logger.info(f"[{monitor_id}] No cached data in window, fetching from upstream...")
        records = await self.client.fetch_readings(monitor_id, start, end)
        # The store refuses future timestamps; only return what it will keep
        now = self.now()
        readings = [r for r in normalize_records(records) if r.timestamp <= now]
        if readings:
            await self.store.upsert(monitor_id, readings)
        return readings


    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    async def initialize_monitor(self, monitor_id: str) -> InitializeResult:
        """
        Make sure a monitor has data cached.

        If its table already has rows, just report the count. Otherwise
        fetch the last 7 days upstream and save them.
        """
        await self.store.get_monitor(monitor_id)
        existing = await self.store.count(monitor_id)
        if existing > 0:
            return InitializeResult(initialized=True, record_count=existing)

        end = self.now()
        start = end - timedelta(days=RETENTION_DAYS)
        logger.info(f"[{monitor_id}] Initializing data for the last {RETENTION_DAYS} days...")

        records = await self.client.fetch_readings(monitor_id, start, end)
        saved = 0
        if records:
            result = await self.store.upsert(monitor_id, records)
            saved = result.saved
        logger.info(f"[{monitor_id}] Initialized {saved} records")

        return InitializeResult(
            initialized=saved > 0,
            record_count=saved,
            start_time=int(start.timestamp()),
            end_time=int(end.timestamp()),
        )


    # =========================================================================
    # MONITOR REGISTRY
    # =========================================================================

    async def refresh_monitors(self) -> list[Monitor]:
        """
        Pull the monitor list from upstream into the registry.

        New monitors are registered (their tables are created), known ones
        get their name/location refreshed, and registered monitors that
        upstream no longer lists are flipped to inactive.
        """
        upstream = await self.client.list_monitors()

        seen = set()
        registered = []
        for monitor in upstream:
            try:
                registered.append(await self.store.register_monitor(monitor))
                seen.add(monitor.monitor_id)
            except ValueError as e:
                logger.warning(f"Skipping upstream monitor {monitor.monitor_id!r}: {e}")

        if not upstream:
            logger.warning("Upstream listed no noise monitors, leaving registry statuses alone")
            return registered

        known = await self.store.list_monitors()
        gone = [m.monitor_id for m in known if m.monitor_id not in seen]
        if gone:
            flipped = await self.store.mark_inactive(gone)
            logger.info(f"Marked {flipped} monitors inactive: {gone}")

        logger.info(f"Monitor registry refreshed: {len(registered)} active monitors")
        return registered


    # =========================================================================
    # RETENTION
    # =========================================================================

    async def cleanup(self) -> list[CleanupResult]:
        """
        Delete readings older than 7 days for every active/unknown monitor.

        Each monitor is handled on its own: if one fails, the error goes in
        its result and the sweep carries on.
        """
        cutoff = self.now() - timedelta(days=RETENTION_DAYS)
        logger.info(f"Starting old data cleanup (cutoff {cutoff.isoformat()})...")

        results = []
        for monitor in await self.store.list_monitors():
            try:
                deleted = await self.store.delete_older_than(monitor.monitor_id, cutoff)
                results.append(CleanupResult(monitor_id=monitor.monitor_id, deleted_count=deleted))
                logger.info(f"[{monitor.monitor_id}] Cleaned {deleted} rows")
            except Exception as e:
                logger.error(f"[{monitor.monitor_id}] Error cleaning data: {e}", exc_info=True)
                results.append(CleanupResult(monitor_id=monitor.monitor_id, error=str(e)))
        return results


    # =========================================================================
    # BACKGROUND SYNC
    # =========================================================================

    async def sync_monitor(self, monitor: Monitor) -> int:
        """
        Bring one monitor up to date: fetch [last sync (or 7 days ago), now)
        and save it. Returns how many readings were saved.
        """
        now = self.now()
        oldest_allowed = now - timedelta(days=RETENTION_DAYS)
        start = monitor.last_sync_time or oldest_allowed
        if start < oldest_allowed:
            start = oldest_allowed

        records = await self.client.fetch_readings(monitor.monitor_id, start, now)
        saved = 0
        if records:
            result = await self.store.upsert(monitor.monitor_id, records)
            saved = result.saved
        # Stamp with the end of the fetched window so the next sweep starts there
        await self.store.record_sync_outcome(
            monitor.monitor_id, SyncOutcome.SYNCHRONIZED, synced_at=now
        )
        return saved


    async def sync_all(self) -> Optional[dict[str, int]]:
        """
        One background sweep over every active monitor, one at a time.

        A failing monitor is logged, marked as failed and skipped; it gets
        another go on the next tick. If the previous sweep is still running
        this one is skipped and None is returned.

        Returns:
            {monitor_id: saved_count} for the monitors that synced
        """
        if self._sync_running:
            logger.warning("Previous sync still running, skipping this tick")
            return None

        self._sync_running = True
        try:
            logger.info("Starting periodic historical data sync...")
            monitors = await self.store.list_monitors()
            if not monitors:
                try:
                    monitors = await self.refresh_monitors()
                except Exception as e:
                    logger.error(f"Could not load monitors from upstream: {e}")
                    return {}

            synced = {}
            for monitor in monitors:
                try:
                    synced[monitor.monitor_id] = await self.sync_monitor(monitor)
                    logger.info(f"[{monitor.monitor_id}] Synced {synced[monitor.monitor_id]} records")
                except Exception as e:
                    logger.error(f"[{monitor.monitor_id}] Sync failed: {e}")
                    try:
                        await self.store.record_sync_outcome(monitor.monitor_id, SyncOutcome.FAILED)
                    except Exception as record_err:
                        logger.error(f"[{monitor.monitor_id}] Could not record sync failure: {record_err}")
            return synced
        finally:
            self._sync_running = False


    def start(self):
        """Start the background sync job. Needs a running event loop."""
        logger.info(f"Starting background sync job (interval: {self.sync_interval}s)")

        self.scheduler.add_job(
            self.sync_all,
            trigger=IntervalTrigger(seconds=self.sync_interval),
            id=self.SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()


    async def shutdown(self):
        """Stop the background job. Closing the store and client is up to the caller."""
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}", exc_info=True)
