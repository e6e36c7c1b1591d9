"""
Reading Store
=============

SQLite-backed cache of noise readings.

HOW IT'S LAID OUT:
-----------------
    monitors            - one row per monitor (the registry)
    noise_data_<id>     - one readings table per monitor, keyed by timestamp

Each readings table has the timestamp (unix seconds, UTC) as PRIMARY KEY
plus the eight metric columns. Writing a timestamp that already exists
overwrites its metrics, so saving the same data twice changes nothing.

TABLE NAMES:
-----------
Table names are never built from request input. The store keeps a
registry (storage id -> table name) that only ever contains names built
from validated ids, see app.utils.validation.table_name_for. Asking for a
monitor that isn't in the registry raises MonitorNotFound.

ASYNC:
-----
sqlite3 is blocking, so every public method runs its work in a worker
thread with asyncio.to_thread. One connection is shared behind an RLock;
each upsert batch is one transaction under that lock, so readers never
see half a batch.
"""

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import RLock
from typing import Callable, Iterable, Optional, Union

from pydantic import ValidationError

from app.models import (
    METRIC_FIELDS,
    Monitor,
    MonitorStats,
    MonitorStatus,
    NoiseReading,
    SyncOutcome,
    UpsertResult,
)
from app.services.exceptions import MonitorNotFound, PersistenceError
from app.utils.validation import (
    table_name_for,
    to_storage_id,
    to_upstream_id,
    validate_table_name,
)

logger = logging.getLogger(__name__)


_REGISTRY_SQL = """\
CREATE TABLE IF NOT EXISTS monitors (
    monitor_id      TEXT PRIMARY KEY,
    display_name    TEXT NOT NULL,
    location        TEXT,
    status          TEXT DEFAULT 'active',
    data_table_name TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    last_sync_time  TEXT,
    sync_status     TEXT
);
"""

_METRIC_COLS = ", ".join(METRIC_FIELDS)
_SELECT_COLS = f"timestamp, {_METRIC_COLS}"


def _readings_table_sql(table: str) -> str:
    columns = ",\n".join(f"    {name} REAL NOT NULL" for name in METRIC_FIELDS)
    return (
        f"CREATE TABLE IF NOT EXISTS {table} (\n"
        f"    timestamp INTEGER PRIMARY KEY,\n"
        f"{columns}\n"
        f")"
    )


def _upsert_sql(table: str) -> str:
    placeholders = ", ".join("?" * (len(METRIC_FIELDS) + 1))
    updates = ", ".join(f"{name} = excluded.{name}" for name in METRIC_FIELDS)
    return (
        f"INSERT INTO {table} ({_SELECT_COLS}) VALUES ({placeholders}) "
        f"ON CONFLICT(timestamp) DO UPDATE SET {updates}"
    )


def _to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReadingStore:
    """
    Per-monitor reading tables plus the monitor registry.

    HOW TO USE:
    ----------
    store = ReadingStore(Path("noise.db"))
    await store.open()

    await store.register_monitor(monitor)
    result = await store.upsert("10.1.3", records)
    rows = await store.query_range("10.1.3", start, end)

    await store.close()

    Monitor ids can be passed in either form ("10.1.3" or "10_1_3").
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            db_path: SQLite file (":memory:" works for tests)
            clock: Returns "now" as an aware datetime; defaults to UTC now
        """
        self.db_path = db_path
        self._clock = clock or _utc_now
        self._lock = RLock()
        self._conn: Optional[sqlite3.Connection] = None
        # storage id -> table name, only ever filled from validated ids
        self._tables: dict[str, str] = {}


    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self):
        """Connect, create the registry table and load the table registry."""
        await asyncio.to_thread(self._open_sync)


    def _open_sync(self):
        with self._lock:
            if self._conn is not None:
                return
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")

            with self._cursor() as cur:
                cur.executescript(_REGISTRY_SQL)
                cur.execute("SELECT monitor_id, data_table_name FROM monitors")
                rows = cur.fetchall()

            for storage_id, table in rows:
                if not validate_table_name(table):
                    logger.error(f"Ignoring monitor {storage_id}: bad table name {table!r}")
                    continue
                self._tables[storage_id] = table
                with self._cursor() as cur:
                    cur.execute(_readings_table_sql(table))

            logger.info(f"Reading store opened at {self.db_path} ({len(self._tables)} monitors)")


    async def close(self):
        """Close the connection. Safe to call twice."""
        await asyncio.to_thread(self._close_sync)


    def _close_sync(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Reading store closed")


    @property
    def is_open(self) -> bool:
        return self._conn is not None


    @contextmanager
    def _cursor(self, *, commit: bool = True):
        with self._lock:
            if self._conn is None:
                raise PersistenceError("Reading store is not open")
            cur = self._conn.cursor()
            try:
                yield cur
                if commit:
                    self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cur.close()


    def _table_for(self, monitor_id: str) -> str:
        table = self._tables.get(to_storage_id(monitor_id))
        if table is None:
            raise MonitorNotFound(to_upstream_id(to_storage_id(monitor_id)))
        return table


    # =========================================================================
    # MONITOR REGISTRY
    # =========================================================================

    async def register_monitor(self, monitor: Monitor) -> Monitor:
        """
        Add a monitor (or refresh its name/location/status) and make sure
        its readings table exists.

        Sync bookkeeping (last_sync_time, sync_status) is left alone.

        Raises:
            ValueError: if the id can't be turned into a safe table name
        """
        return await asyncio.to_thread(self._register_monitor_sync, monitor)


    def _register_monitor_sync(self, monitor: Monitor) -> Monitor:
        storage_id = to_storage_id(monitor.monitor_id)
        table = table_name_for(monitor.monitor_id)
        now = self._clock().isoformat()

        with self._cursor() as cur:
            cur.execute(_readings_table_sql(table))
            cur.execute(
                """
                INSERT INTO monitors
                    (monitor_id, display_name, location, status, data_table_name,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(monitor_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    location = excluded.location,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    storage_id,
                    monitor.display_name,
                    monitor.location,
                    monitor.status.value,
                    table,
                    now,
                    now,
                ),
            )
        self._tables[storage_id] = table
        return self._get_monitor_sync(monitor.monitor_id)


    async def get_monitor(self, monitor_id: str) -> Monitor:
        """Get one monitor. Raises MonitorNotFound."""
        return await asyncio.to_thread(self._get_monitor_sync, monitor_id)


    def _get_monitor_sync(self, monitor_id: str) -> Monitor:
        with self._cursor(commit=False) as cur:
            cur.execute(
                "SELECT * FROM monitors WHERE monitor_id = ?",
                (to_storage_id(monitor_id),),
            )
            row = cur.fetchone()
            columns = [c[0] for c in cur.description] if row else []
        if row is None:
            raise MonitorNotFound(to_upstream_id(to_storage_id(monitor_id)))
        return self._row_to_monitor(dict(zip(columns, row)))


    async def list_monitors(self, include_inactive: bool = False) -> list[Monitor]:
        """
        List registered monitors.

        By default only active and unknown-status monitors are returned,
        which is the set the dashboard offers and the sync job walks.
        """
        return await asyncio.to_thread(self._list_monitors_sync, include_inactive)


    def _list_monitors_sync(self, include_inactive: bool) -> list[Monitor]:
        query = "SELECT * FROM monitors"
        if not include_inactive:
            query += " WHERE status IS NULL OR status != 'inactive'"
        query += " ORDER BY display_name"

        with self._cursor(commit=False) as cur:
            cur.execute(query)
            columns = [c[0] for c in cur.description]
            rows = cur.fetchall()
        return [self._row_to_monitor(dict(zip(columns, row))) for row in rows]


    async def mark_inactive(self, monitor_ids: Iterable[str]) -> int:
        """Flip monitors to inactive (we never delete them). Returns how many changed."""
        return await asyncio.to_thread(self._mark_inactive_sync, list(monitor_ids))


    def _mark_inactive_sync(self, monitor_ids: list[str]) -> int:
        now = self._clock().isoformat()
        changed = 0
        with self._cursor() as cur:
            for monitor_id in monitor_ids:
                cur.execute(
                    "UPDATE monitors SET status = 'inactive', updated_at = ? "
                    "WHERE monitor_id = ? AND (status IS NULL OR status != 'inactive')",
                    (now, to_storage_id(monitor_id)),
                )
                changed += cur.rowcount
        return changed


    async def record_sync_outcome(
        self,
        monitor_id: str,
        outcome: SyncOutcome,
        synced_at: Optional[datetime] = None,
    ):
        """
        Update a monitor's sync bookkeeping. Never touches readings.

        last_sync_time only moves forward on a successful sync, so the next
        background run picks up from the last good point. Pass synced_at
        (the end of the window that was fetched) to record exactly where
        that point is; it defaults to now.
        """
        await asyncio.to_thread(
            self._record_sync_outcome_sync, monitor_id, SyncOutcome(outcome), synced_at
        )


    def _record_sync_outcome_sync(
        self, monitor_id: str, outcome: SyncOutcome, synced_at: Optional[datetime] = None
    ):
        self._table_for(monitor_id)
        now = self._clock().isoformat()
        with self._cursor() as cur:
            if outcome == SyncOutcome.SYNCHRONIZED:
                last_sync = (synced_at or self._clock()).astimezone(timezone.utc).isoformat()
                cur.execute(
                    "UPDATE monitors SET last_sync_time = ?, sync_status = ?, updated_at = ? "
                    "WHERE monitor_id = ?",
                    (last_sync, outcome.value, now, to_storage_id(monitor_id)),
                )
            else:
                cur.execute(
                    "UPDATE monitors SET sync_status = ?, updated_at = ? WHERE monitor_id = ?",
                    (outcome.value, now, to_storage_id(monitor_id)),
                )


    @staticmethod
    def _row_to_monitor(row: dict) -> Monitor:
        status = row.get("status")
        try:
            status = MonitorStatus(status) if status else MonitorStatus.UNKNOWN
        except ValueError:
            status = MonitorStatus.UNKNOWN
        return Monitor(
            monitor_id=to_upstream_id(row["monitor_id"]),
            display_name=row["display_name"],
            location=row.get("location"),
            status=status,
            data_table_name=row["data_table_name"],
            created_at=_parse_iso(row.get("created_at")),
            last_sync_time=_parse_iso(row.get("last_sync_time")),
            sync_status=row.get("sync_status"),
        )


    # =========================================================================
    # WRITING READINGS
    # =========================================================================

    async def upsert(
        self,
        monitor_id: str,
        readings: Iterable[Union[NoiseReading, dict]],
    ) -> UpsertResult:
        """
        Save a batch of readings for one monitor.

        Each item is applied on its own, but the whole call is one
        transaction. Malformed items (bad timestamp, non-numeric metric,
        missing field, timestamp in the future) are logged and skipped;
        the rest still commit.

        Args:
            monitor_id: Either id form
            readings: NoiseReading objects or raw {datetime, laeq, ...} dicts

        Returns:
            UpsertResult(attempted=<items given>, saved=<items written>)

        Raises:
            MonitorNotFound: if the monitor isn't registered
            PersistenceError: if the batch can't be committed (rolled back)
        """
        return await asyncio.to_thread(self._upsert_sync, monitor_id, list(readings))


    def _upsert_sync(self, monitor_id: str, items: list) -> UpsertResult:
        table = self._table_for(monitor_id)
        sql = _upsert_sql(table)
        now_epoch = _to_epoch(self._clock())

        rows = []
        for item in items:
            try:
                reading = item if isinstance(item, NoiseReading) else NoiseReading.from_wire(item)
                epoch = _to_epoch(reading.timestamp)
                if epoch > now_epoch:
                    raise ValueError(f"timestamp {reading.datetime_str} is in the future")
                rows.append((epoch, *reading.metrics()))
            except (ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
                logger.warning(f"[{monitor_id}] Skipping malformed reading: {e} ({item!r})")

        saved = 0
        try:
            with self._cursor() as cur:
                for row in rows:
                    try:
                        cur.execute(sql, row)
                        saved += 1
                    except sqlite3.IntegrityError as e:
                        logger.warning(f"[{monitor_id}] Skipping reading at {row[0]}: {e}")
        except sqlite3.Error as e:
            logger.error(f"[{monitor_id}] Batch save failed, rolled back: {e}")
            raise PersistenceError(f"Failed to save readings for {monitor_id}: {e}") from e

        logger.info(f"[{monitor_id}] Saved {saved} of {len(items)} data points")
        return UpsertResult(attempted=len(items), saved=saved)


    async def delete_older_than(self, monitor_id: str, cutoff: datetime) -> int:
        """Delete readings strictly older than cutoff. Returns rows deleted."""
        return await asyncio.to_thread(self._delete_older_than_sync, monitor_id, cutoff)


    def _delete_older_than_sync(self, monitor_id: str, cutoff: datetime) -> int:
        table = self._table_for(monitor_id)
        try:
            with self._cursor() as cur:
                cur.execute(f"DELETE FROM {table} WHERE timestamp < ?", (_to_epoch(cutoff),))
                return cur.rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clean readings for {monitor_id}: {e}") from e


    # =========================================================================
    # READING READINGS
    # =========================================================================

    async def query_range(self, monitor_id: str, start: datetime, end: datetime) -> list[NoiseReading]:
        """Readings with start <= timestamp <= end, oldest first."""
        return await asyncio.to_thread(self._query_range_sync, monitor_id, start, end)


    def _query_range_sync(self, monitor_id: str, start: datetime, end: datetime) -> list[NoiseReading]:
        table = self._table_for(monitor_id)
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"SELECT {_SELECT_COLS} FROM {table} "
                f"WHERE timestamp BETWEEN ? AND ? ORDER BY timestamp ASC",
                (_to_epoch(start), _to_epoch(end)),
            )
            rows = cur.fetchall()
        return [self._row_to_reading(row) for row in rows]


    async def query_latest(self, monitor_id: str) -> Optional[NoiseReading]:
        """The newest reading, or None if the table is empty."""
        return await asyncio.to_thread(self._query_latest_sync, monitor_id)


    def _query_latest_sync(self, monitor_id: str) -> Optional[NoiseReading]:
        table = self._table_for(monitor_id)
        with self._cursor(commit=False) as cur:
            cur.execute(f"SELECT {_SELECT_COLS} FROM {table} ORDER BY timestamp DESC LIMIT 1")
            row = cur.fetchone()
        return self._row_to_reading(row) if row else None


    async def count(self, monitor_id: str) -> int:
        """How many readings a monitor has cached."""
        return await asyncio.to_thread(self._count_sync, monitor_id)


    def _count_sync(self, monitor_id: str) -> int:
        table = self._table_for(monitor_id)
        with self._cursor(commit=False) as cur:
            cur.execute(f"SELECT COUNT(*) FROM {table}")
            return int(cur.fetchone()[0])


    async def query_stats(self, monitor_id: str, window_days: int = 7) -> MonitorStats:
        """
        Summary over the trailing window: count, oldest/newest, min/max/avg
        LAeq and the LA10/LA90 averages.
        """
        return await asyncio.to_thread(self._query_stats_sync, monitor_id, window_days)


    def _query_stats_sync(self, monitor_id: str, window_days: int) -> MonitorStats:
        table = self._table_for(monitor_id)
        since = _to_epoch(self._clock() - timedelta(days=window_days))
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"""
                SELECT
                    COUNT(*), MIN(timestamp), MAX(timestamp),
                    MIN(laeq), MAX(laeq), AVG(laeq), AVG(la10), AVG(la90)
                FROM {table}
                WHERE timestamp >= ?
                """,
                (since,),
            )
            row = cur.fetchone()

        return MonitorStats(
            monitor_id=to_upstream_id(to_storage_id(monitor_id)),
            window_days=window_days,
            total_records=row[0],
            oldest_record=_from_epoch(row[1]),
            newest_record=_from_epoch(row[2]),
            min_laeq=row[3],
            max_laeq=row[4],
            avg_laeq=row[5],
            avg_la10=row[6],
            avg_la90=row[7],
        )


    @staticmethod
    def _row_to_reading(row) -> NoiseReading:
        values = dict(zip(METRIC_FIELDS, row[1:]))
        return NoiseReading(timestamp=_from_epoch(row[0]), **values)


    # =========================================================================
    # STATUS REPORTS
    # =========================================================================

    async def database_status(self) -> dict:
        """
        Is the database usable? Reports the registry table and every
        monitor's readings table with its record count.
        """
        return await asyncio.to_thread(self._database_status_sync)


    def _database_status_sync(self) -> dict:
        status = {
            "connection": self.is_open,
            "monitors_table": False,
            "monitor_tables": [],
            "errors": [],
        }
        if not self.is_open:
            return status

        with self._cursor(commit=False) as cur:
            cur.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            existing = {r[0] for r in cur.fetchall()}
        status["monitors_table"] = "monitors" in existing

        for storage_id, table in sorted(self._tables.items()):
            try:
                exists = table in existing
                status["monitor_tables"].append({
                    "monitor_id": to_upstream_id(storage_id),
                    "table_name": table,
                    "exists": exists,
                    "record_count": self._count_sync(storage_id) if exists else 0,
                })
            except sqlite3.Error as e:
                status["errors"].append(f"Error checking table {table}: {e}")
        return status


    async def sync_status(self) -> list[dict]:
        """Per-monitor record counts, data range and last sync outcome."""
        return await asyncio.to_thread(self._sync_status_sync)


    def _sync_status_sync(self) -> list[dict]:
        recent_since = _to_epoch(self._clock() - timedelta(hours=1))
        report = []
        for monitor in self._list_monitors_sync(include_inactive=True):
            try:
                table = self._table_for(monitor.monitor_id)
                with self._cursor(commit=False) as cur:
                    cur.execute(
                        f"SELECT COUNT(*), MIN(timestamp), MAX(timestamp), "
                        f"SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END) FROM {table}",
                        (recent_since,),
                    )
                    total, oldest, latest, recent = cur.fetchone()
                report.append({
                    "monitor_id": monitor.monitor_id,
                    "table_name": table,
                    "total_records": total,
                    "oldest_record": _from_epoch(oldest),
                    "latest_record": _from_epoch(latest),
                    "recent_records": recent or 0,
                    "last_sync_time": monitor.last_sync_time,
                    "sync_status": monitor.sync_status,
                })
            except (sqlite3.Error, MonitorNotFound) as e:
                logger.error(f"Error checking sync status for monitor {monitor.monitor_id}: {e}")
                report.append({"monitor_id": monitor.monitor_id, "error": str(e)})
        return report
