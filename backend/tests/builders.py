"""Shared builders for the noise monitor test suite.

- ``NOW``            – pinned "current time" every clock in the tests returns
- ``make_record``    – one upstream-style reading dict
- ``make_monitor``   – a Monitor ready to register
- ``FakeSonitus``    – in-memory Sonitus API behind an httpx.MockTransport
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qsl

import httpx

from app.models import DATETIME_FORMAT, METRIC_FIELDS, Monitor, parse_timestamp

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def at(hours_ago: float = 0.0, minutes_ago: float = 0.0) -> datetime:
    return NOW - timedelta(hours=hours_ago, minutes=minutes_ago)


def make_record(when: datetime, laeq: float = 55.0, **overrides: Any) -> dict[str, Any]:
    """Reading dict in the upstream wire shape (values sent as strings, like upstream)."""
    record: dict[str, Any] = {"datetime": when.strftime(DATETIME_FORMAT)}
    for offset, name in enumerate(METRIC_FIELDS):
        record[name] = str(laeq + offset)
    record.update(overrides)
    return record


def make_monitor(monitor_id: str = "10.1.3", name: str = "Noise Monitor A") -> Monitor:
    return Monitor(monitor_id=monitor_id, display_name=name, location="Ballymun")


UPSTREAM_MONITORS = [
    {"serial_number": "10.1.4", "label": "Noise Monitor B", "location": "Dolphins Barn"},
    {"serial_number": "10.1.3", "label": "Noise Monitor A", "location": "Ballymun"},
    {"serial_number": "20.1.1", "label": "Air Quality Station", "location": "Rathmines"},
]


class FakeSonitus:
    """Records every call and answers like the Sonitus API."""

    def __init__(self) -> None:
        self.monitors: Any = list(UPSTREAM_MONITORS)
        self.readings: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.down = False
        self.failing_monitors: set[str] = set()

    def data_calls(self) -> list[dict[str, str]]:
        return [form for path, form in self.calls if path.endswith("/api/data")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.calls.append((request.url.path, form))

        if self.down:
            return httpx.Response(503, text="Service Unavailable")

        if request.url.path.endswith("/api/monitors"):
            return httpx.Response(200, json=self.monitors)

        if request.url.path.endswith("/api/data"):
            monitor = form.get("monitor", "")
            if monitor in self.failing_monitors:
                return httpx.Response(500, text="boom")
            start, end = int(form["start"]), int(form["end"])
            records = [
                r for r in self.readings.get(monitor, [])
                if start <= parse_timestamp(r["datetime"]).timestamp() <= end
            ]
            return httpx.Response(200, json=records)

        return httpx.Response(404, text="not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)
