from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from builders import NOW, FakeSonitus, at, make_monitor, make_record
from fastapi.testclient import TestClient

from app.main import app as fastapi_app
from app.routers import monitors as monitors_module
from app.routers import set_orchestrator
from app.services import PersistenceError, ReadingStore, SonitusClient, SyncOrchestrator

TEN = NOW - timedelta(hours=2)


def _window(start, end) -> dict:
    return {"startTime": int(start.timestamp()), "endTime": int(end.timestamp())}


@pytest.fixture
def upstream() -> FakeSonitus:
    return FakeSonitus()


@pytest.fixture
def orchestrator(tmp_path, upstream: FakeSonitus):
    store = ReadingStore(tmp_path / "api.db", clock=lambda: NOW)
    asyncio.run(store.open())
    asyncio.run(store.register_monitor(make_monitor("10.1.3", "Noise Monitor A")))
    asyncio.run(store.register_monitor(make_monitor("10.1.4", "Noise Monitor B")))
    client = SonitusClient(
        base_url="https://sonitus.test/sonitus-api",
        username="dashboard",
        password="secret",
        http_client=httpx.AsyncClient(transport=upstream.transport()),
    )
    orchestrator = SyncOrchestrator(store, client, clock=lambda: NOW)
    set_orchestrator(orchestrator)
    yield orchestrator
    set_orchestrator(None)
    asyncio.run(client.close())
    asyncio.run(store.close())


@pytest.fixture
def api(orchestrator: SyncOrchestrator) -> TestClient:
    # No lifespan: the orchestrator above is injected directly
    return TestClient(fastapi_app)


def _seed(orchestrator: SyncOrchestrator, monitor_id: str, records: list) -> None:
    asyncio.run(orchestrator.store.upsert(monitor_id, records))


def test_root_and_health(api: TestClient) -> None:
    assert api.get("/").json()["name"] == "Noise Monitor Dashboard API"
    assert api.get("/health").json()["status"] == "healthy"


def test_requests_before_startup_get_500() -> None:
    set_orchestrator(None)
    response = TestClient(fastapi_app).post("/api/monitors")
    assert response.status_code == 500


def test_list_monitors(api: TestClient) -> None:
    response = api.post("/api/monitors")

    assert response.status_code == 200
    body = response.json()
    assert [m["monitor_id"] for m in body] == ["10.1.3", "10.1.4"]
    assert body[0]["display_name"] == "Noise Monitor A"


def test_refresh_monitors(api: TestClient, upstream: FakeSonitus) -> None:
    response = api.post("/api/monitors/refresh")

    assert response.status_code == 200
    assert [m["display_name"] for m in response.json()] == [
        "Noise Monitor A - Ballymun",
        "Noise Monitor B - Dolphins Barn",
    ]


def test_single_monitor_readings_are_tagged(api: TestClient, orchestrator: SyncOrchestrator, upstream: FakeSonitus) -> None:
    _seed(orchestrator, "10.1.3", [make_record(TEN, laeq=50.0), make_record(TEN + timedelta(minutes=5))])

    response = api.post("/api/data/10.1.3", json=_window(TEN, TEN + timedelta(minutes=10)))

    assert response.status_code == 200
    rows = response.json()
    assert [r["datetime"] for r in rows] == ["2026-10-18 10:00:00", "2026-10-18 10:05:00"]
    assert rows[0]["laeq"] == 50.0
    assert rows[0]["monitorId"] == "10.1.3"
    assert rows[0]["displayName"] == "Noise Monitor A"
    assert upstream.calls == []


def test_single_monitor_with_no_data_anywhere_is_404(api: TestClient) -> None:
    response = api.post("/api/data/10.1.3", json=_window(TEN, NOW))
    assert response.status_code == 404


def test_multi_monitor_rows_are_merged(api: TestClient, orchestrator: SyncOrchestrator) -> None:
    _seed(orchestrator, "10.1.3", [make_record(TEN), make_record(TEN + timedelta(minutes=5))])
    _seed(orchestrator, "10.1.4", [make_record(TEN + timedelta(minutes=5), laeq=70.0)])

    response = api.post("/api/data/10.1.3,10.1.4", json=_window(TEN, TEN + timedelta(minutes=10)))

    assert response.status_code == 200
    body = response.json()
    assert [m["monitorId"] for m in body["monitors"]] == ["10.1.3", "10.1.4"]
    assert set(body["data"][0]["readings"]) == {"10.1.3"}
    assert body["data"][1]["readings"]["10.1.4"]["laeq"] == 70.0
    assert body["errors"] == {}


def test_multi_monitor_partial_failure_is_reported(api: TestClient, orchestrator: SyncOrchestrator, upstream: FakeSonitus) -> None:
    _seed(orchestrator, "10.1.3", [make_record(TEN)])
    upstream.failing_monitors.add("10.1.4")

    response = api.post("/api/data/10.1.3,10.1.4", json=_window(TEN, NOW))

    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 1
    assert "10.1.4" in body["errors"]


def test_too_many_monitors_is_400(api: TestClient, upstream: FakeSonitus) -> None:
    ids = ",".join(f"10.1.{i}" for i in range(6))

    response = api.post(f"/api/data/{ids}", json=_window(TEN, NOW))

    assert response.status_code == 400
    assert "Maximum 5" in response.json()["error"]
    assert upstream.calls == []


def test_window_older_than_a_week_is_400(api: TestClient) -> None:
    response = api.post("/api/data/10.1.3", json=_window(NOW - timedelta(days=8), NOW))
    assert response.status_code == 400


def test_missing_window_without_realtime_is_400(api: TestClient) -> None:
    assert api.post("/api/data/10.1.3").status_code == 400


def test_unknown_monitor_is_404(api: TestClient) -> None:
    response = api.post("/api/data/99.9.9", json=_window(TEN, NOW))

    assert response.status_code == 404
    assert response.json() == {"error": "Monitor not found: 99.9.9"}


def test_upstream_down_is_502(api: TestClient, upstream: FakeSonitus) -> None:
    upstream.down = True

    response = api.post("/api/data/10.1.3", json={"realtime": True})

    assert response.status_code == 502


def test_initialize(api: TestClient, upstream: FakeSonitus) -> None:
    upstream.readings["10.1.3"] = [make_record(at(hours_ago=h)) for h in (1, 2, 3)]

    first = api.post("/api/data/10.1.3/initialize").json()
    second = api.post("/api/data/10.1.3/initialize").json()

    assert first["initialized"] is True
    assert first["recordCount"] == 3
    assert "startTime" in first and "endTime" in first
    assert second == {"initialized": True, "recordCount": 3}


def test_save_and_latest(api: TestClient) -> None:
    records = [make_record(at(minutes_ago=10)), make_record(at(minutes_ago=5), laeq=61.0), {"datetime": "bad"}]

    saved = api.post("/api/data/10.1.3/save", json={"data": records})
    latest = api.post("/api/data/10.1.3/latest")

    assert saved.status_code == 200
    assert saved.json()["count"] == 3
    assert saved.json()["result"] == {"attempted": 3, "saved": 2}
    assert latest.json()["laeq"] == 61.0
    assert latest.json()["monitorId"] == "10.1.3"


def test_latest_without_data_is_404(api: TestClient) -> None:
    assert api.post("/api/data/10.1.4/latest").status_code == 404


def test_save_retries_persistence_errors(api: TestClient, orchestrator: SyncOrchestrator, monkeypatch) -> None:
    monkeypatch.setattr(monitors_module, "SAVE_RETRY_DELAY", 0)
    real_upsert = orchestrator.store.upsert
    attempts = []

    async def _flaky_upsert(monitor_id, readings):
        attempts.append(monitor_id)
        if len(attempts) < 3:
            raise PersistenceError("database is locked")
        return await real_upsert(monitor_id, readings)

    monkeypatch.setattr(orchestrator.store, "upsert", _flaky_upsert)

    response = api.post("/api/data/10.1.3/save", json={"data": [make_record(at(minutes_ago=1))]})

    assert response.status_code == 200
    assert len(attempts) == 3


def test_save_gives_up_after_three_attempts(api: TestClient, orchestrator: SyncOrchestrator, monkeypatch) -> None:
    monkeypatch.setattr(monitors_module, "SAVE_RETRY_DELAY", 0)
    attempts = []

    async def _broken_upsert(monitor_id, readings):
        attempts.append(monitor_id)
        raise PersistenceError("disk I/O error")

    monkeypatch.setattr(orchestrator.store, "upsert", _broken_upsert)

    response = api.post("/api/data/10.1.3/save", json={"data": [make_record(at(minutes_ago=1))]})

    assert response.status_code == 500
    assert response.json()["detail"]["attempts"] == 3
    assert len(attempts) == 3


def test_stats(api: TestClient, orchestrator: SyncOrchestrator) -> None:
    _seed(orchestrator, "10.1.3", [make_record(at(hours_ago=2), laeq=50.0), make_record(at(hours_ago=1), laeq=60.0)])

    stats = api.post("/api/stats/10.1.3").json()

    assert stats["total_records"] == 2
    assert stats["avg_laeq"] == 55.0


def test_cleanup(api: TestClient, orchestrator: SyncOrchestrator) -> None:
    _seed(orchestrator, "10.1.3", [make_record(NOW - timedelta(days=9)), make_record(TEN)])

    body = api.post("/api/maintenance/cleanup").json()

    assert body["success"] is True
    deleted = {r["monitor_id"]: r["deleted_count"] for r in body["results"]}
    assert deleted == {"10.1.3": 1, "10.1.4": 0}


def test_db_status(api: TestClient) -> None:
    body = api.get("/api/db/status").json()

    assert body["database"]["connection"] is True
    assert {row["monitor_id"] for row in body["sync"]} == {"10.1.3", "10.1.4"}


def test_proxy_passes_upstream_through(api: TestClient, upstream: FakeSonitus) -> None:
    upstream.readings["10.1.3"] = [make_record(at(minutes_ago=5))]

    monitors = api.post("/api/proxy/monitors")
    data = api.post(
        "/api/proxy/data",
        data={"monitor": "10.1.3", "start": int(at(hours_ago=1).timestamp()), "end": int(NOW.timestamp())},
    )

    assert monitors.json() == upstream.monitors
    assert data.json() == [make_record(at(minutes_ago=5))]
    assert all(form["password"] == "secret" for _, form in upstream.calls)


def test_proxy_data_requires_all_fields(api: TestClient) -> None:
    response = api.post("/api/proxy/data", data={"monitor": "10.1.3"})

    assert response.status_code == 400
    assert response.json()["detail"]["required"] == ["monitor", "start", "end"]


def test_cors_preflight_allows_dashboard_origin(api: TestClient) -> None:
    response = api.options(
        "/health",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "GET",
            "Access-Control-Request-Headers": "content-type",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_out_of_range_window_is_400(api: TestClient, upstream: FakeSonitus) -> None:
    response = api.post("/api/data/10.1.3", json={"startTime": 10**12, "endTime": 10**12 + 60})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid startTime/endTime"}
    assert upstream.calls == []
