"""Shared fixtures: a pinned clock, a temp SQLite store and a fake upstream."""

from __future__ import annotations

import httpx
import pytest
from builders import NOW, FakeSonitus, make_monitor

from app.services import ReadingStore, SonitusClient, SyncOrchestrator


@pytest.fixture
def fake_upstream() -> FakeSonitus:
    return FakeSonitus()


@pytest.fixture
async def client(fake_upstream: FakeSonitus):
    client = SonitusClient(
        base_url="https://sonitus.test/sonitus-api",
        username="dashboard",
        password="secret",
        http_client=httpx.AsyncClient(transport=fake_upstream.transport()),
    )
    yield client
    await client.close()


@pytest.fixture
async def store(tmp_path):
    store = ReadingStore(tmp_path / "noise.db", clock=lambda: NOW)
    await store.open()
    yield store
    await store.close()


@pytest.fixture
async def registered_store(store: ReadingStore) -> ReadingStore:
    await store.register_monitor(make_monitor("10.1.3", "Noise Monitor A"))
    await store.register_monitor(make_monitor("10.1.4", "Noise Monitor B"))
    return store


@pytest.fixture
async def orchestrator(registered_store: ReadingStore, client: SonitusClient):
    orchestrator = SyncOrchestrator(registered_store, client, clock=lambda: NOW)
    yield orchestrator
    await orchestrator.shutdown()
