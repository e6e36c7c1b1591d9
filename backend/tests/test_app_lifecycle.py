from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import HTTPException

from app import main as main_module
from app.routers import get_orchestrator
from app.services import SonitusClient, UpstreamUnavailable


@pytest.mark.asyncio
async def test_lifespan_survives_upstream_outage_and_closes_store(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(main_module.Config, "DB_PATH", str(tmp_path / "noise.db"))
    monkeypatch.setattr(main_module.Config, "ENABLE_BACKGROUND_SYNC", False)

    async def _unreachable(self):
        raise UpstreamUnavailable("Cannot reach upstream API")

    monkeypatch.setattr(SonitusClient, "list_monitors", _unreachable)

    app = main_module.app
    async with app.router.lifespan_context(app):
        orchestrator = get_orchestrator()
        assert orchestrator.store.is_open
        assert not orchestrator.scheduler.running

    assert not orchestrator.store.is_open
    assert (tmp_path / "noise.db").exists()
    with pytest.raises(HTTPException):
        get_orchestrator()
