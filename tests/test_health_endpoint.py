import pytest
from httpx import ASGITransport, AsyncClient

from favilla_api.core.settings import settings
from favilla_api.observability.scheduler import get_scheduler_store


@pytest.mark.asyncio
async def test_healthz_is_served_at_root_and_versioned_paths(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        root = await client.get("/healthz")
        versioned = await client.get("/api/v1/healthz")

    assert root.status_code == 200
    assert root.json() == {"status": "ok"}
    assert versioned.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readyz_reports_database_and_disabled_scheduler(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["components"]["database"]["status"] == "ready"
    assert payload["components"]["loyalty_scheduler"]["status"] == "disabled"


class _RunningScheduler:
    is_running = True


@pytest.mark.asyncio
async def test_readyz_flags_failing_loyalty_jobs(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "loyalty_job_scheduler_enabled", True)
    app.state.loyalty_job_scheduler = _RunningScheduler()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        healthy = await client.get("/api/v1/readyz")
        get_scheduler_store().record_run_failure(
            "points-reconciliation",
            "favilla_api.jobs.loyalty.run_points_reconciliation",
            runtime_seconds=0.2,
            attempts=3,
            error="boom",
        )
        failing = await client.get("/api/v1/readyz")

    assert healthy.json()["components"]["loyalty_scheduler"]["status"] == "ready"
    assert healthy.json()["status"] == "ready"

    assert failing.json()["status"] == "error"
    component = failing.json()["components"]["loyalty_scheduler"]
    assert component["status"] == "error"
    assert component["detail"] == "Jobs failing: points-reconciliation"
