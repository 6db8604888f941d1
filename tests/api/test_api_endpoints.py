"""
API endpoint tests
"""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

import httpx

from api.main import create_app
from ingestion.config_store import RefreshConfigStore
from models.base import DependencyType
from models.refresh_config import RefreshDependency


@pytest_asyncio.fixture
async def client(service, test_settings):
    """ASGI client over an app wired to the test service"""
    app = create_app(service=service, settings=test_settings)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["trigger"] == "/refresh/trigger"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-API-Latency-ms" in response.headers
    assert response.json()["request_id"] == "req-123"


@pytest.mark.asyncio
async def test_request_id_is_minted_when_absent(client):
    response = await client.get("/")

    request_id = response.headers["X-Request-ID"]
    assert len(request_id) == 32
    int(request_id, 16)


@pytest.mark.asyncio
async def test_health_before_first_sync(client):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    checks = {c["name"]: c["status"] for c in data["checks"]}
    assert checks["database_connectivity"] == "pass"
    assert checks["stale_tables"] == "warn"
    assert data["status"] == "degraded"
    assert {t["table_name"] for t in data["tables"]} == {"asin_performance_data", "search_query_performance"}
    assert data["thresholds"]["stale_percentage_max"] == 20


@pytest.mark.asyncio
async def test_health_returns_503_when_store_is_down(client, service):
    service.database.ping = AsyncMock(return_value=False)

    response = await client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "critical"


@pytest.mark.asyncio
async def test_trigger_runs_a_cycle_and_updates_status(client):
    response = await client.post("/refresh/trigger")

    assert response.status_code == 200
    cycle = response.json()["cycle"]
    assert cycle["status"] == "completed"
    assert [t["status"] for t in cycle["tables"]] == ["success", "success"]

    status_response = await client.get("/refresh/status")
    state = status_response.json()["state"]
    assert state["status"] == "idle"
    assert state["scheduler_running"] is False
    assert state["last_cycle"]["cycle_id"] == cycle["cycle_id"]
    assert state["tables"]["public.search_query_performance"]["rows_inserted"] == 12


@pytest.mark.asyncio
async def test_history_after_trigger(client):
    await client.post("/refresh/trigger")

    response = await client.get("/refresh/history", params={"limit": 1})
    filtered = await client.get("/refresh/history", params={"table_name": "search_query_performance"})

    data = response.json()
    assert data["total"] == 2
    assert len(data["items"]) == 1
    assert data["items"][0]["table_name"] == "search_query_performance"
    assert filtered.json()["items"][0]["status"] == "success"


@pytest.mark.asyncio
async def test_history_limit_is_validated(client):
    response = await client.get("/refresh/history", params={"limit": 0})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cyclic_configuration_is_a_conflict(client, service):
    async with service.database.session() as session:
        store = RefreshConfigStore(session)
        parent = await store.get_config("asin_performance_data")
        child = await store.get_config("search_query_performance")
        session.add(RefreshDependency(
            parent_config_id=child.id,
            dependent_config_id=parent.id,
            dependency_type=DependencyType.SOFT,
        ))
        await session.commit()

    response = await client.post("/refresh/trigger")

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "configuration"
    assert "Cyclic" in body["detail"]


@pytest.mark.asyncio
async def test_failed_sync_surfaces_in_errors_and_alerts(client, warehouse):
    warehouse.fail_on_offsets = {0}
    trigger = await client.post("/refresh/trigger")
    assert [t["status"] for t in trigger.json()["cycle"]["tables"]] == ["failed", "blocked"]

    errors = (await client.get("/refresh/errors", params={"category": "network"})).json()
    assert errors["summary"]["total_errors"] == 1
    assert errors["errors"][0]["category"] == "network"
    assert errors["errors"][0]["retryable"] is True

    alerts = (await client.get("/refresh/alerts")).json()
    assert "error_rate" in [a["type"] for a in alerts["alerts"]]
    assert alerts["count"] == len(alerts["alerts"])

    metrics = (await client.get("/refresh/metrics")).json()
    assert metrics["summary"]["runs_by_status"]["failed"] == 1
    assert any(a["type"] == "error_rate" for a in metrics["alerts"])


@pytest.mark.asyncio
async def test_resolve_and_export_errors(client, service):
    detail = await service.error_tracker.track_error("manual check")

    resolved = await client.post(f"/refresh/errors/{detail.id}/resolve", params={"resolution": "done"})
    missing = await client.post("/refresh/errors/err_missing/resolve")
    csv_export = await client.get("/refresh/errors/export", params={"format": "csv"})
    json_export = await client.get("/refresh/errors/export")
    bad_format = await client.get("/refresh/errors/export", params={"format": "xml"})

    assert resolved.status_code == 200
    assert resolved.json()["resolved"] is True
    assert missing.status_code == 404
    assert csv_export.headers["content-type"].startswith("text/csv")
    assert detail.id in csv_export.text
    assert json_export.json()[0]["id"] == detail.id
    assert bad_format.status_code == 422


@pytest.mark.asyncio
async def test_cleanup_endpoint(client):
    await client.post("/refresh/trigger")

    keep_all = await client.post("/refresh/cleanup")
    assert keep_all.json()["days_to_keep"] == 30
    assert keep_all.json()["sync_runs_deleted"] == 0

    negative = await client.post("/refresh/cleanup", params={"days_to_keep": -1})
    assert negative.status_code == 422
