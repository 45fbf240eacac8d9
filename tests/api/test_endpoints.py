"""
API endpoint tests
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_db
from api.main import app
from sync.client import UpstreamClient
from sync.orchestrator import RunRegistry, SyncOrchestrator
from sync.rate_limiter import TokenBucket
from sync.scheduler import SyncScheduler


@pytest.fixture
def sync_scheduler(session_factory, tenant_config, upstream_stub, order_factory, fast_sleep):
    stub = upstream_stub(pages={"orders": [[order_factory(1), order_factory(2, total_price="oops")]]})
    orchestrator = SyncOrchestrator(
        session_factory,
        registry=RunRegistry(),
        client_factory=lambda tenant: UpstreamClient(
            tenant,
            limiter=TokenBucket(100, 100.0),
            transport=stub.transport,
            sleep=fast_sleep,
        ),
    )
    return SyncScheduler(orchestrator, [tenant_config])


@pytest_asyncio.fixture
async def client(session_factory, sync_scheduler):
    """Create test client with database override"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.sync = sync_scheduler

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()
    app.state.sync = None


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["runs"] == "/runs"


@pytest.mark.asyncio
async def test_health_endpoint_database_connected(client):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["scheduler_running"] is False
    assert data["tenants"][0]["tenant_id"] == "acme"
    assert data["tenants"][0]["last_status"] is None


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"
    assert "X-API-Latency-ms" in response.headers


@pytest.mark.asyncio
async def test_manual_sync_and_run_drill_down(client):
    response = await client.post("/tenants/acme/sync", params={"wait": "true"})

    assert response.status_code == 202
    data = response.json()
    assert data["accepted"] is True
    summary = data["summary"]
    assert summary["status"] == "partial"
    assert summary["triggered_by"] == "manual"
    assert (summary["records_total"], summary["records_success"], summary["records_failed"]) == (2, 1, 1)

    runs = (await client.get("/runs", params={"tenant_id": "acme"})).json()
    assert [r["id"] for r in runs] == [summary["log_id"]]
    assert runs[0]["child_log_count"] == 4

    detail = await client.get(f"/runs/{summary['log_id']}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["status"] == "partial"
    assert len(body["children"]) == 4
    assert body["context"]["tenant_id"] == "acme"

    health = (await client.get("/health")).json()
    assert health["tenants"][0]["last_status"] == "partial"
    assert health["tenants"][0]["last_log_id"] == summary["log_id"]


@pytest.mark.asyncio
async def test_manual_sync_in_background(client, sync_scheduler):
    response = await client.post("/tenants/acme/sync", params={"full": "true"})

    assert response.status_code == 202
    data = response.json()
    assert data["correlation_id"]
    assert data["full_sync"] is True
    assert data["summary"] is None

    await asyncio.gather(*list(sync_scheduler._tasks))
    runs = (await client.get("/runs")).json()
    assert runs[0]["correlation_id"] == data["correlation_id"]
    assert runs[0]["flow_type"] == "sync_full"


@pytest.mark.asyncio
async def test_sync_unknown_tenant(client):
    response = await client.post("/tenants/initech/sync")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sync_rejected_while_running(client, sync_scheduler):
    sync_scheduler.orchestrator.registry.register("acme")

    response = await client.post("/tenants/acme/sync", params={"wait": "true"})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancel(client, sync_scheduler):
    idle = (await client.post("/tenants/acme/cancel")).json()
    assert idle["cancel_requested"] is False

    event = sync_scheduler.orchestrator.registry.register("acme")
    running = (await client.post("/tenants/acme/cancel")).json()

    assert running["cancel_requested"] is True
    assert event.is_set()
    assert (await client.post("/tenants/initech/cancel")).status_code == 404


@pytest.mark.asyncio
async def test_run_not_found(client):
    response = await client.get("/runs/9999")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_runs_limit_validation(client):
    response = await client.get("/runs", params={"limit": 0})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_sync_unavailable_without_scheduler(client):
    app.state.sync = None

    response = await client.post("/tenants/acme/sync")

    assert response.status_code == 503
