"""Health check and job status endpoint tests."""

import pytest

from taxflow.workers.queue import enqueue_job


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "taxflow-api"
    assert data["version"] == "1.0.0"
    assert response.headers["X-Trace-Id"].startswith("trc_")


@pytest.mark.asyncio
async def test_readiness_reports_checks(client, queue):
    await queue.enqueue("webhooks", "deliver-webhook-event", {"event_id": "whev_1"})
    response = await client.get("/api/v1/health/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"] == {"database": "ok", "redis": "disabled", "queue": "ok (1 pending)"}


@pytest.mark.asyncio
async def test_trace_id_is_propagated(client):
    response = await client.get("/api/v1/health/live", headers={"X-Trace-Id": "trc_fixed"})
    assert response.json() == {"status": "alive"}
    assert response.headers["X-Trace-Id"] == "trc_fixed"


@pytest.mark.asyncio
async def test_job_status(client, session_factory, queue):
    async with session_factory() as session:
        handle = await enqueue_job(session, queue, "webhooks", "deliver-webhook-event", {"event_id": "whev_1"})

    response = await client.get(f"/api/v1/jobs/{handle.job_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["job_id"] == handle.job_id
    assert data["status"] == "queued"
    assert data["job_type"] == "deliver-webhook-event"

    missing = await client.get("/api/v1/jobs/job_missing")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
