"""Webhook endpoint, event, and delivery API tests."""

import pytest

from conftest import OTHER_TENANT


async def _register(client, **overrides) -> dict:
    body = {"url": "https://hooks.example.com/taxflow", "events": ["filing.status_changed"]}
    body.update(overrides)
    response = await client.post("/api/v1/webhooks/endpoints", json=body)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_secret_is_returned_only_on_creation(client):
    created = await _register(client, headers={"X-Tenant-Ref": "acme"})
    assert len(created["secret"]) == 64
    assert created["retry_policy"] == {"max_retries": 5, "initial_backoff_ms": 2000, "max_backoff_ms": 300000}
    assert created["url"] == "https://hooks.example.com/taxflow"

    endpoint_id = created["endpoint_id"]
    fetched = (await client.get(f"/api/v1/webhooks/endpoints/{endpoint_id}")).json()
    assert "secret" not in fetched
    listed = (await client.get("/api/v1/webhooks/endpoints")).json()
    assert [e["endpoint_id"] for e in listed] == [endpoint_id]
    assert all("secret" not in e for e in listed)


@pytest.mark.asyncio
async def test_wildcard_event_means_subscribe_to_all(client):
    created = await _register(client, events=["*"])
    assert created["subscribe_to_all"] is True
    assert created["events"] == []


@pytest.mark.asyncio
async def test_endpoint_needs_a_subscription(client):
    response = await client.post(
        "/api/v1/webhooks/endpoints", json={"url": "https://hooks.example.com/taxflow", "events": []}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_update_endpoint(client):
    endpoint_id = (await _register(client))["endpoint_id"]
    response = await client.patch(
        f"/api/v1/webhooks/endpoints/{endpoint_id}",
        json={
            "is_active": False,
            "events": ["payment.received", "payment.failed"],
            "retry_policy": {"max_retries": 2, "initial_backoff_ms": 500, "max_backoff_ms": 1000},
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["is_active"] is False
    assert data["events"] == ["payment.failed", "payment.received"]
    assert data["retry_policy"]["max_retries"] == 2

    active = (await client.get("/api/v1/webhooks/endpoints", params={"active_only": True})).json()
    assert active == []


@pytest.mark.asyncio
async def test_test_endpoint_reachable(client, subscriber):
    endpoint_id = (await _register(client))["endpoint_id"]
    response = await client.post(f"/api/v1/webhooks/endpoints/{endpoint_id}/test")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["status_code"] == 200
    assert subscriber.requests[0].headers["X-Webhook-Event"] == "test"


@pytest.mark.asyncio
async def test_test_endpoint_unreachable_records_nothing(client, subscriber):
    endpoint_id = (await _register(client))["endpoint_id"]
    subscriber.refuse()

    response = await client.post(f"/api/v1/webhooks/endpoints/{endpoint_id}/test")
    assert response.status_code == 200
    assert response.json()["success"] is False
    assert "error" in response.json()

    events = (await client.get("/api/v1/webhooks/events")).json()
    assert events["events"] == []
    stats = (await client.get(f"/api/v1/webhooks/endpoints/{endpoint_id}/stats")).json()
    assert stats["stats"]["total_deliveries"] == 0
    assert stats["endpoint"]["failure_count"] == 0


@pytest.mark.asyncio
async def test_publish_event_and_inspect_deliveries(client, pool, queue):
    endpoint_id = (await _register(client, events=["payment.received"]))["endpoint_id"]
    response = await client.post(
        "/api/v1/webhooks/events",
        json={"event_type": "payment.received", "entity_type": "payment", "entity_id": "pay_001", "data": {"amount": 1500}},
    )
    assert response.status_code == 202
    event = response.json()
    assert event["status"] == "pending"

    await pool.drain()

    detail = (await client.get(f"/api/v1/webhooks/events/{event['event_id']}")).json()
    assert detail["event"]["status"] == "delivered"
    [delivery] = detail["deliveries"]
    assert delivery["status"] == "success"
    assert delivery["endpoint_id"] == endpoint_id

    full = (await client.get(f"/api/v1/webhooks/deliveries/{delivery['delivery_id']}")).json()
    assert full["request_payload"]["data"] == {"amount": 1500}
    assert full["signature"]

    correlated = (await client.get(f"/api/v1/webhooks/events/correlation/{event['correlation_id']}")).json()
    assert [e["event_id"] for e in correlated] == [event["event_id"]]

    listing = (await client.get(f"/api/v1/webhooks/endpoints/{endpoint_id}/deliveries")).json()
    assert listing["count"] == 1

    stats = (await client.get(f"/api/v1/webhooks/endpoints/{endpoint_id}/stats")).json()
    assert stats["stats"]["success_rate"] == 100
    assert stats["endpoint"]["success_count"] == 1

    totals = (await client.get("/api/v1/webhooks/stats")).json()
    assert totals["events"]["delivered"] == 1
    assert totals["deliveries"]["success"] == 1


@pytest.mark.asyncio
async def test_publish_rejects_wildcard_event_type(client):
    response = await client.post(
        "/api/v1/webhooks/events",
        json={"event_type": "*", "entity_type": "payment", "entity_id": "pay_001"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_retry_of_successful_delivery_is_rejected(client, pool):
    await _register(client, events=["payment.received"])
    event = (await client.post(
        "/api/v1/webhooks/events",
        json={"event_type": "payment.received", "entity_type": "payment", "entity_id": "pay_001"},
    )).json()
    await pool.drain()
    delivery_id = (await client.get(f"/api/v1/webhooks/events/{event['event_id']}")).json()["deliveries"][0]["delivery_id"]

    response = await client.post(f"/api/v1/webhooks/deliveries/{delivery_id}/retry")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_manual_retry_of_failed_delivery_is_queued(client, pool, queue, subscriber):
    await _register(client, events=["payment.received"], retry_policy={"max_retries": 1, "initial_backoff_ms": 1000, "max_backoff_ms": 1000})
    subscriber.fail_with(500)
    event = (await client.post(
        "/api/v1/webhooks/events",
        json={"event_type": "payment.received", "entity_type": "payment", "entity_id": "pay_001"},
    )).json()
    await pool.drain()
    detail = (await client.get(f"/api/v1/webhooks/events/{event['event_id']}")).json()
    assert detail["event"]["status"] == "failed"
    delivery_id = detail["deliveries"][0]["delivery_id"]

    response = await client.post(f"/api/v1/webhooks/deliveries/{delivery_id}/retry")
    assert response.status_code == 202
    assert response.json()["status"] == "queued"
    [job] = queue.pending("webhooks")
    assert job.payload == {"delivery_id": delivery_id, "manual": True}
    assert job.job_id == response.json()["job_id"]


@pytest.mark.asyncio
async def test_delete_is_soft_once_deliveries_exist(client, pool):
    unused = (await _register(client))["endpoint_id"]
    response = await client.delete(f"/api/v1/webhooks/endpoints/{unused}")
    assert response.json() == {"endpoint_id": unused, "deleted": True, "deactivated": False}
    assert (await client.get(f"/api/v1/webhooks/endpoints/{unused}")).status_code == 404

    used = (await _register(client, events=["payment.received"]))["endpoint_id"]
    await client.post(
        "/api/v1/webhooks/events",
        json={"event_type": "payment.received", "entity_type": "payment", "entity_id": "pay_001"},
    )
    await pool.drain()
    response = await client.delete(f"/api/v1/webhooks/endpoints/{used}")
    assert response.json() == {"endpoint_id": used, "deleted": False, "deactivated": True}
    assert (await client.get(f"/api/v1/webhooks/endpoints/{used}")).json()["is_active"] is False


@pytest.mark.asyncio
async def test_endpoints_are_tenant_scoped(client, make_endpoint):
    foreign = await make_endpoint(tenant_id=OTHER_TENANT)
    assert (await client.get(f"/api/v1/webhooks/endpoints/{foreign}")).status_code == 404
    assert (await client.post(f"/api/v1/webhooks/endpoints/{foreign}/test")).status_code == 404
    assert (await client.get("/api/v1/webhooks/endpoints")).json() == []


async def _publish_payment(client) -> str:
    response = await client.post(
        "/api/v1/webhooks/events",
        json={"event_type": "payment.received", "entity_type": "payment", "entity_id": "pay_001"},
    )
    return response.json()["event_id"]


@pytest.mark.asyncio
@pytest.mark.parametrize("deactivate", ["patch", "delete"])
async def test_deactivating_endpoint_settles_waiting_events(client, pool, clock, subscriber, deactivate):
    endpoint_id = (await _register(
        client,
        events=["payment.received"],
        retry_policy={"max_retries": 3, "initial_backoff_ms": 1000, "max_backoff_ms": 300000},
    ))["endpoint_id"]
    subscriber.fail_with(500)
    event_id = await _publish_payment(client)
    await pool.drain()
    assert (await client.get(f"/api/v1/webhooks/events/{event_id}")).json()["event"]["status"] == "processing"

    if deactivate == "patch":
        response = await client.patch(f"/api/v1/webhooks/endpoints/{endpoint_id}", json={"is_active": False})
    else:
        response = await client.delete(f"/api/v1/webhooks/endpoints/{endpoint_id}")
    assert response.status_code == 200

    detail = (await client.get(f"/api/v1/webhooks/events/{event_id}")).json()
    assert detail["event"]["status"] == "delivered"

    # The queued retry finds the endpoint inactive and sends nothing
    clock.advance(10)
    await pool.drain()
    assert len(subscriber.requests) == 1
    assert (await client.get(f"/api/v1/webhooks/events/{event_id}")).json()["event"]["status"] == "delivered"


@pytest.mark.asyncio
async def test_deleting_endpoint_before_first_attempt_settles_event(client, pool):
    endpoint_id = (await _register(client, events=["payment.received"]))["endpoint_id"]
    event_id = await _publish_payment(client)
    # Dispatch only; the delivery job stays queued
    assert await pool.run_once()
    assert (await client.get(f"/api/v1/webhooks/events/{event_id}")).json()["event"]["status"] == "processing"

    response = await client.delete(f"/api/v1/webhooks/endpoints/{endpoint_id}")
    assert response.json()["deleted"] is True
    assert (await client.get(f"/api/v1/webhooks/events/{event_id}")).json()["event"]["status"] == "delivered"


@pytest.mark.asyncio
async def test_other_updates_leave_open_events_alone(client, pool, subscriber):
    endpoint_id = (await _register(client, events=["payment.received"]))["endpoint_id"]
    subscriber.fail_with(500)
    event_id = await _publish_payment(client)
    await pool.drain()

    response = await client.patch(f"/api/v1/webhooks/endpoints/{endpoint_id}", json={"description": "Ledger sync"})
    assert response.status_code == 200
    assert (await client.get(f"/api/v1/webhooks/events/{event_id}")).json()["event"]["status"] == "processing"
