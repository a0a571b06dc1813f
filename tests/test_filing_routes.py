"""Filing workflow API tests."""

import pytest

from conftest import OTHER_TENANT


async def _create(client, month="2024-04") -> dict:
    response = await client.post(
        "/api/v1/filings",
        json={"client_id": "cli_001", "financial_year": "2024-25", "month": month},
    )
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_create_and_get_filing(client):
    filing = await _create(client)
    assert filing["workflow_status"] == "draft"

    response = await client.get(f"/api/v1/filings/{filing['filing_id']}")
    assert response.status_code == 200
    assert response.json()["client_id"] == "cli_001"

    listed = await client.get("/api/v1/filings", params={"client_id": "cli_001"})
    assert [f["filing_id"] for f in listed.json()] == [filing["filing_id"]]


@pytest.mark.asyncio
async def test_duplicate_filing_conflicts(client):
    await _create(client)
    response = await client.post(
        "/api/v1/filings",
        json={"client_id": "cli_001", "financial_year": "2024-25", "month": "2024-04"},
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_missing_tenant_header_is_rejected(app):
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anon:
        response = await anon.get("/api/v1/filings", params={"client_id": "cli_001"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"


@pytest.mark.asyncio
async def test_gstr1_flow_records_steps(client, queue):
    filing_id = (await _create(client))["filing_id"]

    started = await client.post(f"/api/v1/filings/{filing_id}/gstr1/start", json={"comment": "Invoices imported"})
    assert started.status_code == 200
    body = started.json()
    assert body["filing"]["workflow_status"] == "prepared"
    assert body["step"]["step_type"] == "gstr1_prepare"
    assert body["step"]["performed_by"] == "usr_preparer"
    assert body["step"]["comments"] == "Invoices imported"
    assert body["event_id"].startswith("whev_")

    await client.post(f"/api/v1/filings/{filing_id}/gstr1/validate")
    filed = await client.post(f"/api/v1/filings/{filing_id}/gstr1/complete", json={"arn": "AA0704240000001"})
    assert filed.json()["filing"]["gstr1_arn"] == "AA0704240000001"
    assert filed.json()["step"]["comments"] == "GSTR-1 filed with ARN: AA0704240000001"

    steps = (await client.get(f"/api/v1/filings/{filing_id}/steps")).json()
    assert [s["step_type"] for s in steps] == ["gstr1_prepare", "gstr1_validate", "gstr1_file"]
    assert len(queue.pending("webhooks")) == 3

    next_steps = (await client.get(f"/api/v1/filings/{filing_id}/next-steps")).json()
    assert next_steps["workflow_status"] == "filed"
    assert "lock_month" in next_steps["available_steps"]


@pytest.mark.asyncio
async def test_generic_transition_rejects_illegal_triple(client):
    filing_id = (await _create(client))["filing_id"]
    response = await client.post(
        f"/api/v1/filings/{filing_id}/transitions",
        json={"from_status": "draft", "to_status": "filed", "step": "gstr1_file"},
    )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_TRANSITION"
    assert error["details"] == {"from_status": "draft", "to_status": "filed", "step": "gstr1_file"}

    filing = (await client.get(f"/api/v1/filings/{filing_id}")).json()
    assert filing["workflow_status"] == "draft"
    assert (await client.get(f"/api/v1/filings/{filing_id}/steps")).json() == []


@pytest.mark.asyncio
async def test_generic_transition_applies_legal_triple(client):
    filing_id = (await _create(client))["filing_id"]
    response = await client.post(
        f"/api/v1/filings/{filing_id}/transitions",
        json={"from_status": "draft", "to_status": "prepared", "step": "gstr1_prepare", "comment": "go"},
    )
    assert response.status_code == 200
    assert response.json()["filing"]["workflow_status"] == "prepared"


@pytest.mark.asyncio
async def test_lock_and_amendment_routes(client, make_filing):
    filing_id = await make_filing(status="filed")

    amended = await client.post(f"/api/v1/filings/{filing_id}/amendment/start", json={"reason": "Missed invoice"})
    assert amended.json()["filing"]["workflow_status"] == "amendment"
    done = await client.post(
        f"/api/v1/filings/{filing_id}/amendment/complete",
        json={"arn": "AC0704240000003", "form_type": "gstr3b"},
    )
    assert done.json()["filing"]["gstr3b_arn"] == "AC0704240000003"

    locked = await client.post(f"/api/v1/filings/{filing_id}/lock", json={"reason": "Closed"})
    assert locked.json()["filing"]["is_locked"] is True
    again = await client.post(f"/api/v1/filings/{filing_id}/lock")
    assert again.status_code == 400

    archived = await client.post(f"/api/v1/filings/{filing_id}/archive")
    assert archived.json()["filing"]["workflow_status"] == "archived"


@pytest.mark.asyncio
async def test_other_tenants_filing_is_not_found(client, make_filing):
    filing_id = await make_filing(tenant_id=OTHER_TENANT)
    response = await client.get(f"/api/v1/filings/{filing_id}")
    assert response.status_code == 404
    response = await client.post(f"/api/v1/filings/{filing_id}/gstr1/start")
    assert response.status_code == 404
