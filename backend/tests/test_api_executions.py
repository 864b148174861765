# tests/test_api_executions.py
import pytest
import pytest_asyncio

TENANT = "client_001"
HEADERS = {"X-Tenant-Id": TENANT}


@pytest_asyncio.fixture()
async def seeded(add_tenant, seed_scheme, make_scheme):
    await add_tenant(TENANT)
    await seed_scheme(TENANT, make_scheme())
    return TENANT


async def run(client, mode="simulation", scheme_id="SCH_001", headers=HEADERS):
    return await client.post(
        "/api/v1/executions/run",
        json={"schemeId": scheme_id, "mode": mode},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_root(client):
    res = await client.get("/")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_simulation_run_returns_camel_case_outcome(client, seeded):
    res = await run(client)

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["runId"].startswith("RUN_")
    assert body["state"] == "Completed"
    assert body["summary"]["totalAgents"] == 10
    assert body["summary"]["passed"] == 10
    assert "totalCommission" in body["summary"]
    assert body["postProcessingStatus"] is None


@pytest.mark.asyncio
async def test_missing_tenant_header_is_rejected(client, seeded):
    res = await run(client, headers={})

    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "TENANT_ID_REQUIRED"


@pytest.mark.asyncio
async def test_second_production_run_conflicts_with_run_id(client, seeded):
    first = await run(client, mode="production")
    assert first.status_code == 200, first.text

    second = await run(client, mode="production")

    assert second.status_code == 409
    detail = second.json()["detail"]
    assert detail["error"] == "PRODUCTION_ALREADY_RUN"
    assert detail["state"] == "Failed"
    assert detail["failedIn"] == "Connected"
    assert detail["runId"] != first.json()["runId"]

    log = await client.get(f"/api/v1/executions/logs/{detail['runId']}", headers=HEADERS)
    assert log.status_code == 200
    assert log.json()["state"] == "Failed"
    assert log.json()["error"]["code"] == "PRODUCTION_ALREADY_RUN"


@pytest.mark.parametrize(
    "mode, scheme_id, status_code, error",
    [
        ("turbo", "SCH_001", 422, "VALIDATION_ERROR"),
        ("simulation", "SCH_404", 404, "SCHEME_NOT_FOUND"),
    ],
)
@pytest.mark.asyncio
async def test_failed_runs_map_to_http_errors(client, seeded, mode, scheme_id, status_code, error):
    res = await run(client, mode=mode, scheme_id=scheme_id)

    assert res.status_code == status_code
    detail = res.json()["detail"]
    assert detail["error"] == error
    assert detail["runId"].startswith("RUN_")


@pytest.mark.asyncio
async def test_unconfigured_tenant(client):
    res = await run(client, headers={"X-Tenant-Id": "ghost"})

    assert res.status_code == 409
    assert res.json()["detail"]["error"] == "TENANT_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_setup_incomplete_tenant(client, add_tenant):
    await add_tenant("client_002", setup_complete=False)

    res = await run(client, headers={"X-Tenant-Id": "client_002"})

    assert res.status_code == 409
    assert res.json()["detail"]["error"] == "TENANT_SETUP_INCOMPLETE"


@pytest.mark.asyncio
async def test_logs_listing_and_detail(client, seeded):
    sim = (await run(client)).json()
    prod = (await run(client, mode="production")).json()

    res = await client.get("/api/v1/executions/logs", params={"schemeId": "SCH_001"}, headers=HEADERS)
    assert res.status_code == 200
    assert [item["runId"] for item in res.json()] == [prod["runId"], sim["runId"]]
    assert res.json()[0]["mode"] == "production"

    detail = await client.get(f"/api/v1/executions/logs/{sim['runId']}", headers=HEADERS)
    assert detail.status_code == 200
    assert len(detail.json()["agents"]) == 10
    assert detail.json()["agents"][0]["agentId"] == "AGENT001"

    other_tenant = await client.get(f"/api/v1/executions/logs/{sim['runId']}", headers={"X-Tenant-Id": "ghost"})
    assert other_tenant.status_code == 409

    missing = await client.get("/api/v1/executions/logs/RUN_000000_0", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "EXECUTION_LOG_NOT_FOUND"


@pytest.mark.asyncio
async def test_production_runs(client, seeded):
    sim = (await run(client)).json()
    prod = (await run(client, mode="production")).json()

    res = await client.get("/api/v1/executions/production-runs", headers=HEADERS)
    assert [item["runId"] for item in res.json()] == [prod["runId"]]

    detail = await client.get(f"/api/v1/executions/production-runs/{prod['runId']}", headers=HEADERS)
    assert detail.status_code == 200
    assert detail.json()["executionLog"]["runId"] == prod["runId"]
    assert detail.json()["schemeInfo"]["status"] == "ProdRun"

    not_production = await client.get(f"/api/v1/executions/production-runs/{sim['runId']}", headers=HEADERS)
    assert not_production.status_code == 404


@pytest.mark.asyncio
async def test_health_endpoints(client, seeded):
    res = await client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"

    await run(client)
    res = await client.get("/api/v1/health/connections")
    body = res.json()
    assert body["count"] == 1
    assert body["connections"][0]["tenantId"] == TENANT
