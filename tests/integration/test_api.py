"""Integration tests for API endpoints"""

import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from recon_gateway.domain.models import ImportRun
from recon_gateway.domain.state import cursor_key, disabled_key
from recon_gateway.services.run_control import RunRegistry


@pytest.fixture
def served(api_records, source_records):
    """Mock source serving the standard sample records"""
    api_records.extend(source_records)
    return api_records


def start_import(client: TestClient, **body):
    payload = {"account_id": "acc-1", "since": "2024-05-01", "until": "2024-05-31", **body}
    return client.post("/v1/imports", json=payload)


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "recon_import_runs_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_import_wait_returns_summary(client: TestClient, served):
    """Test POST /v1/imports executing inside the request"""
    response = start_import(client, wait=True)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "SUCCESS"
    assert data["fetched"] == 3
    assert data["imported"] == 3
    assert data["errors"] == []


def test_import_runs_in_background(client: TestClient, served):
    """Test 202 with a RUNNING summary, then the finished run on GET"""
    response = start_import(client)

    assert response.status_code == 202
    run_id = response.json()["run_id"]
    assert response.json()["status"] == "RUNNING"

    # TestClient executes background tasks before returning
    run = client.get(f"/v1/imports/{run_id}")
    assert run.status_code == 200
    data = run.json()
    assert data["status"] == "SUCCESS"
    assert data["imported"] == 3
    assert data["trigger"] == "manual"
    assert data["finished_at"] is not None


def test_import_reports_partial_run(client: TestClient, served):
    served.append({"id": "V-BAD", "data": "2024-05-01", "valor_total": "abc"})

    data = start_import(client, wait=True).json()

    assert data["status"] == "PARTIAL"
    assert data["failed"] == 1
    assert data["errors"][0]["external_id"] == "V-BAD"


def test_import_rejects_inverted_window(client: TestClient):
    response = start_import(client, since="2024-06-01", until="2024-05-01")
    assert response.status_code == 422


def test_import_requires_account(client: TestClient):
    response = client.post("/v1/imports", json={"since": "2024-05-01"})
    assert response.status_code == 422


def test_get_unknown_import(client: TestClient):
    response = client.get("/v1/imports/does-not-exist")
    assert response.status_code == 404


def test_history_lists_runs(client: TestClient, served):
    start_import(client, wait=True)
    start_import(client, wait=True)
    start_import(client, account_id="acc-2", wait=True)

    response = client.get("/v1/imports/history", params={"account_id": "acc-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert len(data["runs"]) == 2
    # Newest first: the re-run found everything already imported
    assert data["runs"][0]["skipped_duplicate"] == 3
    assert data["runs"][1]["imported"] == 3


def test_history_filters_by_status(client: TestClient, served, state):
    start_import(client, wait=True)
    state.set(disabled_key("acc-1"), "1")
    start_import(client, wait=True)

    data = client.get("/v1/imports/history", params={"status": "FAILED"}).json()

    assert data["total"] == 1
    assert data["runs"][0]["log"][0]["reason"] == "imports disabled"


def test_history_summary(client: TestClient, served, state):
    start_import(client, wait=True)

    data = client.get("/v1/imports/history/summary", params={"account_id": "acc-1"}).json()

    assert data["total"] == 1
    assert data["by_status"]["SUCCESS"] == 1
    assert data["by_status"]["FAILED"] == 0
    assert data["last_sync"] == state.get(cursor_key("gestao_click", "acc-1")) == "2024-05-31"


def test_cancel_finished_run_conflicts(client: TestClient, served):
    run_id = start_import(client, wait=True).json()["run_id"]

    response = client.post(f"/v1/imports/{run_id}/cancel")

    assert response.status_code == 409


def test_cancel_unknown_run(client: TestClient):
    assert client.post("/v1/imports/missing/cancel").status_code == 404


def test_cancel_running_run(client: TestClient, gateway, state):
    gateway.create_run(
        ImportRun(
            run_id="run-live",
            source="gestao_click",
            account_id="acc-1",
            wallet_id="default",
            trigger="manual",
            started_at=datetime.now(timezone.utc),
        )
    )
    registry = client.app.state.run_registry = RunRegistry(state)
    token = registry.token_for("run-live")

    response = client.post("/v1/imports/run-live/cancel")

    assert response.status_code == 202
    assert response.json() == {"run_id": "run-live", "cancel_requested": True}
    assert token.cancelled


def test_cancel_run_owned_elsewhere(client: TestClient, gateway):
    """Test a RUNNING run this instance is not executing cannot be cancelled here"""
    gateway.create_run(
        ImportRun(
            run_id="run-remote",
            source="gestao_click",
            account_id="acc-1",
            wallet_id="default",
            trigger="manual",
            started_at=datetime.now(timezone.utc),
        )
    )

    assert client.post("/v1/imports/run-remote/cancel").status_code == 409


def test_account_import_toggle(client: TestClient, served):
    assert client.get("/v1/accounts/acc-1/imports").json()["enabled"] is True

    response = client.put("/v1/accounts/acc-1/imports", json={"enabled": False})
    assert response.status_code == 200
    assert response.json() == {"account_id": "acc-1", "enabled": False}

    data = start_import(client, wait=True).json()
    assert data["status"] == "FAILED"
    assert data["errors"] == [{"external_id": None, "reason": "imports disabled"}]

    client.put("/v1/accounts/acc-1/imports", json={"enabled": True})
    assert start_import(client, wait=True).json()["status"] == "SUCCESS"

