"""
API Tests for the Reconciliation Endpoints

Drives the FastAPI app through TestClient with in-memory collaborators:
- Internal key authentication and tenant headers
- Load, import, auto-match, manual overrides
- Draft save/resume, completion, history, export, audit trail
- Error mapping (400 / 404 / 422 / 503)

Run with: pytest tests/test_reconciliation_api.py -v
"""

import csv
import io
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from factories import payment
from reconciliation.endpoints.reconciliation_api import (
    get_file_store,
    get_loader,
    get_registry,
    get_repository,
)
from reconciliation.errors import PersistenceError
from reconciliation.flow_registry import MovementType
from reconciliation.loaders import StaticInternalMovementLoader
from reconciliation.services.registry import WorkspaceRegistry
import server
from server import app
from services.audit import get_audit_logger
from services.notifications import get_notification_emitter

BASE = "/api/reconciliation"
API_KEY = "test-internal-key"

INCOME_CSV = (
    "Fecha,Descripción,Referencia,Abono\n"
    "2024-03-01,Pago 101,PAGO-778,1500.00\n"
    "2024-03-02,Pago 102,PAGO-900,250.00\n"
).encode("utf-8")


@pytest.fixture
def headers(context):
    return {
        "X-Internal-Api-Key": API_KEY,
        "X-Client-Id": context.client_id,
        "X-Condominium-Id": context.condominium_id,
        "X-User-Id": context.user_id,
        "X-User-Role": context.user_role,
    }


@pytest.fixture
def loader(context):
    loader = StaticInternalMovementLoader()
    loader.register(context, MovementType.INCOME, [
        payment("p1", "1500.00", date(2024, 3, 1), reference="pago-778"),
        payment("p2", "75.00", date(2024, 3, 3), reference="otro"),
    ])
    return loader


@pytest.fixture
def client(repository, audit_logger, notifier, file_store, loader):
    registry = WorkspaceRegistry()
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_loader] = lambda: loader
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_audit_logger] = lambda: audit_logger
    app.dependency_overrides[get_notification_emitter] = lambda: notifier
    app.dependency_overrides[get_file_store] = lambda: file_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _prepare(client, headers):
    """Load payments and import the statement."""
    response = client.post(f"{BASE}/income/internal-movements", json={}, headers=headers)
    assert response.status_code == 200
    response = client.post(
        f"{BASE}/income/bank-csv",
        files={"file": ("marzo.csv", INCOME_CSV, "text/csv")},
        headers=headers,
    )
    assert response.status_code == 200
    return response.json()


class TestModuleEndpoints:
    """Test status, flows and health."""

    def test_status(self, client):
        response = client.get(f"{BASE}/status")
        assert response.status_code == 200
        data = response.json()
        assert data["module"] == "reconciliation"
        assert data["flows"] == ["income", "expense"]

    def test_flows(self, client):
        flows = client.get(f"{BASE}/flows").json()["flows"]
        assert {f["movement_type"] for f in flows} == {"income", "expense"}

    def test_health_with_memory_store(self, client, audit_logger):
        response = client.get("/api/health")
        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["session_store"]["status"] == "skipped"
        assert checks["audit_log"] == {"status": "writable", "path": str(audit_logger.log_file)}
        assert checks["notifications"]["channel"] == "memory"

    def test_main_serves_app_with_uvicorn(self):
        with patch("server.uvicorn.run") as run:
            server.main()

        run.assert_called_once()
        assert run.call_args.args == ("server:app",)
        assert run.call_args.kwargs["port"] == server.settings.API_PORT
        assert run.call_args.kwargs["reload"] is True


class TestAuthentication:
    """Test internal key and tenant headers."""

    def test_missing_key(self, client, headers):
        headers.pop("X-Internal-Api-Key")
        assert client.get(f"{BASE}/income/state", headers=headers).status_code == 401

    def test_invalid_key(self, client, headers):
        headers["X-Internal-Api-Key"] = "wrong"
        assert client.get(f"{BASE}/income/state", headers=headers).status_code == 403

    def test_missing_tenant(self, client, headers):
        headers.pop("X-Condominium-Id")
        response = client.get(f"{BASE}/income/state", headers=headers)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "missing_parameter"
        assert response.json()["detail"]["parameter"] == "X-Condominium-Id"

    def test_unknown_flow(self, client, headers):
        assert client.get(f"{BASE}/transfers/state", headers=headers).status_code == 422


class TestWorkspaceEndpoints:
    """Test working-set operations."""

    def test_load_and_import(self, client, headers):
        state = _prepare(client, headers)

        assert len(state["internal_movements"]) == 2
        assert [m["amount"] for m in state["bank_movements"]] == ["1500.00", "250.00"]
        assert state["summary"]["bank_total"] == "1750.00"
        assert state["error"] is None

    def test_header_only_csv(self, client, headers):
        response = client.post(
            f"{BASE}/income/bank-csv",
            files={"file": ("vacio.csv", b"Fecha,Monto\n", "text/csv")},
            headers=headers,
        )
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "validation_error"

        state = client.get(f"{BASE}/income/state", headers=headers).json()
        assert state["bank_movements"] == []
        assert state["error"] == "CSV without data"

    def test_auto_match_and_overrides(self, client, headers):
        bank_ids = [m["id"] for m in _prepare(client, headers)["bank_movements"]]

        state = client.post(f"{BASE}/income/auto-match", json={}, headers=headers).json()
        assert state["bank_movements"][0]["status"] == "matched"
        assert state["bank_movements"][0]["matched_internal_id"] == "p1"
        assert state["bank_movements"][1]["status"] == "pending"

        state = client.post(
            f"{BASE}/income/movements/{bank_ids[1]}/match",
            json={"internal_movement_id": "p2"},
            headers=headers,
        ).json()
        assert state["bank_movements"][1]["status"] == "manual_match"
        assert state["summary"]["internal_matched"] == "1575.00"

        state = client.delete(f"{BASE}/income/movements/{bank_ids[1]}/match", headers=headers).json()
        assert state["bank_movements"][1]["status"] == "pending"

        state = client.post(f"{BASE}/income/movements/{bank_ids[1]}/ignore", headers=headers).json()
        assert state["bank_movements"][1]["status"] == "ignored"
        assert state["summary"]["bank_ignored"] == "250.00"

    def test_unknown_bank_id_is_noop(self, client, headers):
        before = _prepare(client, headers)
        after = client.post(f"{BASE}/income/movements/nope/ignore", headers=headers).json()
        assert after["bank_movements"] == before["bank_movements"]

    def test_reset(self, client, headers):
        _prepare(client, headers)
        state = client.post(f"{BASE}/income/reset", headers=headers).json()
        assert state["bank_movements"] == []
        assert Decimal(state["summary"]["bank_total"]) == 0

    def test_flows_are_independent(self, client, headers):
        _prepare(client, headers)
        state = client.get(f"{BASE}/expense/state", headers=headers).json()
        assert state["bank_movements"] == []


class TestSessionEndpoints:
    """Test drafts and completion."""

    def test_save_draft_retains_csv_and_resumes(self, client, headers, file_store):
        _prepare(client, headers)
        client.post(f"{BASE}/income/auto-match", json={}, headers=headers)

        response = client.post(
            f"{BASE}/income/drafts",
            json={"name": "Marzo", "date_from": "2024-03-01", "retain_csv": True},
            headers=headers,
        )
        assert response.status_code == 200
        saved = response.json()
        session_id = saved["session"]["id"]
        assert saved["state"]["active_session_id"] == session_id
        assert saved["session"]["csv_source"]["file_name"] == "marzo.csv"

        client.post(f"{BASE}/income/reset", headers=headers)
        resumed = client.post(f"{BASE}/income/drafts/resume-latest", headers=headers).json()

        assert resumed["resumed"] is True
        assert resumed["draft"] == {"id": session_id, "name": "Marzo", "date_from": "2024-03-01", "date_to": ""}
        assert resumed["state"]["bank_movements"] == saved["state"]["bank_movements"]
        assert resumed["state"]["summary"] == saved["state"]["summary"]

    def test_retain_without_upload(self, client, headers):
        response = client.post(f"{BASE}/income/drafts", json={"retain_csv": True}, headers=headers)
        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "retain_csv"

    def test_save_requires_user(self, client, headers):
        _prepare(client, headers)
        headers.pop("X-User-Id")
        response = client.post(f"{BASE}/income/drafts", json={}, headers=headers)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "context_error"

    def test_resume_missing_draft(self, client, headers):
        response = client.post(f"{BASE}/income/drafts/missing/resume", headers=headers)
        assert response.status_code == 200
        assert response.json()["resumed"] is False

    def test_complete_session_notifies(self, client, headers, notifier):
        _prepare(client, headers)
        client.post(f"{BASE}/income/auto-match", json={}, headers=headers)

        response = client.post(f"{BASE}/income/sessions", json={"name": "Cierre"}, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["session"]["status"] == "completed"
        assert body["session"]["traceability"]["snapshot_hash"].startswith("h")
        assert body["state"]["active_session_id"] is None
        assert body["state"]["recent_sessions"][0]["name"] == "Cierre"
        assert len(notifier.events) == 1
        assert notifier.events[0].metadata["unmatched_difference"] == "250.00"

    def test_store_failure_maps_to_503(self, client, headers):
        failing = AsyncMock()
        failing.create_session.side_effect = PersistenceError("store offline")
        app.dependency_overrides[get_repository] = lambda: failing
        _prepare(client, headers)

        response = client.post(f"{BASE}/income/drafts", json={}, headers=headers)

        assert response.status_code == 503
        assert response.json()["detail"]["message"] == "store offline"
        state = client.get(f"{BASE}/income/state", headers=headers).json()
        assert len(state["bank_movements"]) == 2
        assert state["error"] == "store offline"


class TestHistoryEndpoints:
    """Test history, detail, export and audit trail."""

    @pytest.fixture
    def completed_id(self, client, headers):
        _prepare(client, headers)
        client.post(f"{BASE}/income/auto-match", json={}, headers=headers)
        client.post(f"{BASE}/income/drafts", json={"name": "Borrador"}, headers=headers)
        response = client.post(f"{BASE}/income/sessions", json={"name": "Cierre marzo"}, headers=headers)
        return response.json()["session"]["id"]

    def test_history_list(self, client, headers, completed_id):
        page = client.get(f"{BASE}/history", params={"refresh": True}, headers=headers).json()

        assert page["total_items"] == 1
        item = page["items"][0]
        assert item["id"] == completed_id
        assert item["status"] == "completed"
        assert item["bank_movements_count"] == 2
        assert item["hydrated"] is False
        assert "bank_movements" not in item

    def test_history_filters(self, client, headers, completed_id):
        params = {"refresh": True, "status": "draft"}
        assert client.get(f"{BASE}/history", params=params, headers=headers).json()["total_items"] == 0

        params = {"search": "cierre"}
        page = client.get(f"{BASE}/history", params=params, headers=headers).json()
        assert page["total_items"] == 1
        assert page["filters"]["search"] == "cierre"

    def test_history_follows_later_saves(self, client, headers, completed_id):
        first = client.get(f"{BASE}/history", headers=headers).json()
        assert [item["name"] for item in first["items"]] == ["Cierre marzo"]

        client.post(
            f"{BASE}/income/bank-csv",
            files={"file": ("abril.csv", INCOME_CSV, "text/csv")},
            headers=headers,
        )
        client.post(f"{BASE}/income/drafts", json={"name": "Abril"}, headers=headers)
        listed = client.get(f"{BASE}/history", headers=headers).json()
        statuses = {item["name"]: item["status"] for item in listed["items"]}
        assert statuses == {"Cierre marzo": "completed", "Abril": "draft"}

        client.post(f"{BASE}/income/sessions", json={"name": "Abril"}, headers=headers)
        listed = client.get(f"{BASE}/history", headers=headers).json()
        statuses = {item["name"]: item["status"] for item in listed["items"]}
        assert listed["total_items"] == 2
        assert statuses == {"Cierre marzo": "completed", "Abril": "completed"}

    def test_invalid_history_date(self, client, headers, completed_id):
        response = client.get(f"{BASE}/history", params={"date_from": "marzo"}, headers=headers)
        assert response.status_code == 422

    def test_detail_hydrates(self, client, headers, completed_id):
        detail = client.get(f"{BASE}/history/income/{completed_id}", headers=headers).json()

        assert detail["hydrated"] is True
        assert len(detail["bank_movements"]) == 2
        assert len(detail["internal_movements"]) == 2
        assert detail["error"] is None

    def test_detail_not_found(self, client, headers, completed_id):
        assert client.get(f"{BASE}/history/expense/{completed_id}", headers=headers).status_code == 404

    def test_export(self, client, headers, completed_id):
        response = client.get(f"{BASE}/history/income/{completed_id}/export", headers=headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert completed_id in response.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == ["Conciliación de ingresos - Cierre marzo"]

    def test_audit_logs(self, client, headers, completed_id):
        data = client.get(f"{BASE}/audit-logs", params={"entity_id": completed_id}, headers=headers).json()

        assert [log["action"] for log in data["logs"]].count("complete") == 1
        assert all(log["client_id"] == "client-1" for log in data["logs"])
        assert data["count"] == 2
