import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from main import app
from invoicely.core import config as config_module
from invoicely.core import database as db_module
from invoicely.core.auth import create_access_token
from invoicely.core.config import ApprovalSettings
from invoicely.core.database import InvoicelyDB
from invoicely.services.approval_engine import ApprovalEngine, get_approval_engine
from invoicely.services.notifications import ApprovalNotifier, DeliveryResult


class _NullDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, recipient, message):
        self.sent.append(recipient)
        return DeliveryResult(ok=True, recipient=recipient)


def _headers(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id, email=f'{user_id}@acme.test')}"}


SERVICE_KEY = "org_acme_s3cret-value"
OWNER = _headers("owner-1")
ALICE = _headers("alice")
BOB = _headers("bob")


@pytest.fixture()
def api(tmp_path, monkeypatch):
    db = InvoicelyDB(db_path=str(tmp_path / "api.db"), dsn="")
    db.initialize()
    monkeypatch.setattr(db_module, "_DB_INSTANCE", db)
    settings = ApprovalSettings(db_path=str(tmp_path / "api.db"), api_keys=(SERVICE_KEY,))
    monkeypatch.setattr(config_module, "_SETTINGS", settings)
    notifier = ApprovalNotifier(db, _NullDispatcher(), settings=settings)
    engine = ApprovalEngine(db=db, notifier=notifier, settings=settings)
    app.dependency_overrides[get_approval_engine] = lambda: engine
    try:
        yield TestClient(app), db
    finally:
        app.dependency_overrides.clear()


def _create_workflow(client, steps=(("alice",),), **extra):
    payload = {
        "name": "Finance sign-off",
        "approval_steps": [
            {"name": f"Step {i + 1}", "approvers": list(approvers)} for i, approvers in enumerate(steps)
        ],
    }
    payload.update(extra)
    response = client.post("/api/approvals/workflows", json=payload, headers=OWNER)
    assert response.status_code == 201
    return response.json()["data"]


def _create_invoice(db, invoice_id="inv-1", amount=2500):
    db.create_invoice({"id": invoice_id, "user_id": "owner-1", "invoice_number": invoice_id, "total_amount": amount})


def _submit(client, workflow_id, invoice_id="inv-1"):
    response = client.post(
        f"/api/approvals/invoices/{invoice_id}/submit",
        json={"workflow_id": workflow_id, "notes": "Please review"},
        headers=OWNER,
    )
    assert response.status_code == 201
    return response.json()["data"]


def test_requests_without_identity_are_rejected(api):
    client, _ = api

    response = client.get("/api/approvals/workflows")
    assert response.status_code == 401
    assert response.json()["error"] == "NOT_AUTHENTICATED"

    response = client.get("/api/approvals/workflows", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"

    response = client.get("/api/approvals/workflows", headers={"X-API-Key": "sk_live_123"})
    assert response.status_code == 401


def test_api_key_identity(api):
    client, _ = api

    response = client.get("/api/approvals/workflows", headers={"X-API-Key": SERVICE_KEY})

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": [], "count": 0}


def test_unknown_api_key_secret_is_rejected(api):
    client, _ = api

    response = client.post(
        "/api/approvals/workflows",
        json={"name": "Forged", "approval_steps": [{"name": "A", "approvers": ["api_acme"]}]},
        headers={"X-API-Key": "org_acme_notasecret"},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid API key"
    assert client.get("/api/approvals/workflows", headers={"X-API-Key": SERVICE_KEY}).json()["count"] == 0


def test_workflow_crud(api):
    client, _ = api
    workflow = _create_workflow(client, auto_approve_threshold=100)
    assert workflow["id"].startswith("WF-")
    assert workflow["auto_approve_threshold"] == 100
    assert workflow["approval_steps"][0]["approvers"] == ["alice"]

    listed = client.get("/api/approvals/workflows", headers=OWNER).json()
    assert listed["count"] == 1

    response = client.get(f"/api/approvals/workflows/{workflow['id']}", headers=BOB)
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"

    response = client.put(
        f"/api/approvals/workflows/{workflow['id']}",
        json={"name": "Renamed", "auto_approve_threshold": None},
        headers=OWNER,
    )
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Renamed"
    assert response.json()["data"]["auto_approve_threshold"] is None

    response = client.delete(f"/api/approvals/workflows/{workflow['id']}", headers=OWNER)
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert client.get(f"/api/approvals/workflows/{workflow['id']}", headers=OWNER).status_code == 404


def test_invalid_workflow_payloads(api):
    client, _ = api

    response = client.post(
        "/api/approvals/workflows",
        json={"name": "Empty", "approval_steps": []},
        headers=OWNER,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_FAILED"
    assert response.json()["message"] == "At least one approval step is required"

    response = client.post(
        "/api/approvals/workflows",
        json={"name": "Extra", "approval_steps": [{"name": "A", "approvers": ["a"]}], "owner": "x"},
        headers=OWNER,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_FAILED"


def test_submit_action_and_history(api):
    client, db = api
    workflow = _create_workflow(client)
    _create_invoice(db)

    record = _submit(client, workflow["id"])
    assert record["status"] == "pending"
    assert record["current_step"] == 0
    assert record["notes"] == "Please review"

    response = client.post(f"/api/approvals/{record['id']}/action", json={"action": "approve"}, headers=BOB)
    assert response.status_code == 403
    assert response.json()["error"] == "NOT_AUTHORIZED"

    response = client.post(
        f"/api/approvals/{record['id']}/action",
        json={"action": "hold"},
        headers=ALICE,
    )
    assert response.status_code == 400

    response = client.post(
        f"/api/approvals/{record['id']}/action",
        json={"action": "approve", "comments": "Fine"},
        headers=ALICE,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "approved"
    assert body["message"] == "Invoice approved successfully"
    assert db.get_invoice("inv-1")["status"] == "approved"

    response = client.post(f"/api/approvals/{record['id']}/action", json={"action": "reject"}, headers=ALICE)
    assert response.status_code == 409
    assert response.json()["error"] == "CONFLICT"

    history = client.get("/api/approvals/invoices/inv-1/history", headers=OWNER).json()
    assert history["count"] == 1
    assert history["data"][0]["workflow_name"] == "Finance sign-off"
    assert client.get("/api/approvals/invoices/inv-1/history", headers=ALICE).status_code == 404


def test_auto_approved_submission_message(api):
    client, db = api
    workflow = _create_workflow(client, auto_approve_threshold=5000)
    _create_invoice(db, amount=10)

    response = client.post(
        "/api/approvals/invoices/inv-1/submit",
        json={"workflow_id": workflow["id"]},
        headers=OWNER,
    )

    assert response.status_code == 201
    assert response.json()["message"] == "Invoice auto-approved"
    assert response.json()["data"]["current_step"] == -1


def test_duplicate_submission_conflicts(api):
    client, db = api
    workflow = _create_workflow(client)
    _create_invoice(db)
    _submit(client, workflow["id"])

    response = client.post(
        "/api/approvals/invoices/inv-1/submit",
        json={"workflow_id": workflow["id"]},
        headers=OWNER,
    )

    assert response.status_code == 409


def test_pending_stats_and_templates(api):
    client, db = api
    workflow = _create_workflow(client, steps=(("alice",), ("bob",)), require_all_approvers=True)
    _create_invoice(db)
    record = _submit(client, workflow["id"])

    pending = client.get("/api/approvals/pending", headers=ALICE).json()
    assert pending["count"] == 1
    assert pending["data"][0]["id"] == record["id"]
    assert pending["data"][0]["invoice"]["id"] == "inv-1"
    assert client.get("/api/approvals/pending", headers=BOB).json()["count"] == 0

    stats = client.get("/api/approvals/stats", headers=OWNER).json()["data"]
    assert stats["total_approvals"] == 1
    assert stats["pending_approvals"] == 1

    response = client.get("/api/approvals/stats?start_date=not-a-date", headers=OWNER)
    assert response.status_code == 400

    templates = client.get("/api/approvals/templates", headers=OWNER).json()
    assert templates["count"] == 3


def test_bulk_approve_reminders_and_flush(api):
    client, db = api
    workflow = _create_workflow(client)
    _create_invoice(db, "inv-1")
    _create_invoice(db, "inv-2")
    first = _submit(client, workflow["id"], "inv-1")
    second = _submit(client, workflow["id"], "inv-2")

    response = client.post("/api/approvals/reminders", headers=OWNER)
    assert response.status_code == 200
    assert response.json()["data"]["approvals_reminded"] == 0

    response = client.post(
        "/api/approvals/bulk/approve",
        json={"approval_ids": [first["id"], "APR-missing", second["id"]]},
        headers=ALICE,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["success_count"] == 2
    assert data["error_count"] == 1
    assert data["failed"][0]["approval_id"] == "APR-missing"

    response = client.post("/api/approvals/bulk/approve", json={"approval_ids": []}, headers=ALICE)
    assert response.status_code == 400

    response = client.post("/api/approvals/outbox/flush", headers=OWNER)
    assert response.status_code == 403
    assert response.json()["error"] == "NOT_AUTHORIZED"

    response = client.post("/api/approvals/outbox/flush", headers={"X-API-Key": SERVICE_KEY})
    assert response.status_code == 200
    assert response.json()["data"]["attempted"] == 0

    admin = {"Authorization": f"Bearer {create_access_token('ops-1', role='admin')}"}
    assert client.post("/api/approvals/outbox/flush", headers=admin).status_code == 200


def test_health(api):
    client, _ = api
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
