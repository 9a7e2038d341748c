import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from invoicely.core import database as db_module
from invoicely.core.database import InvoicelyDB


def _make_db(tmp_path):
    db = InvoicelyDB(db_path=str(tmp_path / "approvals.db"), dsn="")
    db.initialize()
    return db


def _seed(db):
    workflow = db.create_workflow({
        "user_id": "owner-1",
        "name": "Finance",
        "approval_steps": [{"name": "Manager", "approvers": ["alice"]}],
    })
    db.create_invoice({"id": "inv-1", "user_id": "owner-1", "invoice_number": "1001", "total_amount": 250})
    approval = db.insert_approval(
        {
            "invoice_id": "inv-1",
            "workflow_id": workflow["id"],
            "submitted_by": "owner-1",
            "status": "pending",
            "current_step": 0,
        },
        invoice_status="pending_approval",
        outbox=[{"kind": "approval_request", "recipient": "alice@acme.test", "subject": "Approve"}],
    )
    return workflow, approval


def test_insert_approval_writes_record_invoice_status_and_outbox_together(tmp_path):
    db = _make_db(tmp_path)
    workflow, approval = _seed(db)

    assert workflow["id"].startswith("WF-")
    assert workflow["approval_steps"] == [{"name": "Manager", "approvers": ["alice"]}]
    assert workflow["is_active"] is True
    assert approval["id"].startswith("APR-")
    assert approval["revision"] == 0
    assert approval["approval_data"] == {}
    assert db.get_invoice("inv-1")["status"] == "pending_approval"
    [row] = db.list_outbox(approval_id=approval["id"])
    assert row["id"].startswith("NTF-")
    assert row["status"] == "pending"
    assert row["attempts"] == 0


def test_transition_is_compare_and_swap_on_status_and_revision(tmp_path):
    db = _make_db(tmp_path)
    _, approval = _seed(db)

    first = db.transition_approval(
        approval["id"],
        expected_status="pending",
        expected_revision=0,
        updates={"status": "approved", "approved_by": "alice", "approval_data": {"steps_completed": [0]}},
        invoice_id="inv-1",
        invoice_status="approved",
        outbox=[{"kind": "approval_result", "recipient": "owner@acme.test"}],
    )
    stale = db.transition_approval(
        approval["id"],
        expected_status="pending",
        expected_revision=0,
        updates={"status": "rejected"},
        invoice_id="inv-1",
        invoice_status="draft",
        outbox=[{"kind": "approval_result", "recipient": "owner@acme.test"}],
    )

    assert first == 1
    assert stale == 0
    stored = db.get_approval(approval["id"])
    assert stored["status"] == "approved"
    assert stored["revision"] == 1
    assert stored["approval_data"] == {"steps_completed": [0]}
    assert db.get_invoice("inv-1")["status"] == "approved"
    # The losing write queued nothing.
    assert len(db.list_outbox(approval_id=approval["id"], statuses=["pending"])) == 2


def test_transition_ignores_fields_outside_the_allowed_set(tmp_path):
    db = _make_db(tmp_path)
    _, approval = _seed(db)

    db.transition_approval(
        approval["id"],
        expected_status="pending",
        expected_revision=0,
        updates={"current_step": 1, "submitted_by": "intruder"},
    )

    stored = db.get_approval(approval["id"])
    assert stored["current_step"] == 1
    assert stored["submitted_by"] == "owner-1"


def test_delete_workflow_if_idle(tmp_path):
    db = _make_db(tmp_path)
    workflow, approval = _seed(db)

    assert db.delete_workflow_if_idle(workflow["id"], "owner-1") == 0
    assert db.get_workflow(workflow["id"]) is not None

    db.transition_approval(approval["id"], "pending", 0, {"status": "rejected"})

    assert db.delete_workflow_if_idle(workflow["id"], "someone-else") == 0
    assert db.delete_workflow_if_idle(workflow["id"], "owner-1") == 1
    assert db.get_workflow(workflow["id"]) is None


def test_one_pending_record_per_invoice(tmp_path):
    db = _make_db(tmp_path)
    workflow, approval = _seed(db)
    pending = {"invoice_id": "inv-1", "workflow_id": workflow["id"], "submitted_by": "owner-1"}

    with pytest.raises(sqlite3.IntegrityError):
        db.insert_approval(pending, invoice_status="pending_approval")
    assert len(db.list_approvals_by_invoice("inv-1")) == 1

    db.transition_approval(approval["id"], "pending", 0, {"status": "rejected"})
    resubmitted = db.insert_approval(pending, invoice_status="pending_approval")

    assert resubmitted["status"] == "pending"
    assert len(db.list_approvals_by_invoice("inv-1")) == 2


def test_update_workflow_is_owner_scoped(tmp_path):
    db = _make_db(tmp_path)
    workflow, _ = _seed(db)

    assert db.update_workflow(workflow["id"], "someone-else", name="Hijacked") is False
    assert db.update_workflow(workflow["id"], "owner-1", name="Renamed", is_active=False, bogus=1) is True

    stored = db.get_workflow(workflow["id"], "owner-1")
    assert stored["name"] == "Renamed"
    assert stored["is_active"] is False
    assert db.list_active_workflows() == []


def test_statistics_skip_auto_approvals_in_average(tmp_path):
    db = _make_db(tmp_path)
    now = datetime.now(timezone.utc)
    base = {"invoice_id": "inv-x", "workflow_id": "WF-1", "submitted_by": "owner-1"}
    db.insert_approval(
        {
            **base,
            "status": "approved",
            "current_step": 0,
            "submitted_at": (now - timedelta(hours=2)).isoformat(),
            "approved_at": now.isoformat(),
        },
        invoice_status="approved",
    )
    db.insert_approval(
        {
            **base,
            "status": "approved",
            "current_step": -1,
            "submitted_at": (now - timedelta(hours=10)).isoformat(),
            "approved_at": now.isoformat(),
        },
        invoice_status="approved",
    )
    db.insert_approval({**base, "status": "rejected", "submitted_at": now.isoformat()}, invoice_status="draft")

    stats = db.get_approval_statistics(
        "owner-1",
        (now - timedelta(days=1)).isoformat(),
        (now + timedelta(minutes=1)).isoformat(),
    )

    assert stats == {
        "total_approvals": 3,
        "pending_approvals": 0,
        "approved_count": 2,
        "rejected_count": 1,
        "average_approval_time": 2.0,
    }


def test_outbox_results_and_retry_cap(tmp_path):
    db = _make_db(tmp_path)
    ids = db.enqueue_notifications("APR-1", [
        {"kind": "approval_request", "recipient": "a@acme.test"},
        {"kind": "approval_request", "recipient": "b@acme.test"},
    ])

    db.mark_outbox_result(ids[0], True)
    db.mark_outbox_result(ids[1], False, "timeout")
    db.mark_outbox_result(ids[1], False, "timeout")

    rows = {row["id"]: row for row in db.get_outbox_messages(ids)}
    sent, failed = rows[ids[0]], rows[ids[1]]
    assert sent["status"] == "sent"
    assert sent["sent_at"]
    assert failed["status"] == "failed"
    assert failed["attempts"] == 2
    assert failed["last_error"] == "timeout"
    assert [row["id"] for row in db.list_outbox(statuses=["pending", "failed"], max_attempts=3)] == [ids[1]]
    assert db.list_outbox(statuses=["pending", "failed"], max_attempts=2) == []


def test_profile_lookup_by_email_is_case_insensitive(tmp_path):
    db = _make_db(tmp_path)
    db.save_profile({"id": "alice", "email": "Alice@Acme.test", "full_name": "Alice Adams"})
    db.save_profile({"id": "alice", "email": "Alice@Acme.test", "full_name": "Alice A. Adams"})

    assert db.get_profile_by_email("alice@acme.TEST")["id"] == "alice"
    assert db.get_profile("alice")["full_name"] == "Alice A. Adams"


def test_get_db_reads_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("INVOICELY_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setattr(db_module, "_DB_INSTANCE", None)

    db = db_module.get_db()

    assert db.db_path == str(tmp_path / "env.db")
    assert db_module.get_db() is db
