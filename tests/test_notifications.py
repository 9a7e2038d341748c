import asyncio
import json
import sys
from pathlib import Path

import httpx

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from invoicely.core.config import ApprovalSettings
from invoicely.core.database import InvoicelyDB
from invoicely.models.approvals import Workflow
from invoicely.services import notifications as notifications_module
from invoicely.services.notifications import (
    ApprovalNotifier,
    EmailDispatcher,
    RenderedMessage,
    render_message,
)


def _settings(**overrides):
    values = {
        "email_api_url": "https://mail.example.test/send",
        "email_api_key": "key-123",
        "email_from": "approvals@invoicely.test",
        "app_base_url": "https://app.invoicely.test/",
    }
    values.update(overrides)
    return ApprovalSettings(**values)


_REAL_ASYNC_CLIENT = httpx.AsyncClient


def _patch_transport(monkeypatch, handler):
    real_client = _REAL_ASYNC_CLIENT

    def factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(notifications_module.httpx, "AsyncClient", factory)


def test_render_escapes_html_but_not_text():
    message = render_message("approval_request", {
        "invoice_number": "1001",
        "customer_name": "<Acme & Co>",
        "approver_name": "Alice",
        "approval_link": "https://app.invoicely.test/dashboard/approvals",
    })

    assert message.subject == "Approval Required - Invoice #1001"
    assert "&lt;Acme &amp; Co&gt;" in message.html
    assert "<Acme & Co>" in message.text
    # Missing keys render empty instead of raising.
    assert "Workflow:</strong> <br>" in message.html


def test_dispatcher_posts_to_email_api(monkeypatch):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "provider-1"})

    _patch_transport(monkeypatch, handler)
    dispatcher = EmailDispatcher(_settings())

    result = asyncio.run(dispatcher.send("alice@acme.test", RenderedMessage("Subject", "<p>hi</p>", "hi")))

    assert result.ok is True
    assert result.provider_id == "provider-1"
    assert captured["url"] == "https://mail.example.test/send"
    assert captured["auth"] == "Bearer key-123"
    assert captured["body"] == {
        "from": "approvals@invoicely.test",
        "to": ["alice@acme.test"],
        "subject": "Subject",
        "html": "<p>hi</p>",
        "text": "hi",
    }


def test_dispatcher_reports_http_and_transport_failures(monkeypatch):
    dispatcher = EmailDispatcher(_settings())
    message = RenderedMessage("Subject", "<p>hi</p>", "hi")

    _patch_transport(monkeypatch, lambda request: httpx.Response(503, text="unavailable"))
    result = asyncio.run(dispatcher.send("alice@acme.test", message))
    assert result.ok is False
    assert result.error.startswith("http_503")

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    _patch_transport(monkeypatch, refuse)
    result = asyncio.run(dispatcher.send("alice@acme.test", message))
    assert result.ok is False
    assert "ConnectError" in result.error


def test_dispatcher_without_configuration_does_not_call_out(monkeypatch):
    def handler(request):
        raise AssertionError("no request expected")

    _patch_transport(monkeypatch, handler)
    dispatcher = EmailDispatcher(_settings(email_api_url="", email_api_key=""))

    result = asyncio.run(dispatcher.send("alice@acme.test", RenderedMessage("s", "h", "t")))

    assert result.ok is False
    assert result.error == "email_not_configured"


def test_notifier_resolves_addresses_and_builds_step_requests(tmp_path):
    db = InvoicelyDB(db_path=str(tmp_path / "notify.db"), dsn="")
    db.initialize()
    db.save_profile({"id": "bob", "email": "bob@acme.test", "full_name": "Bob Brown"})
    db.save_profile({"id": "owner-1", "email": "owner@acme.test", "full_name": "Olive Owner", "company_name": "Acme Co"})
    notifier = ApprovalNotifier(db, dispatcher=EmailDispatcher(_settings()), settings=_settings())
    workflow = Workflow.from_row({
        "id": "WF-1",
        "name": "Finance",
        "approval_steps": [{"name": "Managers", "approvers": ["Alice@Acme.test", "bob", "ghost"]}],
    })
    invoice = {"id": "inv-1", "invoice_number": "1001", "customer_name": "Globex", "total_amount": 1234.5}

    assert notifier.resolve_address("carol@acme.test") == "carol@acme.test"
    assert notifier.resolve_address("bob") == "bob@acme.test"
    assert notifier.resolve_address("ghost") is None

    rows = notifier.build_step_requests(workflow, 0, invoice, {"submitted_by": "owner-1", "notes": "Rush"})

    assert [row["recipient"] for row in rows] == ["alice@acme.test", "bob@acme.test"]
    assert all(row["kind"] == "approval_request" for row in rows)
    bob_row = rows[1]
    assert "Dear Bob Brown" in bob_row["body_text"]
    assert "1,234.50 USD" in bob_row["body_text"]
    assert "Olive Owner" in bob_row["body_text"]
    assert "https://app.invoicely.test/dashboard/approvals" in bob_row["body_text"]
    assert "<strong>Notes:</strong> Rush" in bob_row["body_html"]
    assert notifier.build_step_requests(workflow, 5, invoice, {"submitted_by": "owner-1"}) == []


def test_rejection_notice_carries_reason(tmp_path):
    db = InvoicelyDB(db_path=str(tmp_path / "notify.db"), dsn="")
    db.initialize()
    db.save_profile({"id": "owner-1", "email": "owner@acme.test"})
    notifier = ApprovalNotifier(db, dispatcher=EmailDispatcher(_settings()), settings=_settings())
    workflow = Workflow.from_row({"id": "WF-1", "name": "Finance", "approval_steps": [{"name": "A", "approvers": ["x"]}]})

    notice = notifier.build_result_notice(
        workflow, {"invoice_number": "1001"}, {"id": "APR-1", "submitted_by": "owner-1"},
        "reject", "alice@acme.test", "", 0,
    )

    assert notice["kind"] == "approval_result"
    assert notice["recipient"] == "owner@acme.test"
    assert notice["subject"] == "Invoice #1001 Rejected"
    assert "No specific reason provided" in notice["body_text"]
    assert "rejected by alice" in notice["body_text"]
