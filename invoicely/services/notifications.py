"""
Approval notification service.

Messages are rendered up front and written to the notification outbox in
the same transaction as the approval change that caused them. Delivery
happens afterwards, one independent attempt per recipient, and every
outcome is recorded back on the outbox row.
"""
from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from invoicely.core.config import ApprovalSettings, get_settings
from invoicely.core.database import InvoicelyDB
from invoicely.services.errors import STORE_ERRORS

logger = logging.getLogger(__name__)


TEMPLATES: Dict[str, Dict[str, str]] = {
    "approval_request": {
        "subject": "Approval Required - Invoice #{invoice_number}",
        "html": (
            "<h2>Invoice Approval Request</h2>"
            "<p>Dear {approver_name},</p>"
            "<p>A new invoice requires your approval.</p>"
            "<p><strong>Invoice Number:</strong> #{invoice_number}<br>"
            "<strong>Customer:</strong> {customer_name}<br>"
            "<strong>Amount:</strong> {amount} {currency}<br>"
            "<strong>Submitted by:</strong> {submitted_by_name}<br>"
            "<strong>Workflow:</strong> {workflow_name}<br>"
            "<strong>Approval Step:</strong> {approval_step} ({step_name})</p>"
            "{notes_html}"
            "<p><a href=\"{approval_link}\">Review approval</a></p>"
            "<p>{company_name}</p>"
        ),
        "text": (
            "Dear {approver_name},\n\n"
            "Invoice #{invoice_number} for {customer_name} ({amount} {currency}) "
            "submitted by {submitted_by_name} needs your approval at step "
            "{approval_step} ({step_name}) of {workflow_name}.\n\n"
            "Review it at {approval_link}\n\n{company_name}"
        ),
    },
    "approval_approved": {
        "subject": "Invoice #{invoice_number} Approved",
        "html": (
            "<h2>Invoice Approved</h2>"
            "<p>Invoice #{invoice_number} for {customer_name} ({amount} {currency}) "
            "was approved by {actor_name}.</p>"
            "<p><strong>Workflow:</strong> {workflow_name}</p>"
            "{comments_html}"
        ),
        "text": (
            "Invoice #{invoice_number} for {customer_name} ({amount} {currency}) "
            "was approved by {actor_name} ({workflow_name}).\n{comments}"
        ),
    },
    "approval_step_approved": {
        "subject": "Invoice #{invoice_number} Passed Step {approval_step}",
        "html": (
            "<h2>Approval Step Completed</h2>"
            "<p>{actor_name} approved step {approval_step} of {workflow_name} for invoice "
            "#{invoice_number}. It now waits on step {next_step} ({next_step_name}).</p>"
            "{comments_html}"
        ),
        "text": (
            "{actor_name} approved step {approval_step} of {workflow_name} for invoice "
            "#{invoice_number}. Next: step {next_step} ({next_step_name}).\n{comments}"
        ),
    },
    "approval_rejected": {
        "subject": "Invoice #{invoice_number} Rejected",
        "html": (
            "<h2>Invoice Rejected</h2>"
            "<p>Invoice #{invoice_number} for {customer_name} ({amount} {currency}) "
            "was rejected by {actor_name} and returned to draft.</p>"
            "<p><strong>Reason:</strong> {rejection_reason}</p>"
        ),
        "text": (
            "Invoice #{invoice_number} for {customer_name} ({amount} {currency}) "
            "was rejected by {actor_name}.\nReason: {rejection_reason}"
        ),
    },
    "approval_reminder": {
        "subject": "Reminder: Approval Required - Invoice #{invoice_number}",
        "html": (
            "<h2>Approval Reminder</h2>"
            "<p>Dear {approver_name},</p>"
            "<p>Invoice #{invoice_number} for {customer_name} ({amount} {currency}) "
            "has been waiting for your approval since {submitted_at}.</p>"
            "<p><a href=\"{approval_link}\">Review approval</a></p>"
        ),
        "text": (
            "Dear {approver_name},\n\nInvoice #{invoice_number} for {customer_name} "
            "({amount} {currency}) has been waiting for your approval since "
            "{submitted_at}.\n\nReview it at {approval_link}"
        ),
    },
}

# Template keys whose values are already HTML fragments.
_RAW_HTML_KEYS = {"notes_html", "comments_html"}


class _SafeContext(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass
class RenderedMessage:
    subject: str
    html: str
    text: str


@dataclass
class DeliveryResult:
    ok: bool
    recipient: str
    error: Optional[str] = None
    provider_id: Optional[str] = None


def format_amount(amount: Any) -> str:
    try:
        return f"{float(amount):,.2f}"
    except (TypeError, ValueError):
        return "0.00"


def render_message(template: str, context: Dict[str, Any]) -> RenderedMessage:
    template_def = TEMPLATES[template]
    plain = _SafeContext({k: "" if v is None else str(v) for k, v in context.items()})
    escaped = _SafeContext({
        k: (v if k in _RAW_HTML_KEYS else html.escape(v)) for k, v in plain.items()
    })
    return RenderedMessage(
        subject=template_def["subject"].format_map(plain),
        html=template_def["html"].format_map(escaped),
        text=template_def["text"].format_map(plain),
    )


class EmailDispatcher:
    """
    Delivers one rendered message to one recipient through the
    transactional email HTTP API. Never raises: failures come back as a
    DeliveryResult with ``ok=False``.
    """

    def __init__(self, settings: Optional[ApprovalSettings] = None):
        self.settings = settings or get_settings()

    async def send(self, recipient: str, message: RenderedMessage) -> DeliveryResult:
        if not self.settings.email_enabled:
            return DeliveryResult(ok=False, recipient=recipient, error="email_not_configured")
        payload = {
            "from": self.settings.email_from,
            "to": [recipient],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        headers = {"Authorization": f"Bearer {self.settings.email_api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.settings.email_timeout_seconds) as client:
                response = await client.post(self.settings.email_api_url, json=payload, headers=headers)
        except Exception as exc:  # noqa: BLE001
            return DeliveryResult(ok=False, recipient=recipient, error=f"{type(exc).__name__}: {exc}")
        if response.status_code >= 400:
            return DeliveryResult(
                ok=False,
                recipient=recipient,
                error=f"http_{response.status_code}: {response.text[:200]}",
            )
        provider_id = None
        try:
            body = response.json()
            if isinstance(body, dict):
                provider_id = body.get("id")
        except ValueError:
            pass
        return DeliveryResult(ok=True, recipient=recipient, provider_id=provider_id)


class ApprovalNotifier:
    """Builds outbox rows for approval events and delivers them."""

    def __init__(
        self,
        db: InvoicelyDB,
        dispatcher: Optional[EmailDispatcher] = None,
        settings: Optional[ApprovalSettings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or EmailDispatcher(self.settings)

    # ------------------------------------------------------------------
    # Addressing and context
    # ------------------------------------------------------------------

    def _lookup_profile(self, identity: str, by_email: bool = False) -> Optional[Dict[str, Any]]:
        """Profile for ``identity``, or None when the store cannot be read."""
        if not identity:
            return None
        try:
            if by_email:
                return self.db.get_profile_by_email(identity)
            return self.db.get_profile(identity)
        except STORE_ERRORS as exc:
            logger.warning("Profile lookup failed for %s: %s", identity, exc)
            return None

    def resolve_address(self, identity: str) -> Optional[str]:
        if "@" in identity:
            return identity
        profile = self._lookup_profile(identity)
        email = (profile or {}).get("email")
        return email or None

    def _display_name(self, identity: Optional[str], fallback: str) -> str:
        if not identity:
            return fallback
        profile = self._lookup_profile(identity, by_email="@" in identity)
        if profile and profile.get("full_name"):
            return profile["full_name"]
        if "@" in identity:
            return identity.split("@")[0]
        return identity

    def _base_context(
        self,
        invoice: Dict[str, Any],
        workflow: Any,
        approval: Dict[str, Any],
    ) -> Dict[str, Any]:
        submitter = self._lookup_profile(approval.get("submitted_by") or "") or {}
        invoice_id = str(invoice.get("id") or approval.get("invoice_id") or "")
        notes = approval.get("notes") or ""
        return {
            "invoice_number": invoice.get("invoice_number") or f"INV-{invoice_id[-8:]}",
            "customer_name": invoice.get("customer_name") or "Customer",
            "amount": format_amount(invoice.get("total_amount")),
            "currency": invoice.get("currency") or "USD",
            "workflow_name": getattr(workflow, "name", None) or "Approval Workflow",
            "submitted_by_name": submitter.get("full_name") or submitter.get("email") or "User",
            "submitted_at": approval.get("submitted_at") or "",
            "company_name": submitter.get("company_name") or "Your Company",
            "approval_link": self.settings.approvals_url,
            "notes_html": f"<p><strong>Notes:</strong> {html.escape(notes)}</p>" if notes else "",
        }

    @staticmethod
    def _outbox_row(kind: str, recipient: str, message: RenderedMessage) -> Dict[str, Any]:
        return {
            "kind": kind,
            "recipient": recipient,
            "subject": message.subject,
            "body_html": message.html,
            "body_text": message.text,
        }

    # ------------------------------------------------------------------
    # Message builders
    # ------------------------------------------------------------------

    def build_step_requests(
        self,
        workflow: Any,
        step_index: int,
        invoice: Dict[str, Any],
        approval: Dict[str, Any],
        kind: str = "approval_request",
    ) -> List[Dict[str, Any]]:
        """One message per approver address of ``step_index``."""
        step = workflow.step_at(step_index)
        if step is None:
            return []
        base = self._base_context(invoice, workflow, approval)
        rows = []
        for identity in step.approvers:
            address = self.resolve_address(identity)
            if not address:
                logger.warning(
                    "No email address for approver %s on approval %s step %s; skipping",
                    identity,
                    approval.get("id") or "new",
                    step_index,
                )
                continue
            context = {
                **base,
                "approver_name": self._display_name(identity, "Approver"),
                "approval_step": step_index + 1,
                "step_name": step.name,
            }
            rows.append(self._outbox_row(kind, address, render_message(kind, context)))
        return rows

    def build_result_notice(
        self,
        workflow: Any,
        invoice: Dict[str, Any],
        approval: Dict[str, Any],
        action: str,
        actor_id: str,
        comment: str,
        completed_step: int,
        next_step: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        submitter = approval.get("submitted_by") or ""
        address = self.resolve_address(submitter) if submitter else None
        if not address:
            logger.warning("No email address for submitter %s of approval %s", submitter, approval.get("id"))
            return None
        if action == "reject":
            template = "approval_rejected"
        elif next_step is not None:
            template = "approval_step_approved"
        else:
            template = "approval_approved"
        next_step_obj = workflow.step_at(next_step) if next_step is not None else None
        context = {
            **self._base_context(invoice, workflow, approval),
            "actor_name": self._display_name(actor_id, "Approver"),
            "approval_step": completed_step + 1,
            "next_step": (next_step + 1) if next_step is not None else "",
            "next_step_name": next_step_obj.name if next_step_obj else "",
            "comments": comment or "",
            "comments_html": (
                f"<p><strong>Comments:</strong> {html.escape(comment)}</p>" if comment else ""
            ),
            "rejection_reason": comment or "No specific reason provided",
        }
        return self._outbox_row("approval_result", address, render_message(template, context))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, row: Dict[str, Any]) -> DeliveryResult:
        message = RenderedMessage(
            subject=row.get("subject") or "",
            html=row.get("body_html") or "",
            text=row.get("body_text") or "",
        )
        result = await self.dispatcher.send(row["recipient"], message)
        try:
            self.db.mark_outbox_result(row["id"], result.ok, result.error)
        except STORE_ERRORS as exc:
            logger.warning("Could not record delivery result for %s: %s", row["id"], exc)
        if result.ok:
            logger.info(
                "Notification sent: approval=%s kind=%s recipient=%s",
                row.get("approval_id"),
                row.get("kind"),
                row["recipient"],
            )
        else:
            logger.warning(
                "Notification failed: approval=%s kind=%s recipient=%s error=%s",
                row.get("approval_id"),
                row.get("kind"),
                row["recipient"],
                result.error,
            )
        return result

    async def _deliver_all(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        summary = {"sent": 0, "failed": 0, "results": []}
        if not rows:
            return summary
        outcomes = await asyncio.gather(*(self._deliver(row) for row in rows), return_exceptions=True)
        for row, outcome in zip(rows, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Notification %s raised during delivery: %s", row.get("id"), outcome)
                outcome = DeliveryResult(ok=False, recipient=row.get("recipient") or "", error=str(outcome))
            summary["sent" if outcome.ok else "failed"] += 1
            summary["results"].append({
                "id": row.get("id"),
                "recipient": outcome.recipient,
                "ok": outcome.ok,
                "error": outcome.error,
            })
        return summary

    async def dispatch(self, message_ids: List[str]) -> Dict[str, Any]:
        """Deliver freshly committed outbox rows. Never raises."""
        if not message_ids:
            return {"sent": 0, "failed": 0, "results": []}
        try:
            rows = self.db.get_outbox_messages(message_ids)
        except STORE_ERRORS as exc:
            logger.warning("Could not load outbox rows %s: %s", message_ids, exc)
            return {"sent": 0, "failed": 0, "results": [], "error": str(exc)}
        # Rows from one transaction share created_at; keep the caller's order.
        position = {message_id: index for index, message_id in enumerate(message_ids)}
        rows.sort(key=lambda row: position.get(row["id"], len(position)))
        return await self._deliver_all(rows)

    async def flush(self, limit: int = 100) -> Dict[str, Any]:
        """Retry pending and failed rows that are under the attempt cap."""
        try:
            rows = self.db.list_outbox(
                statuses=["pending", "failed"],
                max_attempts=self.settings.notification_max_attempts,
                limit=limit,
            )
        except STORE_ERRORS as exc:
            logger.warning("Could not load outbox for flush: %s", exc)
            return {"sent": 0, "failed": 0, "results": [], "error": str(exc)}
        return await self._deliver_all(rows)
