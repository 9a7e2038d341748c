"""
Invoice Approval Engine

Owns every approval decision: workflow validation, submission with
conditional auto-approval, step authorization, completion policy and the
terminal transitions. State changes are persisted through a single
compare-and-swap per action, so two approvers racing on the same step can
never both advance it.

Usage:
    engine = get_approval_engine()
    record = await engine.submit_for_approval(invoice_id, user_id, workflow_id)
    record = await engine.process_approval(record.id, "manager@acme.com", "approve")
"""
from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from invoicely.core.config import ApprovalSettings, get_settings
from invoicely.core.database import WORKFLOW_UPDATABLE_FIELDS, InvoicelyDB, get_db
from invoicely.models.approvals import (
    ApprovalData,
    ApprovalRecord,
    ApprovalStats,
    HistoryEntry,
    Workflow,
    validate_steps,
    validate_threshold,
)
from invoicely.services.approval_state import (
    ACTIONS,
    AUTO_APPROVED_STEP,
    INVOICE_STATUS_FOR,
    assert_valid_transition,
    is_terminal,
)
from invoicely.services.errors import (
    AuthorizationError,
    ConflictError,
    INTEGRITY_ERRORS,
    InvoicelyError,
    NotFoundError,
    ValidationError,
    handle_store_errors,
)
from invoicely.services.logging import log_approval_event, log_error
from invoicely.services.notifications import ApprovalNotifier, format_amount

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


WORKFLOW_TEMPLATES: List[Dict[str, Any]] = [
    {
        "id": "single_approver",
        "name": "Single Approver",
        "description": "Simple workflow with one approval step",
        "approval_steps": [
            {
                "name": "Manager Approval",
                "description": "Requires approval from designated manager",
                "approvers": [],
                "required": True,
            },
        ],
        "require_all_approvers": False,
        "auto_approve_threshold": None,
    },
    {
        "id": "dual_approval",
        "name": "Dual Approval",
        "description": "Requires approval from two different people",
        "approval_steps": [
            {
                "name": "First Approver",
                "description": "Initial approval step",
                "approvers": [],
                "required": True,
            },
            {
                "name": "Final Approver",
                "description": "Final approval step",
                "approvers": [],
                "required": True,
            },
        ],
        "require_all_approvers": True,
        "auto_approve_threshold": None,
    },
    {
        "id": "amount_based",
        "name": "Amount-Based Approval",
        "description": "Different approval levels based on invoice amount",
        "approval_steps": [
            {
                "name": "Department Manager",
                "description": "Department manager approval for all amounts",
                "approvers": [],
                "required": True,
            },
            {
                "name": "Senior Manager",
                "description": "Senior manager approval for high amounts",
                "approvers": [],
                "required": True,
                "conditions": {"min_amount": 10000},
            },
        ],
        "require_all_approvers": False,
        "auto_approve_threshold": 1000,
    },
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invoice_summary(invoice: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not invoice:
        return None
    return {
        "id": invoice.get("id"),
        "invoice_number": invoice.get("invoice_number"),
        "customer_name": invoice.get("customer_name"),
        "total_amount": invoice.get("total_amount"),
        "currency": invoice.get("currency"),
        "status": invoice.get("status"),
    }


def _assign_ids(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{**message, "id": message.get("id") or f"NTF-{uuid.uuid4().hex}"} for message in messages]


def _coerce_bound(value: Union[str, datetime, None], end: bool = False) -> Optional[str]:
    """Normalize a stats date bound to a UTC ISO timestamp."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid date: {raw}", field="end_date" if end else "start_date")
        if end and len(raw) == 10:
            # Date-only end bound covers the whole day.
            parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


class ApprovalEngine:
    """Workflow CRUD, submission, action processing and approval queries."""

    def __init__(
        self,
        db: Optional[InvoicelyDB] = None,
        notifier: Optional[ApprovalNotifier] = None,
        settings: Optional[ApprovalSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or get_db()
        self.notifier = notifier or ApprovalNotifier(self.db, settings=self.settings)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_name(value: Any) -> str:
        name = str(value or "").strip()
        if not name:
            raise ValidationError("Workflow name is required", field="name")
        return name

    @handle_store_errors("create_workflow")
    async def create_workflow(self, owner_id: str, definition: Dict[str, Any]) -> Workflow:
        name = self._validate_name(definition.get("name"))
        steps = validate_steps(definition.get("approval_steps"))
        threshold = validate_threshold(definition.get("auto_approve_threshold"))

        row = self.db.create_workflow({
            "user_id": owner_id,
            "name": name,
            "description": definition.get("description") or "",
            "approval_steps": [step.to_dict() for step in steps],
            "require_all_approvers": bool(definition.get("require_all_approvers", False)),
            "auto_approve_threshold": threshold,
            "is_active": definition.get("is_active", True) is not False,
        })
        workflow = Workflow.from_row(row)
        logger.info("Created workflow %s (%s steps) for %s", workflow.id, len(workflow.steps), owner_id)
        return workflow

    @handle_store_errors("list_workflows")
    async def list_workflows(self, owner_id: str) -> List[Workflow]:
        return [Workflow.from_row(row) for row in self.db.list_workflows(owner_id)]

    @handle_store_errors("get_workflow")
    async def get_workflow(self, workflow_id: str, owner_id: str) -> Workflow:
        row = self.db.get_workflow(workflow_id, owner_id)
        if not row:
            raise NotFoundError("workflow", workflow_id)
        return Workflow.from_row(row)

    @handle_store_errors("update_workflow")
    async def update_workflow(self, workflow_id: str, owner_id: str, patch: Dict[str, Any]) -> Workflow:
        if not self.db.get_workflow(workflow_id, owner_id):
            raise NotFoundError("workflow", workflow_id)

        fields = {k: v for k, v in patch.items() if k in WORKFLOW_UPDATABLE_FIELDS}
        if "name" in fields:
            fields["name"] = self._validate_name(fields["name"])
        if "approval_steps" in fields:
            fields["approval_steps"] = [step.to_dict() for step in validate_steps(fields["approval_steps"])]
        if "auto_approve_threshold" in fields:
            fields["auto_approve_threshold"] = validate_threshold(fields["auto_approve_threshold"])
        if "description" in fields:
            fields["description"] = fields["description"] or ""
        for flag in ("require_all_approvers", "is_active"):
            if flag in fields and fields[flag] is None:
                fields.pop(flag)

        if fields and not self.db.update_workflow(workflow_id, owner_id, **fields):
            raise NotFoundError("workflow", workflow_id)
        row = self.db.get_workflow(workflow_id, owner_id)
        if not row:
            raise NotFoundError("workflow", workflow_id)
        logger.info("Updated workflow %s fields=%s", workflow_id, sorted(fields))
        return Workflow.from_row(row)

    @handle_store_errors("delete_workflow")
    async def delete_workflow(self, workflow_id: str, owner_id: str) -> None:
        if not self.db.get_workflow(workflow_id, owner_id):
            raise NotFoundError("workflow", workflow_id)
        if self.db.delete_workflow_if_idle(workflow_id, owner_id):
            logger.info("Deleted workflow %s", workflow_id)
            return
        if not self.db.get_workflow(workflow_id, owner_id):
            raise NotFoundError("workflow", workflow_id)
        raise ConflictError(
            "Cannot delete workflow with pending approvals",
            context={"workflow_id": workflow_id},
        )

    def get_workflow_templates(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(WORKFLOW_TEMPLATES)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @handle_store_errors("submit_for_approval")
    async def submit_for_approval(
        self,
        invoice_id: str,
        submitter_id: str,
        workflow_id: str,
        notes: str = "",
    ) -> ApprovalRecord:
        workflow_row = self.db.get_workflow(workflow_id, submitter_id)
        if not workflow_row or not workflow_row.get("is_active"):
            raise NotFoundError("workflow", workflow_id, message="Invalid or inactive workflow")
        workflow = Workflow.from_row(workflow_row)

        invoice = self.db.get_invoice(invoice_id, submitter_id)
        if not invoice:
            raise NotFoundError("invoice", invoice_id)

        existing = self.db.get_pending_approval_for_invoice(invoice_id)
        if existing:
            raise ConflictError(
                "Invoice already has a pending approval",
                context={"approval_id": existing["id"], "invoice_id": invoice_id},
            )

        now = _utcnow().isoformat()
        notes = notes or ""
        payload: Dict[str, Any] = {
            "invoice_id": invoice_id,
            "workflow_id": workflow.id,
            "submitted_by": submitter_id,
            "submitted_at": now,
            "notes": notes,
        }

        amount = invoice.get("total_amount")
        if workflow.should_auto_approve(amount):
            reason = (
                f"Amount {format_amount(amount)} is at or below the auto-approve threshold "
                f"{format_amount(workflow.auto_approve_threshold)}"
            )
            data = ApprovalData(
                approval_history=[
                    HistoryEntry(
                        step=0,
                        action="auto_approved",
                        actor=SYSTEM_ACTOR,
                        timestamp=now,
                        comment=notes or reason,
                        sequence=1,
                    )
                ],
                auto_approved=True,
                approval_reason=reason,
            )
            row = self.db.insert_approval(
                {
                    **payload,
                    "status": "approved",
                    "current_step": AUTO_APPROVED_STEP,
                    "approved_at": now,
                    "approved_by": SYSTEM_ACTOR,
                    "approval_data": data.to_dict(),
                },
                invoice_status=INVOICE_STATUS_FOR["approved"],
            )
            record = ApprovalRecord.from_row(row)
            log_approval_event(
                "auto_approved",
                record.id,
                actor_id=SYSTEM_ACTOR,
                invoice_id=invoice_id,
                workflow_id=workflow.id,
                amount=amount,
            )
            return record

        if not workflow.steps:
            raise ValidationError("Workflow has no approval steps", field="approval_steps")

        outbox = _assign_ids(self.notifier.build_step_requests(workflow, 0, invoice, payload))
        try:
            row = self.db.insert_approval(
                {
                    **payload,
                    "status": "pending",
                    "current_step": 0,
                    "approval_data": ApprovalData().to_dict(),
                },
                invoice_status=INVOICE_STATUS_FOR["pending"],
                outbox=outbox,
            )
        except INTEGRITY_ERRORS:
            # A concurrent submit for the same invoice won the unique pending slot.
            raise ConflictError(
                "Invoice already has a pending approval",
                context={"invoice_id": invoice_id},
            )
        record = ApprovalRecord.from_row(row)
        log_approval_event(
            "submitted",
            record.id,
            actor_id=submitter_id,
            invoice_id=invoice_id,
            workflow_id=workflow.id,
            notifications=len(outbox),
        )
        await self._dispatch([message["id"] for message in outbox])
        return record

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @handle_store_errors("process_approval")
    async def process_approval(
        self,
        approval_id: str,
        actor_id: str,
        action: str,
        comment: str = "",
    ) -> ApprovalRecord:
        if action not in ACTIONS:
            raise ValidationError('Invalid action. Must be "approve" or "reject"', field="action")

        row = self.db.get_approval(approval_id)
        if not row:
            raise NotFoundError("approval", approval_id)
        record = ApprovalRecord.from_row(row)
        if is_terminal(record.status):
            raise ConflictError(
                "Approval is not pending",
                context={"approval_id": approval_id, "status": record.status},
            )

        workflow_row = self.db.get_workflow(record.workflow_id)
        if not workflow_row:
            raise NotFoundError("workflow", record.workflow_id)
        workflow = Workflow.from_row(workflow_row)

        current = record.current_step
        step = workflow.step_at(current)
        if step is None or not step.approvers.can_act(actor_id):
            raise AuthorizationError(actor_id, step=current)

        now = _utcnow().isoformat()
        comment = comment or ""
        data = record.approval_data
        data.approval_history.append(
            HistoryEntry(
                step=current,
                action=action,
                actor=actor_id,
                timestamp=now,
                comment=comment,
                sequence=len(data.approval_history) + 1,
            )
        )

        invoice = self.db.get_invoice(record.invoice_id) or {"id": record.invoice_id}
        next_step: Optional[int] = None
        outbox: List[Dict[str, Any]] = []

        if action == "reject":
            new_status = "rejected"
            event = "rejected"
        else:
            data.complete_step(current)
            if workflow.is_complete(data.steps_completed) or workflow.step_at(current + 1) is None:
                new_status = "approved"
                event = "approved"
            else:
                new_status = "pending"
                event = "advanced"
                next_step = current + 1
                outbox.extend(self.notifier.build_step_requests(workflow, next_step, invoice, row))

        assert_valid_transition(record.status, new_status)

        updates: Dict[str, Any] = {"status": new_status, "approval_data": data.to_dict()}
        if next_step is not None:
            updates["current_step"] = next_step
        if new_status == "approved":
            updates["approved_at"] = now
            updates["approved_by"] = actor_id

        notice = self.notifier.build_result_notice(
            workflow, invoice, row, action, actor_id, comment, current, next_step
        )
        if notice:
            outbox.append(notice)
        outbox = _assign_ids(outbox)

        affected = self.db.transition_approval(
            approval_id,
            expected_status=record.status,
            expected_revision=record.revision,
            updates=updates,
            invoice_id=record.invoice_id,
            invoice_status=INVOICE_STATUS_FOR[new_status] if new_status != "pending" else None,
            outbox=outbox,
        )
        if affected != 1:
            raise ConflictError(
                "Approval was modified by another request; reload and retry",
                context={"approval_id": approval_id, "revision": record.revision},
            )

        log_approval_event(
            event,
            approval_id,
            actor_id=actor_id,
            step=current,
            next_step=next_step,
            invoice_id=record.invoice_id,
        )
        await self._dispatch([message["id"] for message in outbox])

        updated = self.db.get_approval(approval_id)
        return ApprovalRecord.from_row(updated) if updated else record

    async def bulk_approve(
        self,
        approval_ids: List[str],
        actor_id: str,
        comment: str = "",
    ) -> Dict[str, Any]:
        """Approve each id independently; one failure never aborts the batch."""
        successful: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        for approval_id in approval_ids:
            try:
                record = await self.process_approval(approval_id, actor_id, "approve", comment)
            except InvoicelyError as exc:
                failed.append({
                    "approval_id": approval_id,
                    "error": exc.code.value,
                    "message": exc.message,
                })
                continue
            successful.append({
                "approval_id": approval_id,
                "status": record.status,
                "current_step": record.current_step,
            })
        logger.info(
            "Bulk approve by %s: %s succeeded, %s failed",
            actor_id,
            len(successful),
            len(failed),
        )
        return {
            "successful": successful,
            "failed": failed,
            "total_processed": len(approval_ids),
            "success_count": len(successful),
            "error_count": len(failed),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @handle_store_errors("get_pending_approvals")
    async def get_pending_approvals(self, user_id: str) -> List[ApprovalRecord]:
        workflows = {
            workflow.id: workflow
            for workflow in (Workflow.from_row(row) for row in self.db.list_active_workflows())
            if workflow.includes_approver(user_id)
        }
        if not workflows:
            return []

        pending = []
        for row in self.db.list_pending_approvals_for_workflows(list(workflows)):
            record = ApprovalRecord.from_row(row)
            workflow = workflows.get(record.workflow_id)
            step = workflow.step_at(record.current_step) if workflow else None
            if step is None or not step.approvers.can_act(user_id):
                continue
            record.invoice = _invoice_summary(self.db.get_invoice(record.invoice_id))
            record.workflow_name = workflow.name
            pending.append(record)
        return pending

    @handle_store_errors("get_approval_history")
    async def get_approval_history(self, invoice_id: str, user_id: str) -> List[ApprovalRecord]:
        if not self.db.get_invoice(invoice_id, user_id):
            raise NotFoundError("invoice", invoice_id)

        names: Dict[str, Optional[str]] = {}
        history = []
        for row in self.db.list_approvals_by_invoice(invoice_id):
            record = ApprovalRecord.from_row(row)
            if record.workflow_id not in names:
                workflow_row = self.db.get_workflow(record.workflow_id)
                names[record.workflow_id] = workflow_row.get("name") if workflow_row else None
            record.workflow_name = names[record.workflow_id]
            history.append(record)
        return history

    async def get_approval_stats(
        self,
        user_id: str,
        start_date: Union[str, datetime, None] = None,
        end_date: Union[str, datetime, None] = None,
    ) -> ApprovalStats:
        end = _coerce_bound(end_date, end=True) or _utcnow().isoformat()
        start = _coerce_bound(start_date) or (
            datetime.fromisoformat(end) - timedelta(days=self.settings.stats_default_days)
        ).isoformat()
        try:
            raw = self.db.get_approval_statistics(user_id, start, end)
        except Exception as exc:  # noqa: BLE001
            log_error(
                "approval_stats",
                f"Failed to load approval statistics for {user_id}",
                context={"user_id": user_id, "start": start, "end": end},
                exception=exc,
            )
            return ApprovalStats()
        return ApprovalStats.from_dict(raw)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _dispatch(self, message_ids: List[str]) -> Dict[str, Any]:
        if not message_ids:
            return {"sent": 0, "failed": 0}
        try:
            return await self.notifier.dispatch(message_ids)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Notification dispatch failed for %s: %s", message_ids, exc)
            return {"sent": 0, "failed": len(message_ids), "error": str(exc)}

    @handle_store_errors("send_approval_reminders")
    async def send_approval_reminders(
        self,
        user_id: str,
        older_than_hours: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Remind current-step approvers of the caller's stale submissions."""
        hours = self.settings.reminder_after_hours if older_than_hours is None else float(older_than_hours)
        cutoff = (_utcnow() - timedelta(hours=hours)).isoformat()

        reminded = 0
        message_ids: List[str] = []
        for row in self.db.list_pending_approvals_submitted_before(user_id, cutoff):
            workflow_row = self.db.get_workflow(row["workflow_id"])
            if not workflow_row:
                continue
            workflow = Workflow.from_row(workflow_row)
            invoice = self.db.get_invoice(row["invoice_id"]) or {"id": row["invoice_id"]}
            messages = _assign_ids(
                self.notifier.build_step_requests(
                    workflow, row["current_step"], invoice, row, kind="approval_reminder"
                )
            )
            if not messages:
                continue
            message_ids.extend(self.db.enqueue_notifications(row["id"], messages))
            reminded += 1

        summary = await self._dispatch(message_ids)
        logger.info("Queued %s reminders across %s approvals for %s", len(message_ids), reminded, user_id)
        return {
            "approvals_reminded": reminded,
            "notifications_queued": len(message_ids),
            "sent": summary.get("sent", 0),
            "failed": summary.get("failed", 0),
        }

    async def flush_outbox(self, limit: int = 100) -> Dict[str, Any]:
        summary = await self.notifier.flush(limit=limit)
        return {
            "sent": summary.get("sent", 0),
            "failed": summary.get("failed", 0),
            "attempted": len(summary.get("results", [])),
        }


_ENGINE: Optional[ApprovalEngine] = None


def get_approval_engine() -> ApprovalEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = ApprovalEngine()
    return _ENGINE
