"""Invoice approval workflow APIs (workflow CRUD, submission, actions, queries)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from invoicely.core.auth import TokenData, get_current_user, require_role
from invoicely.models.approvals import (
    ApprovalActionRequest,
    BulkApproveRequest,
    ReminderRequest,
    SubmitApprovalRequest,
    WorkflowCreateRequest,
    WorkflowUpdateRequest,
)
from invoicely.services.approval_engine import ApprovalEngine, get_approval_engine


router = APIRouter(prefix="/api/approvals", tags=["approvals"])


def _ok(data: Any, **extra: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, **extra}


@router.post("/workflows", status_code=201)
async def create_workflow(
    request: WorkflowCreateRequest,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    workflow = await engine.create_workflow(user.user_id, request.model_dump())
    return _ok(workflow.to_dict(), message="Approval workflow created successfully")


@router.get("/workflows")
async def list_workflows(
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    workflows = await engine.list_workflows(user.user_id)
    return _ok([w.to_dict() for w in workflows], count=len(workflows))


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    workflow = await engine.get_workflow(workflow_id, user.user_id)
    return _ok(workflow.to_dict())


@router.put("/workflows/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    workflow = await engine.update_workflow(
        workflow_id,
        user.user_id,
        request.model_dump(exclude_unset=True),
    )
    return _ok(workflow.to_dict(), message="Approval workflow updated successfully")


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    await engine.delete_workflow(workflow_id, user.user_id)
    return {"success": True, "message": "Approval workflow deleted successfully"}


@router.post("/invoices/{invoice_id}/submit", status_code=201)
async def submit_for_approval(
    invoice_id: str,
    request: SubmitApprovalRequest,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    record = await engine.submit_for_approval(
        invoice_id,
        user.user_id,
        request.workflow_id,
        notes=request.notes,
    )
    message = (
        "Invoice auto-approved"
        if record.is_auto_approved
        else "Invoice submitted for approval successfully"
    )
    return _ok(record.to_dict(), message=message)


@router.post("/{approval_id}/action")
async def process_approval(
    approval_id: str,
    request: ApprovalActionRequest,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    record = await engine.process_approval(
        approval_id,
        user.user_id,
        request.action,
        comment=request.comments,
    )
    past = "approved" if request.action == "approve" else "rejected"
    return _ok(record.to_dict(), message=f"Invoice {past} successfully")


@router.get("/pending")
async def get_pending_approvals(
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    records = await engine.get_pending_approvals(user.user_id)
    return _ok([r.to_dict() for r in records], count=len(records))


@router.get("/invoices/{invoice_id}/history")
async def get_approval_history(
    invoice_id: str,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    records = await engine.get_approval_history(invoice_id, user.user_id)
    return _ok([r.to_dict() for r in records], count=len(records))


@router.get("/stats")
async def get_approval_stats(
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    stats = await engine.get_approval_stats(user.user_id, start_date, end_date)
    return _ok(stats.to_dict())


@router.get("/templates")
async def get_workflow_templates(
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    templates = engine.get_workflow_templates()
    return _ok(templates, count=len(templates))


@router.post("/bulk/approve")
async def bulk_approve(
    request: BulkApproveRequest,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    result = await engine.bulk_approve(request.approval_ids, user.user_id, comment=request.comments)
    return _ok(
        result,
        message=f"Processed {result['total_processed']} approvals: "
        f"{result['success_count']} successful, {result['error_count']} failed",
    )


@router.post("/reminders")
async def send_approval_reminders(
    request: Optional[ReminderRequest] = None,
    user: TokenData = Depends(get_current_user),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    older_than_hours = request.older_than_hours if request else None
    result = await engine.send_approval_reminders(user.user_id, older_than_hours)
    return _ok(result)


@router.post("/outbox/flush")
async def flush_outbox(
    limit: int = Query(default=100, ge=1, le=1000),
    user: TokenData = Depends(require_role(["api", "admin"])),
    engine: ApprovalEngine = Depends(get_approval_engine),
):
    result = await engine.flush_outbox(limit=limit)
    return _ok(result)
