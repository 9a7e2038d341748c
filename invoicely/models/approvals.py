"""
Approval workflow domain types.

Workflows are user-owned routing policies made of ordered steps. Each
invoice submitted against a workflow gets one ApprovalRecord that tracks
which step it is on and an append-only history of actions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import Field

from invoicely.models.base import IVBaseModel
from invoicely.services.approval_state import AUTO_APPROVED_STEP
from invoicely.services.errors import ValidationError


def _normalize_identity(value: Any) -> str:
    identity = str(value or "").strip()
    # Email addresses compare case-insensitively; opaque ids compare as-is.
    if "@" in identity:
        return identity.casefold()
    return identity


@dataclass(frozen=True)
class ApproverSet:
    """The identities allowed to act on a step."""
    members: Tuple[str, ...] = ()

    @classmethod
    def from_iterable(cls, values: Optional[Iterable[Any]]) -> "ApproverSet":
        seen: List[str] = []
        for value in values or []:
            identity = _normalize_identity(value)
            if identity and identity not in seen:
                seen.append(identity)
        return cls(tuple(seen))

    def can_act(self, actor_id: Optional[str]) -> bool:
        if not actor_id:
            return False
        return _normalize_identity(actor_id) in self.members

    def __iter__(self) -> Iterator[str]:
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def to_list(self) -> List[str]:
        return list(self.members)


@dataclass
class ApprovalStep:
    """One stage of a workflow."""
    name: str
    approvers: ApproverSet
    description: str = ""
    required: bool = True
    # Stored for display; routing never evaluates it.
    conditions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ApprovalStep":
        return cls(
            name=str(raw.get("name") or "").strip(),
            approvers=ApproverSet.from_iterable(raw.get("approvers")),
            description=str(raw.get("description") or ""),
            required=raw.get("required") is not False,
            conditions=dict(raw.get("conditions") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "description": self.description,
            "approvers": self.approvers.to_list(),
            "required": self.required,
        }
        if self.conditions:
            data["conditions"] = self.conditions
        return data


def validate_steps(raw_steps: Any) -> List[ApprovalStep]:
    """Parse and validate a raw ``approval_steps`` payload."""
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValidationError("At least one approval step is required", field="approval_steps")
    steps = []
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raise ValidationError(
                "Each approval step must have a name and at least one approver",
                field=f"approval_steps[{index}]",
            )
        approvers = raw.get("approvers")
        if not isinstance(approvers, list):
            raise ValidationError(
                "Each approval step must have a name and at least one approver",
                field=f"approval_steps[{index}].approvers",
            )
        step = ApprovalStep.from_dict(raw)
        if not step.name or not len(step.approvers):
            raise ValidationError(
                "Each approval step must have a name and at least one approver",
                field=f"approval_steps[{index}]",
            )
        min_amount = step.conditions.get("min_amount")
        if min_amount is not None and not _is_number(min_amount):
            raise ValidationError(
                "Step condition min_amount must be a number",
                field=f"approval_steps[{index}].conditions.min_amount",
            )
        steps.append(step)
    return steps


def validate_threshold(value: Any) -> Optional[float]:
    if value is None:
        return None
    if not _is_number(value) or float(value) < 0:
        raise ValidationError(
            "auto_approve_threshold must be a non-negative number",
            field="auto_approve_threshold",
        )
    return float(value)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


@dataclass
class Workflow:
    """A reusable, user-owned routing policy."""
    id: str
    user_id: str
    name: str
    steps: List[ApprovalStep]
    description: str = ""
    require_all_approvers: bool = False
    auto_approve_threshold: Optional[float] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Workflow":
        threshold = row.get("auto_approve_threshold")
        return cls(
            id=row["id"],
            user_id=row.get("user_id") or "",
            name=row.get("name") or "",
            steps=[ApprovalStep.from_dict(s) for s in row.get("approval_steps") or [] if isinstance(s, dict)],
            description=row.get("description") or "",
            require_all_approvers=bool(row.get("require_all_approvers")),
            auto_approve_threshold=float(threshold) if threshold is not None else None,
            is_active=bool(row.get("is_active")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def step_at(self, index: int) -> Optional[ApprovalStep]:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def includes_approver(self, actor_id: str) -> bool:
        return any(step.approvers.can_act(actor_id) for step in self.steps)

    def should_auto_approve(self, amount: Optional[float]) -> bool:
        if self.auto_approve_threshold is None or amount is None:
            return False
        return float(amount) <= self.auto_approve_threshold

    def is_complete(self, steps_completed: Iterable[int]) -> bool:
        """Completion policy.

        All-approvers workflows finish once every step index is completed;
        otherwise the first completed step finishes the whole approval.
        """
        completed = set(steps_completed)
        if not self.steps:
            return True
        if self.require_all_approvers:
            return len(completed) >= len(self.steps)
        return len(completed) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "approval_steps": [s.to_dict() for s in self.steps],
            "require_all_approvers": self.require_all_approvers,
            "auto_approve_threshold": self.auto_approve_threshold,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class HistoryEntry:
    step: int
    action: str
    actor: str
    timestamp: str
    comment: str = ""
    sequence: int = 0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            step=int(raw.get("step") or 0),
            action=str(raw.get("action") or ""),
            actor=str(raw.get("actor") or raw.get("by") or ""),
            timestamp=str(raw.get("timestamp") or raw.get("at") or ""),
            comment=str(raw.get("comment") or raw.get("comments") or ""),
            sequence=int(raw.get("sequence") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "action": self.action,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "comment": self.comment,
            "sequence": self.sequence,
        }


@dataclass
class ApprovalData:
    steps_completed: List[int] = field(default_factory=list)
    approval_history: List[HistoryEntry] = field(default_factory=list)
    auto_approved: bool = False
    approval_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "ApprovalData":
        raw = raw or {}
        return cls(
            steps_completed=[int(s) for s in raw.get("steps_completed") or []],
            approval_history=[
                HistoryEntry.from_dict(h) for h in raw.get("approval_history") or [] if isinstance(h, dict)
            ],
            auto_approved=bool(raw.get("auto_approved")),
            approval_reason=raw.get("approval_reason"),
        )

    def complete_step(self, step: int) -> None:
        if step not in self.steps_completed:
            self.steps_completed.append(step)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "steps_completed": list(self.steps_completed),
            "approval_history": [h.to_dict() for h in self.approval_history],
        }
        if self.auto_approved:
            data["auto_approved"] = True
            data["approval_reason"] = self.approval_reason
        return data


@dataclass
class ApprovalRecord:
    """Per-invoice progress through a workflow."""
    id: str
    invoice_id: str
    workflow_id: str
    status: str
    current_step: int
    submitted_by: str
    submitted_at: Optional[str] = None
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    notes: str = ""
    approval_data: ApprovalData = field(default_factory=ApprovalData)
    revision: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    # Populated by queries that join related rows
    invoice: Optional[Dict[str, Any]] = None
    workflow_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ApprovalRecord":
        return cls(
            id=row["id"],
            invoice_id=row.get("invoice_id") or "",
            workflow_id=row.get("workflow_id") or "",
            status=row.get("status") or "pending",
            current_step=int(row.get("current_step") or 0),
            submitted_by=row.get("submitted_by") or "",
            submitted_at=row.get("submitted_at"),
            approved_at=row.get("approved_at"),
            approved_by=row.get("approved_by"),
            notes=row.get("notes") or "",
            approval_data=ApprovalData.from_dict(row.get("approval_data")),
            revision=int(row.get("revision") or 0),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_auto_approved(self) -> bool:
        return self.current_step == AUTO_APPROVED_STEP

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "workflow_id": self.workflow_id,
            "status": self.status,
            "current_step": self.current_step,
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at,
            "approved_at": self.approved_at,
            "approved_by": self.approved_by,
            "notes": self.notes,
            "approval_data": self.approval_data.to_dict(),
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.invoice is not None:
            data["invoice"] = self.invoice
        if self.workflow_name is not None:
            data["workflow_name"] = self.workflow_name
        return data


@dataclass
class ApprovalStats:
    total_approvals: int = 0
    pending_approvals: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    average_approval_time: float = 0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ApprovalStats":
        return cls(
            total_approvals=int(raw.get("total_approvals") or 0),
            pending_approvals=int(raw.get("pending_approvals") or 0),
            approved_count=int(raw.get("approved_count") or 0),
            rejected_count=int(raw.get("rejected_count") or 0),
            average_approval_time=float(raw.get("average_approval_time") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_approvals": self.total_approvals,
            "pending_approvals": self.pending_approvals,
            "approved_count": self.approved_count,
            "rejected_count": self.rejected_count,
            "average_approval_time": self.average_approval_time,
        }


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class WorkflowCreateRequest(IVBaseModel):
    # Step validation lives in the engine so every caller gets the same errors.
    name: Optional[str] = None
    description: str = ""
    approval_steps: Optional[List[Dict[str, Any]]] = None
    require_all_approvers: bool = False
    auto_approve_threshold: Optional[float] = None
    is_active: bool = True


class WorkflowUpdateRequest(IVBaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    approval_steps: Optional[List[Dict[str, Any]]] = None
    require_all_approvers: Optional[bool] = None
    auto_approve_threshold: Optional[float] = None
    is_active: Optional[bool] = None


class SubmitApprovalRequest(IVBaseModel):
    workflow_id: str = Field(..., min_length=1)
    notes: str = ""


class ApprovalActionRequest(IVBaseModel):
    action: str = Field(..., min_length=1)
    comments: str = ""


class BulkApproveRequest(IVBaseModel):
    approval_ids: List[str] = Field(..., min_length=1)
    comments: str = ""


class ReminderRequest(IVBaseModel):
    older_than_hours: Optional[float] = Field(default=None, ge=0)
