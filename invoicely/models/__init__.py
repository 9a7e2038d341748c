from invoicely.models.base import IVBaseModel
from invoicely.models.approvals import (
    ApprovalActionRequest,
    ApprovalData,
    ApprovalRecord,
    ApprovalStats,
    ApprovalStep,
    ApproverSet,
    BulkApproveRequest,
    HistoryEntry,
    ReminderRequest,
    SubmitApprovalRequest,
    Workflow,
    WorkflowCreateRequest,
    WorkflowUpdateRequest,
)

__all__ = [
    "ApprovalActionRequest",
    "ApprovalData",
    "ApprovalRecord",
    "ApprovalStats",
    "ApprovalStep",
    "ApproverSet",
    "BulkApproveRequest",
    "HistoryEntry",
    "IVBaseModel",
    "ReminderRequest",
    "SubmitApprovalRequest",
    "Workflow",
    "WorkflowCreateRequest",
    "WorkflowUpdateRequest",
]
