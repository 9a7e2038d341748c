"""Approval record state machine and invoice status side effects."""
from __future__ import annotations

from typing import Dict


APPROVAL_STATUSES = {
    "pending",
    "approved",
    "rejected",
}


VALID_TRANSITIONS: Dict[str, set[str]] = {
    "pending": {"pending", "approved", "rejected"},  # pending -> pending is a step advance
    "approved": set(),
    "rejected": set(),
}


TERMINAL_STATUSES = {"approved", "rejected"}

ACTIONS = {"approve", "reject"}

# Invoice status the engine writes alongside each approval status.
INVOICE_STATUS_FOR = {
    "pending": "pending_approval",
    "approved": "approved",
    "rejected": "draft",
}

AUTO_APPROVED_STEP = -1


class ApprovalStateError(ValueError):
    """Raised when an invalid transition is attempted."""


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def assert_valid_transition(from_status: str, to_status: str) -> None:
    if from_status not in APPROVAL_STATUSES or to_status not in APPROVAL_STATUSES:
        raise ApprovalStateError(f"Unknown status transition: {from_status} -> {to_status}")
    allowed = VALID_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise ApprovalStateError(f"Invalid transition: {from_status} -> {to_status}")
