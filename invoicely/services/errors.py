"""
Invoicely Error Handling

Typed errors for the approval engine with user-facing messages and
debugging context.
"""
import sqlite3
from functools import wraps
from typing import Optional, Dict, Any
from enum import Enum

from invoicely.core import database as database_module

STORE_ERRORS: tuple = (sqlite3.Error,)
INTEGRITY_ERRORS: tuple = (sqlite3.IntegrityError,)
if database_module.HAS_POSTGRES:
    STORE_ERRORS = STORE_ERRORS + (database_module.psycopg.Error,)
    INTEGRITY_ERRORS = INTEGRITY_ERRORS + (database_module.psycopg.IntegrityError,)


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # Auth errors (401/403)
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"

    # Lookup / state errors
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # Processing errors (500s)
    DATABASE_ERROR = "DATABASE_ERROR"


STATUS_MAP = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.NOT_AUTHENTICATED: 401,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DATABASE_ERROR: 500,
}


class InvoicelyError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_MAP.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(InvoicelyError):
    """Malformed workflow, step or action input."""

    def __init__(self, message: str, field: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(
            code=ErrorCode.VALIDATION_FAILED,
            message=message,
            detail=detail,
            context={"field": field} if field else None
        )


class AuthenticationError(InvoicelyError):
    """Missing, expired or malformed caller credentials."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(
            code=ErrorCode.NOT_AUTHENTICATED,
            message=message
        )


class NotFoundError(InvoicelyError):
    """Missing workflow, approval or invoice.

    Ownership mismatches raise this too, so callers cannot probe for ids
    that belong to someone else.
    """

    def __init__(self, resource: str, resource_id: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=message or f"{resource.capitalize()} not found",
            context={"resource": resource, "id": resource_id} if resource_id else {"resource": resource}
        )


class AuthorizationError(InvoicelyError):
    """Actor is not an approver of the current step, or lacks the role for a route."""

    def __init__(self, actor_id: str, step: Optional[int] = None, message: Optional[str] = None):
        super().__init__(
            code=ErrorCode.NOT_AUTHORIZED,
            message=message or "User not authorized to approve at this step",
            context={"actor_id": actor_id, "step": step}
        )


class ConflictError(InvoicelyError):
    """Request collides with the current state of a record."""

    def __init__(self, message: str, detail: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.CONFLICT,
            message=message,
            detail=detail,
            context=context
        )


class DatabaseError(InvoicelyError):
    """Store failure surfaced by the database layer."""

    def __init__(self, operation: str, detail: str):
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Database error during {operation}",
            detail=detail,
            context={"operation": operation}
        )


def handle_store_errors(operation: str):
    """
    Decorator that turns raw database driver errors into DatabaseError.

    Usage:
        @handle_store_errors("submit_for_approval")
        async def submit_for_approval(...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except InvoicelyError:
                raise
            except STORE_ERRORS as e:
                raise DatabaseError(operation=operation, detail=str(e))
        return wrapper
    return decorator
