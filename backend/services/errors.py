"""
PaySys Approvals - Workflow Errors

Typed exceptions raised by the transition executor and the document store.
Routers map them to HTTP responses through ``http_status`` and ``to_dict()``.
"""

from typing import Dict, Any, Optional


class WorkflowError(Exception):
    """Base exception for approval workflow errors."""

    kind = "workflow_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class NotFoundError(WorkflowError):
    """Unknown document type or document id."""
    kind = "not_found"
    http_status = 404


class AuthorizationError(WorkflowError):
    """Actor role may not act on the document in its current state."""
    kind = "authorization"
    http_status = 403


class ValidationError(WorkflowError):
    """Missing or invalid input (exit time, rejection reason, locked fields)."""
    kind = "validation"
    http_status = 422


class ConflictError(WorkflowError):
    """Version conflict persisted after all optimistic retries."""
    kind = "conflict"
    http_status = 409
    retryable = True


class StorageError(WorkflowError):
    """Document store unreachable or a write did not complete."""
    kind = "storage"
    http_status = 503
    retryable = True
