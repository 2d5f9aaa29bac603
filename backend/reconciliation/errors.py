"""
Reconciliation Errors

Exception taxonomy for the bank reconciliation engine:
- ValidationError: malformed or empty CSV input, invalid lifecycle transitions
- ContextError: missing tenant/session identity (fatal, raised before any write)
- PersistenceError: document store read/write failure (safe to retry drafts)
- NotFoundError: a referenced session does not exist or is not a draft
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation engine errors."""

    error_code = "reconciliation_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        response = {"error": self.error_code, "message": self.message}
        if self.details:
            response["details"] = self.details
        return response


class ValidationError(ReconciliationError):
    error_code = "validation_error"


class ContextError(ReconciliationError):
    error_code = "context_error"


class PersistenceError(ReconciliationError):
    error_code = "persistence_error"


class NotFoundError(ReconciliationError):
    error_code = "not_found"
