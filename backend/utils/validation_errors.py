"""
Structured Error Utilities

Provides standardized error responses for the reconciliation API.
Helps UI distinguish between validation errors, missing context and
connectivity issues.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error" | "context_error" | ...,
    "parameter": "movement_type",
    "message": "movement_type must be one of: income, expense"
}
"""

from datetime import date
from typing import Optional, Any

from fastapi import HTTPException, status

from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    ContextError,
    NotFoundError,
    PersistenceError,
)

# Domain error -> HTTP status
ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ContextError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def from_domain_error(error: ReconciliationError) -> dict:
        response = {
            "error": error.error_code,
            "parameter": None,
            "message": error.message
        }
        if error.details:
            response["details"] = error.details
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """
    Raise HTTPException with structured missing parameter error.

    Raises:
        HTTPException with 400 status (missing tenant/user headers)
    """
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def status_for_error(error: ReconciliationError) -> int:
    """Validation -> 422, Context -> 400, NotFound -> 404, Persistence -> 503, anything else -> 500."""
    for error_type, code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_domain_error(error: ReconciliationError):
    """Raise the HTTPException matching a reconciliation error."""
    raise HTTPException(
        status_code=status_for_error(error),
        detail=ValidationErrorResponse.from_domain_error(error)
    ) from error


def parse_optional_date(value: Optional[str], parameter: str) -> Optional[date]:
    """Validate an optional YYYY-MM-DD parameter."""
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise_invalid_parameter(parameter, f"{parameter} must be a YYYY-MM-DD date", value)
