"""Error taxonomy for the MHG Facilities budget service.

Services raise these; the API layer renders them. Nothing here retries:
data-source failures are surfaced to the caller, which owns retry policy.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable machine-readable error codes returned in API error bodies."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    DATA_SOURCE_FAILURE = "DATA_SOURCE_FAILURE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TENANT_REQUIRED = "TENANT_REQUIRED"


class FacilitiesError(Exception):
    """Base class for all domain errors raised by this service."""

    status_code: int = 500
    default_code: ErrorCode = ErrorCode.DATA_SOURCE_FAILURE

    def __init__(
        self,
        message: str,
        error_code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render as the JSON error body used by the API."""
        body: dict[str, Any] = {"error": self.message, "code": self.error_code.value}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(FacilitiesError):
    """An id did not resolve to a live (non-deleted) row for the tenant."""

    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class ConflictError(FacilitiesError):
    """A write would create a second live row for a unique key."""

    status_code = 409
    default_code = ErrorCode.CONFLICT


class DataSourceError(FacilitiesError):
    """The underlying store could not be read or written."""

    status_code = 503
    default_code = ErrorCode.DATA_SOURCE_FAILURE


class TenantRequiredError(FacilitiesError):
    """An operation was attempted without a tenant scope."""

    status_code = 401
    default_code = ErrorCode.TENANT_REQUIRED


class ValidationFailedError(FacilitiesError):
    """Request input failed boundary validation."""

    status_code = 422
    default_code = ErrorCode.VALIDATION_FAILED
