"""Domain errors raised by the reporting engine.

Every error carries the HTTP status the service boundary answers with, so
route modules never need to translate exceptions themselves.
"""

from __future__ import annotations


class ReportingError(Exception):
    """Base class for all reporting engine errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ReportValidationError(ReportingError):
    """Malformed filter or payload (e.g. reversed date range, unknown enum value)."""

    status_code = 422


class TenantScopeError(ReportingError):
    """A report or payroll call was attempted without a resolved tenant."""

    status_code = 400


class NotFoundError(ReportingError):
    """Entity does not exist inside the caller's tenant."""

    status_code = 404


class ConsistencyError(ReportingError):
    """Rollups disagree with the grand total. Indicates a bug, never user input."""

    status_code = 500


class InvalidTransitionError(ReportingError):
    """Raised when a state machine transition is not allowed."""

    status_code = 409

    def __init__(self, from_status: str, to_status: str, reason: str | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        message = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class BatchProcessingError(ReportingError):
    """Payroll batch processing failed and was rolled back as a whole."""

    status_code = 500


class ReportTimeoutError(ReportingError):
    """Report assembly exceeded the configured deadline."""

    status_code = 504
