"""Payroll batch state machine with transition validation."""

from __future__ import annotations

from reporting_engine.core.errors import InvalidTransitionError
from reporting_engine.models.entities import PayrollBatchStatus


class PayrollBatchStateMachine:
    """State machine for payroll batch status transitions.

    Allowed transitions:
    - draft → processing
    - processing → completed
    """

    VALID_TRANSITIONS: dict[PayrollBatchStatus, list[PayrollBatchStatus]] = {
        PayrollBatchStatus.DRAFT: [PayrollBatchStatus.PROCESSING],
        PayrollBatchStatus.PROCESSING: [PayrollBatchStatus.COMPLETED],
        PayrollBatchStatus.COMPLETED: [],  # Terminal state
    }

    # Only drafts may be deleted; anything later has committed money.
    DELETABLE = {PayrollBatchStatus.DRAFT}

    @classmethod
    def can_transition(cls, from_status: PayrollBatchStatus, to_status: PayrollBatchStatus) -> bool:
        """Check if a transition is valid."""
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: PayrollBatchStatus, to_status: PayrollBatchStatus) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            reason = None
            if from_status == PayrollBatchStatus.COMPLETED:
                reason = "batch has already been processed"
            raise InvalidTransitionError(from_status.value, to_status.value, reason)

    @classmethod
    def can_delete(cls, status: PayrollBatchStatus) -> bool:
        return status in cls.DELETABLE

    @classmethod
    def get_next_statuses(cls, current_status: PayrollBatchStatus) -> list[PayrollBatchStatus]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])
