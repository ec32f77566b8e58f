from __future__ import annotations

from datetime import date
from enum import StrEnum

from buildboard.domain.access_context import DatedAssignment


class AssignmentState(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"


# Only soft delete is a stored transition; pending/active/expired follow the calendar.
ALLOWED_TRANSITIONS: dict[AssignmentState, set[AssignmentState]] = {
    AssignmentState.PENDING: {AssignmentState.ACTIVE, AssignmentState.DELETED},
    AssignmentState.ACTIVE: {AssignmentState.EXPIRED, AssignmentState.DELETED},
    AssignmentState.EXPIRED: {AssignmentState.DELETED},
    AssignmentState.DELETED: set(),
}


def can_transition(source: AssignmentState, target: AssignmentState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def assignment_state(assignment: DatedAssignment, today: date) -> AssignmentState:
    if assignment.is_deleted:
        return AssignmentState.DELETED
    if assignment.start_date is not None and assignment.start_date > today:
        return AssignmentState.PENDING
    if assignment.end_date is not None and assignment.end_date < today:
        return AssignmentState.EXPIRED
    return AssignmentState.ACTIVE
