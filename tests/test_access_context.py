from __future__ import annotations

from datetime import date
from types import SimpleNamespace

import pytest

from buildboard.domain.access_context import (
    AccessContext,
    ContextLineage,
    ContextType,
    access_context_tokens,
    assignment_covers,
    format_access_context,
    is_assignment_active,
    parse_access_context,
    tokens_allow_location,
)
from buildboard.domain.assignment_state import AssignmentState, assignment_state, can_transition
from buildboard.domain.errors import ValidationError
from buildboard.services.assignment_service import parse_wire_date

TODAY = date(2026, 3, 15)


def _dated(start: date | None = None, end: date | None = None, deleted: bool = False) -> SimpleNamespace:
    return SimpleNamespace(is_deleted=deleted, start_date=start, end_date=end)


def _held(context_type: ContextType, context_id: str) -> SimpleNamespace:
    return SimpleNamespace(context_type=context_type.value, context_id=context_id)


@pytest.mark.parametrize(
    ("start", "end", "deleted", "expected"),
    [
        (None, None, False, True),
        (TODAY, TODAY, False, True),
        (date(2026, 1, 1), date(2026, 12, 31), False, True),
        (date(2026, 3, 16), None, False, False),
        (None, date(2026, 3, 14), False, False),
        (None, None, True, False),
        (date(2026, 1, 1), None, True, False),
    ],
)
def test_active_predicate_follows_inclusive_window(
    start: date | None,
    end: date | None,
    deleted: bool,
    expected: bool,
) -> None:
    assert is_assignment_active(_dated(start, end, deleted), TODAY) is expected


def test_assignment_state_is_computed_from_dates() -> None:
    assert assignment_state(_dated(), TODAY) == AssignmentState.ACTIVE
    assert assignment_state(_dated(start=date(2026, 4, 1)), TODAY) == AssignmentState.PENDING
    assert assignment_state(_dated(end=date(2026, 3, 1)), TODAY) == AssignmentState.EXPIRED
    assert assignment_state(_dated(end=date(2026, 3, 1), deleted=True), TODAY) == AssignmentState.DELETED

    assert can_transition(AssignmentState.ACTIVE, AssignmentState.EXPIRED)
    assert can_transition(AssignmentState.EXPIRED, AssignmentState.DELETED)
    assert not can_transition(AssignmentState.DELETED, AssignmentState.ACTIVE)
    assert not can_transition(AssignmentState.EXPIRED, AssignmentState.ACTIVE)


@pytest.mark.parametrize("value", ["2024-1-5", "2024-01-5", "24-01-05", "2024-01-05T00:00", "2024/01/05", "2024-02-30"])
def test_wire_dates_must_be_zero_padded(value: str) -> None:
    with pytest.raises(ValidationError):
        parse_wire_date(value, "start_date")


def test_wire_date_round_trip() -> None:
    assert parse_wire_date("2024-01-05", "start_date") == date(2024, 1, 5)
    assert parse_wire_date("", "start_date") is None
    assert parse_wire_date(None, "start_date") is None


def test_tokens_come_from_held_assignments_only() -> None:
    held = [
        _held(ContextType.PROJECT, "p-1"),
        _held(ContextType.PROJECT, "p-1"),
        _held(ContextType.LOCATION, "l-9"),
        _held(ContextType.ORGANIZATION, "o-1"),
        _held(ContextType.DEPARTMENT, "d-4"),
    ]
    assert access_context_tokens(held) == ["LOC:l-9", "ORG:o-1", "PROJ:p-1"]


def test_parse_access_context() -> None:
    parsed = parse_access_context("PROJ:p-7")
    assert parsed == AccessContext(context_type=ContextType.PROJECT, context_id="p-7")
    assert parsed.token == "PROJ:p-7"
    assert format_access_context(ContextType.ORGANIZATION, "o-1") == "ORG:o-1"

    for malformed in ("PHASE:1", "ORG:", "ORG1", ""):
        with pytest.raises(ValueError):
            parse_access_context(malformed)
    with pytest.raises(ValueError):
        format_access_context(ContextType.EQUIPMENT, "e-1")


def test_assignment_covers_applies_implication_only_when_inherited() -> None:
    project = ContextLineage(
        ContextType.PROJECT,
        "p-1",
        {ContextType.LOCATION: "l-1", ContextType.ORGANIZATION: "o-1"},
    )
    org_grant = _held(ContextType.ORGANIZATION, "o-1")
    location_grant = _held(ContextType.LOCATION, "l-1")
    other_location = _held(ContextType.LOCATION, "l-2")
    project_grant = _held(ContextType.PROJECT, "p-1")

    assert assignment_covers(project_grant, project, inherited=False)
    assert not assignment_covers(org_grant, project, inherited=False)
    assert not assignment_covers(location_grant, project, inherited=False)

    assert assignment_covers(org_grant, project)
    assert assignment_covers(location_grant, project)
    assert not assignment_covers(other_location, project)

    location = ContextLineage(ContextType.LOCATION, "l-1", {ContextType.ORGANIZATION: "o-1"})
    assert not assignment_covers(project_grant, location)
    assert assignment_covers(org_grant, location)

    department = ContextLineage(ContextType.DEPARTMENT, "d-1", {})
    assert assignment_covers(_held(ContextType.DEPARTMENT, "d-1"), department)
    assert not assignment_covers(org_grant, department)


def test_tokens_allow_location_is_coarse() -> None:
    contexts = [parse_access_context("LOC:l-1"), parse_access_context("PROJ:p-1")]
    assert tokens_allow_location(contexts, "o-1", "l-1")
    assert not tokens_allow_location(contexts, "o-1", "l-2")
    assert tokens_allow_location([parse_access_context("ORG:o-1")], "o-1", "l-2")
    assert not tokens_allow_location([parse_access_context("ORG:o-2")], "o-1", "l-2")
