from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Protocol


class ContextType(StrEnum):
    ORGANIZATION = "organization"
    PROJECT = "project"
    LOCATION = "location"
    DEPARTMENT = "department"
    EQUIPMENT = "equipment"
    PHASE = "phase"


# Context types backed by an entity table; the others cannot be validated yet.
VALIDATED_CONTEXT_TYPES: frozenset[ContextType] = frozenset(
    {ContextType.ORGANIZATION, ContextType.LOCATION, ContextType.PROJECT}
)

TOKEN_KINDS: dict[ContextType, str] = {
    ContextType.ORGANIZATION: "ORG",
    ContextType.LOCATION: "LOC",
    ContextType.PROJECT: "PROJ",
}
TOKEN_KIND_TYPES: dict[str, ContextType] = {kind: ctx for ctx, kind in TOKEN_KINDS.items()}

# held context type -> requested context types it satisfies
CONTEXT_IMPLIES: dict[ContextType, frozenset[ContextType]] = {
    ContextType.ORGANIZATION: frozenset(
        {ContextType.ORGANIZATION, ContextType.LOCATION, ContextType.PROJECT}
    ),
    ContextType.LOCATION: frozenset({ContextType.LOCATION, ContextType.PROJECT}),
    ContextType.PROJECT: frozenset({ContextType.PROJECT}),
}


class DatedAssignment(Protocol):
    is_deleted: bool
    start_date: date | None
    end_date: date | None


class HeldContext(Protocol):
    context_type: str
    context_id: str


def today_utc() -> date:
    return datetime.now(UTC).date()


def is_assignment_active(assignment: DatedAssignment, today: date) -> bool:
    if assignment.is_deleted:
        return False
    if assignment.start_date is not None and assignment.start_date > today:
        return False
    if assignment.end_date is not None and assignment.end_date < today:
        return False
    return True


@dataclass(frozen=True)
class ContextLineage:
    """The requested context plus every enclosing context it belongs to.

    A project lineage carries its location and organization, a location
    lineage carries its organization.
    """

    context_type: ContextType
    context_id: str
    ancestors: dict[ContextType, str]

    def id_for(self, context_type: ContextType) -> str | None:
        if context_type == self.context_type:
            return self.context_id
        return self.ancestors.get(context_type)


def assignment_covers(held: HeldContext, lineage: ContextLineage, *, inherited: bool = True) -> bool:
    held_type = ContextType(held.context_type)
    if held_type == lineage.context_type and held.context_id == lineage.context_id:
        return True
    if not inherited:
        return False
    if lineage.context_type not in CONTEXT_IMPLIES.get(held_type, frozenset()):
        return False
    return lineage.id_for(held_type) == held.context_id


@dataclass(frozen=True)
class AccessContext:
    context_type: ContextType
    context_id: str

    @property
    def token(self) -> str:
        return format_access_context(self.context_type, self.context_id)


def format_access_context(context_type: ContextType | str, context_id: str) -> str:
    kind = TOKEN_KINDS.get(ContextType(context_type))
    if kind is None:
        raise ValueError(f"context type {context_type} has no access token kind")
    return f"{kind}:{context_id}"


def parse_access_context(token: str) -> AccessContext:
    kind, sep, context_id = token.partition(":")
    if not sep or not context_id or kind not in TOKEN_KIND_TYPES:
        raise ValueError(f"malformed access context token: {token!r}")
    return AccessContext(context_type=TOKEN_KIND_TYPES[kind], context_id=context_id)


def access_context_tokens(assignments: list[HeldContext]) -> list[str]:
    tokens = {
        format_access_context(item.context_type, item.context_id)
        for item in assignments
        if ContextType(item.context_type) in TOKEN_KINDS
    }
    return sorted(tokens)


def tokens_allow_location(contexts: list[AccessContext], organization_id: str, location_id: str) -> bool:
    """Coarse check against the token claim; project tokens do not reveal their location."""
    for item in contexts:
        if item.context_type == ContextType.ORGANIZATION and item.context_id == organization_id:
            return True
        if item.context_type == ContextType.LOCATION and item.context_id == location_id:
            return True
    return False
