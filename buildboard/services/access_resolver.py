from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlmodel import Session, col, select

from buildboard.domain.access_context import (
    ContextLineage,
    ContextType,
    access_context_tokens,
    assignment_covers,
    today_utc,
)
from buildboard.domain.models import Location, Project, User, UserAssignment
from buildboard.infra.db import get_engine
from buildboard.services.assignment_store import AssignmentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessResolution:
    location_ids: frozenset[str]
    is_org_wide: bool
    access_contexts: list[str] = field(default_factory=list)

    def allows_location(self, location_id: str) -> bool:
        return self.is_org_wide or location_id in self.location_ids


class AccessResolver:
    """Turns a user's live assignments into the locations they may see."""

    def __init__(self, store: AssignmentStore | None = None) -> None:
        self._store = store or AssignmentStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def resolve_accessible_locations(
        self,
        user_id: str,
        organization_id: str,
        *,
        today: date | None = None,
    ) -> AccessResolution:
        with self._session() as session:
            return self.resolve(session, user_id, organization_id, today or today_utc())

    def resolve(self, session: Session, user_id: str, organization_id: str, today: date) -> AccessResolution:
        assignments = self._store.active_for_user(session, organization_id, user_id, today)
        tokens = access_context_tokens(assignments)

        user = session.get(User, user_id)
        is_super_admin = user is not None and user.organization_id == organization_id and user.is_super_admin
        organization = ContextLineage(ContextType.ORGANIZATION, organization_id, {})
        holds_org_grant = any(
            item.context_type == ContextType.ORGANIZATION.value and assignment_covers(item, organization)
            for item in assignments
        )
        if is_super_admin or holds_org_grant:
            return AccessResolution(
                location_ids=frozenset(self._organization_location_ids(session, organization_id)),
                is_org_wide=True,
                access_contexts=tokens,
            )

        location_ids: set[str] = set()
        project_ids: set[str] = set()
        for item in assignments:
            if item.context_type == ContextType.LOCATION.value:
                location_ids.add(item.context_id)
            elif item.context_type == ContextType.PROJECT.value:
                project_ids.add(item.context_id)

        project_locations = self._project_location_ids(session, organization_id, project_ids)
        for project_id in sorted(project_ids - project_locations.keys()):
            logger.warning("skipping project %s for user %s: project missing or deleted", project_id, user_id)
        location_ids.update(project_locations.values())
        return AccessResolution(location_ids=frozenset(location_ids), is_org_wide=False, access_contexts=tokens)

    def _organization_location_ids(self, session: Session, organization_id: str) -> list[str]:
        statement = (
            select(Location.id)
            .where(Location.organization_id == organization_id)
            .where(col(Location.is_deleted).is_(False))
        )
        return list(session.exec(statement).all())

    def _project_location_ids(self, session: Session, organization_id: str, project_ids: set[str]) -> dict[str, str]:
        if not project_ids:
            return {}
        statement = (
            select(Project)
            .where(col(Project.id).in_(project_ids))
            .where(Project.organization_id == organization_id)
            .where(col(Project.is_deleted).is_(False))
        )
        return {item.id: item.location_id for item in session.exec(statement).all()}
