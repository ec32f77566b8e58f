from __future__ import annotations

import logging
from datetime import date

from sqlmodel import Session, col, select

from buildboard.domain.access_context import (
    TOKEN_KINDS,
    ContextLineage,
    ContextType,
    assignment_covers,
    format_access_context,
    today_utc,
)
from buildboard.domain.models import (
    Location,
    PermissionCheckRead,
    PermissionCheckRequest,
    Project,
    Role,
    UserAssignment,
)
from buildboard.infra.db import get_engine
from buildboard.services.assignment_store import AssignmentStore

logger = logging.getLogger(__name__)


class PermissionEvaluator:
    """Allow/deny decisions re-read from live assignments on every call.

    The default is a direct match on the exact context. With
    ``include_inherited`` an organization grant also covers its locations and
    projects, and a location grant covers its projects.
    """

    def __init__(self, store: AssignmentStore | None = None) -> None:
        self._store = store or AssignmentStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def check_permission(
        self,
        organization_id: str,
        payload: PermissionCheckRequest,
        *,
        today: date | None = None,
    ) -> PermissionCheckRead:
        with self._session() as session:
            return self.check(session, organization_id, payload, today or today_utc())

    def check(
        self,
        session: Session,
        organization_id: str,
        payload: PermissionCheckRequest,
        today: date,
    ) -> PermissionCheckRead:
        if not payload.include_inherited:
            direct = self._store.active_for_user(
                session,
                organization_id,
                payload.user_id,
                today,
                context_type=payload.context_type,
                context_id=payload.context_id,
            )
            if not direct:
                return PermissionCheckRead(has_permission=False, reason="No direct assignment found")
            return PermissionCheckRead(
                has_permission=True,
                reason=f"Direct assignment found for {payload.permission}",
                user_roles=self._role_names(session, direct),
            )

        lineage = self.lineage(session, organization_id, payload.context_type, payload.context_id)
        held = self._store.active_for_user(session, organization_id, payload.user_id, today)
        direct = [item for item in held if assignment_covers(item, lineage, inherited=False)]
        direct_ids = {item.id for item in direct}
        inherited = [
            item
            for item in held
            if item.id not in direct_ids and assignment_covers(item, lineage, inherited=True)
        ]
        matched = [*direct, *inherited]
        if not matched:
            return PermissionCheckRead(has_permission=False, reason="No direct or inherited assignment found")

        inherited_from = sorted(
            {
                format_access_context(item.context_type, item.context_id)
                for item in inherited
                if ContextType(item.context_type) in TOKEN_KINDS
            }
        )
        reason = (
            f"Direct assignment found for {payload.permission}"
            if direct
            else f"Inherited assignment found for {payload.permission}"
        )
        logger.debug(
            "permission %s for user %s on %s:%s matched %d assignments",
            payload.permission,
            payload.user_id,
            payload.context_type.value,
            payload.context_id,
            len(matched),
        )
        return PermissionCheckRead(
            has_permission=True,
            reason=reason,
            user_roles=self._role_names(session, matched),
            inherited_from=inherited_from,
        )

    def lineage(
        self,
        session: Session,
        organization_id: str,
        context_type: ContextType,
        context_id: str,
    ) -> ContextLineage:
        ancestors: dict[ContextType, str] = {}
        if context_type == ContextType.PROJECT:
            project = session.exec(
                select(Project)
                .where(Project.id == context_id)
                .where(Project.organization_id == organization_id)
                .where(col(Project.is_deleted).is_(False))
            ).first()
            if project is not None:
                ancestors = {
                    ContextType.LOCATION: project.location_id,
                    ContextType.ORGANIZATION: organization_id,
                }
        elif context_type == ContextType.LOCATION:
            location = session.exec(
                select(Location)
                .where(Location.id == context_id)
                .where(Location.organization_id == organization_id)
                .where(col(Location.is_deleted).is_(False))
            ).first()
            if location is not None:
                ancestors = {ContextType.ORGANIZATION: organization_id}
        return ContextLineage(context_type, context_id, ancestors)

    def _role_names(self, session: Session, assignments: list[UserAssignment]) -> list[str]:
        role_ids = {item.role_id for item in assignments}
        roles = session.exec(select(Role).where(col(Role.id).in_(role_ids))).all()
        return sorted({item.name for item in roles})
