from __future__ import annotations

from sqlmodel import Session, col, or_, select

from buildboard.domain.access_context import VALIDATED_CONTEXT_TYPES, ContextType
from buildboard.domain.errors import ContextNotFoundError, NotFoundError, ValidationError
from buildboard.domain.models import Location, Organization, Project, Role, User
from buildboard.infra.db import get_engine


class ContextValidator:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def validate_assignment_context(self, context_type: ContextType, context_id: str, organization_id: str) -> None:
        with self._session() as session:
            self.validate(session, context_type, context_id, organization_id)

    def validate(
        self,
        session: Session,
        context_type: ContextType | str,
        context_id: str,
        organization_id: str,
    ) -> None:
        try:
            kind = ContextType(context_type)
        except ValueError as exc:
            raise ValidationError(f"unsupported context type: {context_type}") from exc
        if kind not in VALIDATED_CONTEXT_TYPES:
            raise ValidationError(f"unsupported context type: {kind.value}")

        if kind == ContextType.ORGANIZATION:
            found = context_id == organization_id and self._live_organization(session, context_id)
        elif kind == ContextType.LOCATION:
            found = self._live_location(session, organization_id, context_id) is not None
        else:
            found = self._live_project(session, organization_id, context_id) is not None
        if not found:
            raise ContextNotFoundError(f"{kind.value} with ID {context_id} not found or deleted")

    def _live_organization(self, session: Session, organization_id: str) -> bool:
        organization = session.get(Organization, organization_id)
        return organization is not None and not organization.is_deleted

    def _live_location(self, session: Session, organization_id: str, location_id: str) -> Location | None:
        statement = (
            select(Location)
            .where(Location.id == location_id)
            .where(Location.organization_id == organization_id)
            .where(col(Location.is_deleted).is_(False))
        )
        return session.exec(statement).first()

    def _live_project(self, session: Session, organization_id: str, project_id: str) -> Project | None:
        statement = (
            select(Project)
            .where(Project.id == project_id)
            .where(Project.organization_id == organization_id)
            .where(col(Project.is_deleted).is_(False))
        )
        return session.exec(statement).first()

    def require_user(self, session: Session, organization_id: str, user_id: str) -> User:
        statement = select(User).where(User.organization_id == organization_id).where(User.id == user_id)
        user = session.exec(statement).first()
        if user is None:
            raise NotFoundError(f"user with ID {user_id} not found")
        return user

    def require_role(self, session: Session, organization_id: str, role_id: str) -> Role:
        statement = (
            select(Role)
            .where(Role.id == role_id)
            .where(or_(col(Role.organization_id).is_(None), col(Role.organization_id) == organization_id))
        )
        role = session.exec(statement).first()
        if role is None:
            raise NotFoundError(f"role with ID {role_id} not found")
        return role
