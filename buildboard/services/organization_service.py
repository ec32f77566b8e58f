from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, or_, select

from buildboard.domain.access_context import ContextType, today_utc
from buildboard.domain.errors import AuthError, ConflictError, NotFoundError
from buildboard.domain.models import (
    SUPER_ADMIN_ROLE_NAME,
    AccessLevel,
    BootstrapAdminRequest,
    DevLoginRequest,
    EventEnvelope,
    Location,
    LocationCreate,
    Organization,
    OrganizationCreate,
    Project,
    ProjectCreate,
    Role,
    RoleCategory,
    RoleCreate,
    RoleType,
    User,
    UserAssignment,
    UserCreate,
)
from buildboard.domain.permissions import (
    PERM_ASSIGNMENT_READ,
    PERM_ASSIGNMENT_WRITE,
    PERM_ORGANIZATION_READ,
    PERM_PROJECT_READ,
    PERM_PROJECT_WRITE,
    PERM_WILDCARD,
    merge_permissions,
)
from buildboard.infra import events
from buildboard.infra.db import get_engine
from buildboard.services.access_resolver import AccessResolution, AccessResolver
from buildboard.services.assignment_store import AssignmentStore
from buildboard.services.context_validator import ContextValidator

logger = logging.getLogger(__name__)


class OrganizationService:
    STANDARD_ROLES: tuple[dict[str, Any], ...] = (
        {
            "name": SUPER_ADMIN_ROLE_NAME,
            "description": "full access within the organization",
            "category": RoleCategory.ADMIN,
            "access_level": AccessLevel.ORGANIZATION,
            "permissions": [PERM_WILDCARD],
        },
        {
            "name": "LocationManager",
            "description": "manages projects and crews at a location",
            "category": RoleCategory.MANAGEMENT,
            "access_level": AccessLevel.LOCATION,
            "permissions": [
                PERM_ORGANIZATION_READ,
                PERM_PROJECT_READ,
                PERM_PROJECT_WRITE,
                PERM_ASSIGNMENT_READ,
                PERM_ASSIGNMENT_WRITE,
            ],
        },
        {
            "name": "ProjectManager",
            "description": "runs a single project",
            "category": RoleCategory.MANAGEMENT,
            "access_level": AccessLevel.PROJECT,
            "permissions": [PERM_PROJECT_READ, PERM_PROJECT_WRITE, PERM_ASSIGNMENT_READ],
        },
        {
            "name": "FieldWorker",
            "description": "on-site trade worker",
            "category": RoleCategory.FIELD,
            "access_level": AccessLevel.PROJECT,
            "permissions": [PERM_PROJECT_READ],
        },
    )

    def __init__(
        self,
        resolver: AccessResolver | None = None,
        store: AssignmentStore | None = None,
        validator: ContextValidator | None = None,
    ) -> None:
        self._store = store or AssignmentStore()
        self._resolver = resolver or AccessResolver(self._store)
        self._validator = validator or ContextValidator()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _ensure_standard_roles(self, session: Session) -> dict[str, Role]:
        existing = session.exec(select(Role).where(col(Role.organization_id).is_(None))).all()
        by_name = {item.name: item for item in existing}
        for template in self.STANDARD_ROLES:
            if template["name"] in by_name:
                continue
            role = Role(
                organization_id=None,
                name=template["name"],
                description=template["description"],
                role_type=RoleType.SYSTEM.value,
                category=template["category"].value,
                access_level=template["access_level"].value,
                permissions=list(template["permissions"]),
            )
            session.add(role)
            by_name[role.name] = role
        session.flush()
        return by_name

    def _get_live_organization(self, session: Session, organization_id: str) -> Organization:
        organization = session.get(Organization, organization_id)
        if organization is None or organization.is_deleted:
            raise NotFoundError("organization not found")
        return organization

    def _get_live_location(self, session: Session, organization_id: str, location_id: str) -> Location:
        statement = (
            select(Location)
            .where(Location.organization_id == organization_id)
            .where(Location.id == location_id)
            .where(col(Location.is_deleted).is_(False))
        )
        location = session.exec(statement).first()
        if location is None:
            raise NotFoundError("location not found")
        return location

    def _get_live_project(self, session: Session, organization_id: str, project_id: str) -> Project:
        statement = (
            select(Project)
            .where(Project.organization_id == organization_id)
            .where(Project.id == project_id)
            .where(col(Project.is_deleted).is_(False))
        )
        project = session.exec(statement).first()
        if project is None:
            raise NotFoundError("project not found")
        return project

    def _super_admin_role(self, session: Session, organization_id: str) -> Role:
        statement = (
            select(Role)
            .where(Role.name == SUPER_ADMIN_ROLE_NAME)
            .where(or_(col(Role.organization_id).is_(None), col(Role.organization_id) == organization_id))
        )
        roles = list(session.exec(statement).all())
        if not roles:
            raise NotFoundError(f"{SUPER_ADMIN_ROLE_NAME} role not found")
        # An organization's own SuperAdmin role wins over the standard one.
        roles.sort(key=lambda item: item.organization_id is None)
        return roles[0]

    def create_organization(self, payload: OrganizationCreate) -> Organization:
        with self._session() as session:
            organization = Organization(name=payload.name)
            session.add(organization)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("organization name already exists") from exc
            session.refresh(organization)
            logger.info("created organization %s", organization.id)
            return organization

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            self._get_live_organization(session, payload.organization_id)
            org_users = session.exec(select(User).where(User.organization_id == payload.organization_id)).all()
            if org_users:
                raise ConflictError("organization already bootstrapped")

            roles = self._ensure_standard_roles(session)
            user = User(
                organization_id=payload.organization_id,
                email=payload.email,
                first_name=payload.first_name,
                last_name=payload.last_name,
                is_super_admin=True,
            )
            session.add(user)
            session.flush()
            session.add(
                UserAssignment(
                    user_id=user.id,
                    role_id=roles[SUPER_ADMIN_ROLE_NAME].id,
                    context_type=ContextType.ORGANIZATION.value,
                    context_id=payload.organization_id,
                    is_primary=True,
                    created_by=user.id,
                    updated_by=user.id,
                )
            )
            session.commit()
            session.refresh(user)
            logger.info("bootstrapped admin %s for organization %s", user.id, payload.organization_id)
            return user

    def dev_login(
        self,
        payload: DevLoginRequest,
        *,
        today: date | None = None,
    ) -> tuple[User, list[str], AccessResolution]:
        current = today or today_utc()
        with self._session() as session:
            statement = (
                select(User)
                .where(User.organization_id == payload.organization_id)
                .where(User.email == payload.email)
            )
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")

            resolution = self._resolver.resolve(session, user.id, payload.organization_id, current)
            if user.is_super_admin:
                return user, [PERM_WILDCARD], resolution

            held = self._store.active_for_user(session, payload.organization_id, user.id, current)
            role_ids = {item.role_id for item in held}
            roles = session.exec(select(Role).where(col(Role.id).in_(role_ids))).all() if role_ids else []
            permissions = merge_permissions([list(item.permissions) for item in roles])
            return user, permissions, resolution

    def create_location(self, organization_id: str, actor_id: str, payload: LocationCreate) -> Location:
        with self._session() as session:
            self._get_live_organization(session, organization_id)
            creator = self._validator.require_user(session, organization_id, actor_id)
            role = self._super_admin_role(session, organization_id)

            location = Location(
                organization_id=organization_id,
                name=payload.name,
                address=payload.address,
                created_by=creator.id,
            )
            session.add(location)
            session.flush()
            self._store.insert(
                session,
                UserAssignment(
                    user_id=creator.id,
                    role_id=role.id,
                    context_type=ContextType.LOCATION.value,
                    context_id=location.id,
                    created_by=creator.id,
                    updated_by=creator.id,
                ),
            )
            event = EventEnvelope(
                event_type=events.LOCATION_CREATED,
                organization_id=organization_id,
                actor_id=actor_id,
                payload={"location_id": location.id, "granted_role_id": role.id},
            )
            events.event_bus.record(event, session)
            session.commit()
            session.refresh(location)
        events.event_bus.dispatch(event)
        logger.info("created location %s with creator grant for user %s", location.id, actor_id)
        return location

    def list_locations(self, organization_id: str, user_id: str) -> list[Location]:
        with self._session() as session:
            resolution = self._resolver.resolve(session, user_id, organization_id, today_utc())
            statement = (
                select(Location)
                .where(Location.organization_id == organization_id)
                .where(col(Location.is_deleted).is_(False))
                .order_by(col(Location.name))
            )
            return [item for item in session.exec(statement).all() if resolution.allows_location(item.id)]

    def get_location(self, organization_id: str, location_id: str) -> Location:
        with self._session() as session:
            return self._get_live_location(session, organization_id, location_id)

    def delete_location(self, organization_id: str, location_id: str) -> None:
        with self._session() as session:
            location = self._get_live_location(session, organization_id, location_id)
            location.is_deleted = True
            session.add(location)
            session.commit()

    def create_project(self, organization_id: str, actor_id: str, payload: ProjectCreate) -> Project:
        with self._session() as session:
            self._get_live_location(session, organization_id, payload.location_id)
            project = Project(
                organization_id=organization_id,
                location_id=payload.location_id,
                name=payload.name,
                status=payload.status,
                created_by=actor_id,
            )
            session.add(project)
            session.commit()
            session.refresh(project)
            return project

    def list_projects(self, organization_id: str, user_id: str) -> list[Project]:
        with self._session() as session:
            resolution = self._resolver.resolve(session, user_id, organization_id, today_utc())
            statement = (
                select(Project)
                .where(Project.organization_id == organization_id)
                .where(col(Project.is_deleted).is_(False))
                .order_by(col(Project.name))
            )
            return [item for item in session.exec(statement).all() if resolution.allows_location(item.location_id)]

    def get_project(self, organization_id: str, project_id: str) -> Project:
        with self._session() as session:
            return self._get_live_project(session, organization_id, project_id)

    def delete_project(self, organization_id: str, project_id: str) -> None:
        with self._session() as session:
            project = self._get_live_project(session, organization_id, project_id)
            project.is_deleted = True
            session.add(project)
            session.commit()

    def create_user(self, organization_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            self._get_live_organization(session, organization_id)
            user = User(
                organization_id=organization_id,
                email=payload.email,
                first_name=payload.first_name,
                last_name=payload.last_name,
                is_super_admin=payload.is_super_admin,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already exists in organization") from exc
            session.refresh(user)
            return user

    def list_users(self, organization_id: str) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.organization_id == organization_id).order_by(col(User.email))
            return list(session.exec(statement).all())

    def get_user(self, organization_id: str, user_id: str) -> User:
        with self._session() as session:
            return self._validator.require_user(session, organization_id, user_id)

    def create_role(self, organization_id: str, payload: RoleCreate) -> Role:
        with self._session() as session:
            role = Role(
                organization_id=organization_id,
                name=payload.name,
                description=payload.description,
                role_type=RoleType.CUSTOM.value,
                category=payload.category.value,
                access_level=payload.access_level.value,
                permissions=merge_permissions([payload.permissions]),
            )
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in organization") from exc
            session.refresh(role)
            return role

    def list_roles(self, organization_id: str) -> list[Role]:
        with self._session() as session:
            self._ensure_standard_roles(session)
            session.commit()
            statement = (
                select(Role)
                .where(or_(col(Role.organization_id).is_(None), col(Role.organization_id) == organization_id))
                .order_by(col(Role.name))
            )
            return list(session.exec(statement).all())

    def get_role(self, organization_id: str, role_id: str) -> Role:
        with self._session() as session:
            return self._validator.require_role(session, organization_id, role_id)
