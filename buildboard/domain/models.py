from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from buildboard.domain.access_context import ContextType
from buildboard.domain.assignment_state import AssignmentState


def now_utc() -> datetime:
    return datetime.now(UTC)


class RoleType(StrEnum):
    SYSTEM = "system"
    CUSTOM = "custom"


class RoleCategory(StrEnum):
    MANAGEMENT = "management"
    FIELD = "field"
    OFFICE = "office"
    EXTERNAL = "external"
    ADMIN = "admin"


class AccessLevel(StrEnum):
    ORGANIZATION = "organization"
    LOCATION = "location"
    PROJECT = "project"


SUPER_ADMIN_ROLE_NAME = "SuperAdmin"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    organization_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Location(SQLModel, table=True):
    __tablename__ = "locations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    address: str | None = None
    is_deleted: bool = Field(default=False, index=True)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    location_id: str = Field(foreign_key="locations.id", index=True)
    name: str = Field(index=True)
    status: str = Field(default="active")
    is_deleted: bool = Field(default=False, index=True)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_users_org_email"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    email: str = Field(index=True)
    first_name: str = ""
    last_name: str = ""
    is_super_admin: bool = Field(default=False)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_roles_org_name"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    # None marks a standard role shared by every organization.
    organization_id: str | None = Field(default=None, foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    role_type: str = Field(default=RoleType.CUSTOM.value)
    category: str = Field(default=RoleCategory.OFFICE.value)
    access_level: str = Field(default=AccessLevel.PROJECT.value)
    permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserAssignment(SQLModel, table=True):
    __tablename__ = "user_assignments"
    __table_args__ = (
        Index(
            "uq_user_assignments_live",
            "user_id",
            "role_id",
            "context_type",
            "context_id",
            unique=True,
            sqlite_where=text("NOT is_deleted"),
            postgresql_where=text("NOT is_deleted"),
        ),
        Index("ix_user_assignments_context", "context_type", "context_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    role_id: str = Field(foreign_key="roles.id", index=True)
    context_type: str = Field(index=True)
    context_id: str
    trade_type: str | None = None
    is_primary: bool = Field(default=False)
    start_date: date | None = None
    end_date: date | None = None
    is_deleted: bool = Field(default=False, index=True)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    organization_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OrganizationCreate(BaseModel):
    name: str


class OrganizationRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class LocationCreate(BaseModel):
    name: str
    address: str | None = None


class LocationRead(ORMReadModel):
    id: str
    organization_id: str
    name: str
    address: str | None = None
    created_by: str | None = None
    created_at: datetime


class ProjectCreate(BaseModel):
    location_id: str
    name: str
    status: str = "active"


class ProjectRead(ORMReadModel):
    id: str
    organization_id: str
    location_id: str
    name: str
    status: str
    created_at: datetime


class UserCreate(BaseModel):
    email: str
    first_name: str = ""
    last_name: str = ""
    is_super_admin: bool = False


class UserRead(ORMReadModel):
    id: str
    organization_id: str
    email: str
    first_name: str
    last_name: str
    is_super_admin: bool
    is_active: bool
    created_at: datetime


class RoleCreate(BaseModel):
    name: str
    description: str | None = None
    category: RoleCategory = RoleCategory.OFFICE
    access_level: AccessLevel = AccessLevel.PROJECT
    permissions: list[str] = PydanticField(default_factory=list)


class RoleRead(ORMReadModel):
    id: str
    organization_id: str | None = None
    name: str
    description: str | None = None
    role_type: RoleType
    category: RoleCategory
    access_level: AccessLevel
    permissions: list[str]
    created_at: datetime


class DevLoginRequest(BaseModel):
    organization_id: str
    email: str


class BootstrapAdminRequest(BaseModel):
    organization_id: str
    email: str
    first_name: str = ""
    last_name: str = ""


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    permissions: list[str]
    access_contexts: list[str]


class AssignmentCreate(BaseModel):
    user_id: str
    role_id: str
    context_type: ContextType
    context_id: str
    trade_type: str | None = None
    is_primary: bool = False
    start_date: str | None = None
    end_date: str | None = None


class BulkAssignmentCreate(BaseModel):
    user_ids: list[str] = PydanticField(min_length=1)
    role_id: str
    context_type: ContextType
    context_id: str
    trade_type: str | None = None
    is_primary: bool = False
    start_date: str | None = None
    end_date: str | None = None


class AssignmentUpdate(BaseModel):
    role_id: str | None = None
    trade_type: str | None = None
    is_primary: bool | None = None
    start_date: str | None = None
    end_date: str | None = None


class AssignmentTransferRequest(BaseModel):
    from_user_id: str
    to_user_id: str
    assignment_ids: list[str] | None = None
    preserve_primary: bool = False


class AssignmentTransferRead(BaseModel):
    transferred_count: int


class ContextValidationRequest(BaseModel):
    context_type: ContextType
    context_id: str


class ContextValidationRead(BaseModel):
    valid: bool
    context_type: ContextType
    context_id: str


class AssignmentFilters(BaseModel):
    user_id: str | None = None
    role_id: str | None = None
    context_type: ContextType | None = None
    context_id: str | None = None
    organization_id: str | None = None
    is_primary: bool | None = None
    trade_type: str | None = None
    is_active: bool | None = None
    start_date_from: date | None = None
    start_date_to: date | None = None
    include_deleted: bool = False
    page: int = 1
    page_size: int = 50


class AssignmentRead(ORMReadModel):
    id: str
    user_id: str
    role_id: str
    context_type: ContextType
    context_id: str
    trade_type: str | None = None
    is_primary: bool
    start_date: date | None = None
    end_date: date | None = None
    is_deleted: bool
    created_by: str | None = None
    created_at: datetime
    updated_by: str | None = None
    updated_at: datetime
    user_name: str = ""
    user_email: str = ""
    role_name: str = ""
    context_name: str = ""
    state: AssignmentState = AssignmentState.ACTIVE


class AssignmentPage(BaseModel):
    assignments: list[AssignmentRead]
    total_count: int
    page: int
    page_size: int


class BulkAssignmentRead(BaseModel):
    assignments: list[AssignmentRead]
    created_count: int


class UserAssignmentSummary(BaseModel):
    user_id: str
    user_name: str
    user_email: str
    organization_id: str
    organization_name: str
    total_assignments: int
    active_assignments: int
    assignments_by_type: dict[str, int]
    assignments: list[AssignmentRead]


class ContextAssignmentSummary(BaseModel):
    context_type: ContextType
    context_id: str
    context_name: str
    organization_id: str
    assignments: list[AssignmentRead]


class PermissionCheckRequest(BaseModel):
    user_id: str
    context_type: ContextType
    context_id: str
    permission: str
    include_inherited: bool = False


class PermissionCheckRead(BaseModel):
    has_permission: bool
    reason: str
    user_roles: list[str] = PydanticField(default_factory=list)
    inherited_from: list[str] = PydanticField(default_factory=list)


class UserContextsRead(BaseModel):
    user_id: str
    context_type: ContextType
    context_ids: list[str]


class AccessResolutionRead(BaseModel):
    user_id: str
    organization_id: str
    is_org_wide: bool
    location_ids: list[str]
    access_contexts: list[str]
