from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from buildboard.api.deps import get_access_contexts, get_current_claims, require_perm
from buildboard.domain.access_context import AccessContext, tokens_allow_location
from buildboard.domain.errors import AuthError, ConflictError, DomainError, NotFoundError, ValidationError
from buildboard.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    LocationCreate,
    LocationRead,
    OrganizationCreate,
    OrganizationRead,
    ProjectCreate,
    ProjectRead,
    RoleCreate,
    RoleRead,
    TokenResponse,
    UserCreate,
    UserRead,
)
from buildboard.domain.permissions import (
    PERM_ORGANIZATION_READ,
    PERM_ORGANIZATION_WRITE,
    PERM_PROJECT_READ,
    PERM_PROJECT_WRITE,
)
from buildboard.infra.audit import set_audit_context
from buildboard.infra.auth import create_access_token
from buildboard.services.access_resolver import AccessResolver
from buildboard.services.organization_service import OrganizationService

router = APIRouter()


def get_organization_service() -> OrganizationService:
    return OrganizationService()


def get_access_resolver() -> AccessResolver:
    return AccessResolver()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[OrganizationService, Depends(get_organization_service)]
Resolver = Annotated[AccessResolver, Depends(get_access_resolver)]
AccessContexts = Annotated[list[AccessContext], Depends(get_access_contexts)]


def _handle_organization_error(exc: Exception) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(payload: OrganizationCreate, service: Service) -> OrganizationRead:
    try:
        organization = service.create_organization(payload)
        return OrganizationRead.model_validate(organization)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, permissions, resolution = service.dev_login(payload)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise
    token = create_access_token(
        user_id=user.id,
        organization_id=user.organization_id,
        email=user.email,
        permissions=permissions,
        access_contexts=resolution.access_contexts,
        is_super_admin=user.is_super_admin,
    )
    return TokenResponse(
        access_token=token,
        permissions=permissions,
        access_contexts=resolution.access_contexts,
    )


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_WRITE))],
)
def create_user(payload: UserCreate, claims: Claims, service: Service) -> UserRead:
    try:
        user = service.create_user(claims["organization_id"], payload)
        return UserRead.model_validate(user)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.get(
    "/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_READ))],
)
def list_users(claims: Claims, service: Service) -> list[UserRead]:
    users = service.list_users(claims["organization_id"])
    return [UserRead.model_validate(item) for item in users]


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_READ))],
)
def get_user(user_id: str, claims: Claims, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(claims["organization_id"], user_id))
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.post(
    "/roles",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_WRITE))],
)
def create_role(payload: RoleCreate, claims: Claims, service: Service) -> RoleRead:
    try:
        role = service.create_role(claims["organization_id"], payload)
        return RoleRead.model_validate(role)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_READ))],
)
def list_roles(claims: Claims, service: Service) -> list[RoleRead]:
    roles = service.list_roles(claims["organization_id"])
    return [RoleRead.model_validate(item) for item in roles]


@router.get(
    "/roles/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_READ))],
)
def get_role(role_id: str, claims: Claims, service: Service) -> RoleRead:
    try:
        return RoleRead.model_validate(service.get_role(claims["organization_id"], role_id))
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.post(
    "/locations",
    response_model=LocationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_WRITE))],
)
def create_location(payload: LocationCreate, request: Request, claims: Claims, service: Service) -> LocationRead:
    try:
        location = service.create_location(claims["organization_id"], claims["sub"], payload)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise
    set_audit_context(request, action="location.create", resource=f"location:{location.id}")
    return LocationRead.model_validate(location)


@router.get(
    "/locations",
    response_model=list[LocationRead],
    dependencies=[Depends(require_perm(PERM_PROJECT_READ))],
)
def list_locations(claims: Claims, service: Service) -> list[LocationRead]:
    locations = service.list_locations(claims["organization_id"], claims["sub"])
    return [LocationRead.model_validate(item) for item in locations]


@router.get(
    "/locations/{location_id}",
    response_model=LocationRead,
    dependencies=[Depends(require_perm(PERM_PROJECT_READ))],
)
def get_location(
    location_id: str,
    claims: Claims,
    contexts: AccessContexts,
    service: Service,
    resolver: Resolver,
) -> LocationRead:
    organization_id = claims["organization_id"]
    allowed = bool(claims.get("is_super_admin")) or tokens_allow_location(contexts, organization_id, location_id)
    if not allowed:
        # Project tokens and grants made after login need the live resolution.
        allowed = resolver.resolve_accessible_locations(claims["sub"], organization_id).allows_location(location_id)
    if not allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="location not accessible")
    try:
        return LocationRead.model_validate(service.get_location(organization_id, location_id))
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.delete(
    "/locations/{location_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ORGANIZATION_WRITE))],
)
def delete_location(location_id: str, claims: Claims, service: Service) -> Response:
    try:
        service.delete_location(claims["organization_id"], location_id)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/projects",
    response_model=ProjectRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_PROJECT_WRITE))],
)
def create_project(payload: ProjectCreate, claims: Claims, service: Service) -> ProjectRead:
    try:
        project = service.create_project(claims["organization_id"], claims["sub"], payload)
        return ProjectRead.model_validate(project)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.get(
    "/projects",
    response_model=list[ProjectRead],
    dependencies=[Depends(require_perm(PERM_PROJECT_READ))],
)
def list_projects(claims: Claims, service: Service) -> list[ProjectRead]:
    projects = service.list_projects(claims["organization_id"], claims["sub"])
    return [ProjectRead.model_validate(item) for item in projects]


@router.get(
    "/projects/{project_id}",
    response_model=ProjectRead,
    dependencies=[Depends(require_perm(PERM_PROJECT_READ))],
)
def get_project(project_id: str, claims: Claims, service: Service) -> ProjectRead:
    try:
        return ProjectRead.model_validate(service.get_project(claims["organization_id"], project_id))
    except DomainError as exc:
        _handle_organization_error(exc)
        raise


@router.delete(
    "/projects/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_PROJECT_WRITE))],
)
def delete_project(project_id: str, claims: Claims, service: Service) -> Response:
    try:
        service.delete_project(claims["organization_id"], project_id)
    except DomainError as exc:
        _handle_organization_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
