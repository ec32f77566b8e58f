from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from buildboard.api.deps import get_current_claims, require_perm
from buildboard.domain.access_context import ContextType
from buildboard.domain.errors import AuthError, ConflictError, DomainError, NotFoundError, ValidationError
from buildboard.domain.models import (
    AccessResolutionRead,
    AssignmentCreate,
    AssignmentFilters,
    AssignmentPage,
    AssignmentRead,
    AssignmentTransferRead,
    AssignmentTransferRequest,
    AssignmentUpdate,
    BulkAssignmentCreate,
    BulkAssignmentRead,
    ContextAssignmentSummary,
    ContextValidationRead,
    ContextValidationRequest,
    PermissionCheckRead,
    PermissionCheckRequest,
    UserAssignmentSummary,
    UserContextsRead,
)
from buildboard.domain.permissions import PERM_ASSIGNMENT_READ, PERM_ASSIGNMENT_WRITE
from buildboard.infra.audit import set_audit_context
from buildboard.services.access_resolver import AccessResolver
from buildboard.services.assignment_service import AssignmentService, parse_wire_date
from buildboard.services.context_validator import ContextValidator
from buildboard.services.permission_evaluator import PermissionEvaluator

router = APIRouter()


def get_assignment_service() -> AssignmentService:
    return AssignmentService()


def get_context_validator() -> ContextValidator:
    return ContextValidator()


def get_access_resolver() -> AccessResolver:
    return AccessResolver()


def get_permission_evaluator() -> PermissionEvaluator:
    return PermissionEvaluator()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[AssignmentService, Depends(get_assignment_service)]
Validator = Annotated[ContextValidator, Depends(get_context_validator)]
Resolver = Annotated[AccessResolver, Depends(get_access_resolver)]
Evaluator = Annotated[PermissionEvaluator, Depends(get_permission_evaluator)]


def _handle_assignment_error(exc: Exception) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post(
    "",
    response_model=AssignmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_WRITE))],
)
def create_assignment(
    payload: AssignmentCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> AssignmentRead:
    try:
        result = service.create_assignment(claims["organization_id"], claims["sub"], payload)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise
    set_audit_context(request, action="assignment.create", resource=f"assignment:{result.id}")
    return result


@router.get(
    "",
    response_model=AssignmentPage,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def list_assignments(
    claims: Claims,
    service: Service,
    user_id: str | None = None,
    role_id: str | None = None,
    context_type: ContextType | None = None,
    context_id: str | None = None,
    organization_id: str | None = None,
    is_primary: bool | None = None,
    trade_type: str | None = None,
    is_active: bool | None = None,
    start_date_from: str | None = None,
    start_date_to: str | None = None,
    include_deleted: bool = False,
    page: int = Query(default=1),
    page_size: int = Query(default=50, description="capped at 100"),
) -> AssignmentPage:
    try:
        filters = AssignmentFilters(
            user_id=user_id,
            role_id=role_id,
            context_type=context_type,
            context_id=context_id,
            organization_id=organization_id,
            is_primary=is_primary,
            trade_type=trade_type,
            is_active=is_active,
            start_date_from=parse_wire_date(start_date_from, "start_date_from"),
            start_date_to=parse_wire_date(start_date_to, "start_date_to"),
            include_deleted=include_deleted,
            page=page,
            page_size=page_size,
        )
        return service.get_assignments(claims["organization_id"], filters)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise


@router.post(
    "/bulk",
    response_model=BulkAssignmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_WRITE))],
)
def create_bulk_assignments(
    payload: BulkAssignmentCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> BulkAssignmentRead:
    try:
        result = service.create_bulk_assignments(claims["organization_id"], claims["sub"], payload)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise
    set_audit_context(
        request,
        action="assignment.bulk_create",
        resource=f"{payload.context_type.value}:{payload.context_id}",
        detail={"created_count": result.created_count},
    )
    return result


@router.post(
    "/transfer",
    response_model=AssignmentTransferRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_WRITE))],
)
def transfer_assignments(
    payload: AssignmentTransferRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> AssignmentTransferRead:
    try:
        result = service.transfer_assignments(claims["organization_id"], claims["sub"], payload)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise
    set_audit_context(
        request,
        action="assignment.transfer",
        resource=f"user:{payload.from_user_id}",
        detail={"to_user_id": payload.to_user_id, "transferred_count": result.transferred_count},
    )
    return result


@router.post(
    "/validate-context",
    response_model=ContextValidationRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def validate_assignment_context(
    payload: ContextValidationRequest,
    claims: Claims,
    validator: Validator,
) -> ContextValidationRead:
    try:
        validator.validate_assignment_context(payload.context_type, payload.context_id, claims["organization_id"])
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise
    return ContextValidationRead(valid=True, context_type=payload.context_type, context_id=payload.context_id)


@router.post(
    "/check-permission",
    response_model=PermissionCheckRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def check_permission(
    payload: PermissionCheckRequest,
    claims: Claims,
    evaluator: Evaluator,
) -> PermissionCheckRead:
    return evaluator.check_permission(claims["organization_id"], payload)


@router.get(
    "/users/{user_id}",
    response_model=UserAssignmentSummary,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def get_user_assignments(user_id: str, claims: Claims, service: Service) -> UserAssignmentSummary:
    try:
        return service.get_user_assignments(claims["organization_id"], user_id)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise


@router.get(
    "/users/{user_id}/active",
    response_model=list[AssignmentRead],
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def get_active_assignments(user_id: str, claims: Claims, service: Service) -> list[AssignmentRead]:
    return service.get_active_assignments(claims["organization_id"], user_id)


@router.get(
    "/users/{user_id}/contexts/{context_type}",
    response_model=UserContextsRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def get_user_contexts(
    user_id: str,
    context_type: ContextType,
    claims: Claims,
    service: Service,
) -> UserContextsRead:
    return service.get_user_contexts(claims["organization_id"], user_id, context_type)


@router.get(
    "/users/{user_id}/access",
    response_model=AccessResolutionRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def get_user_access(user_id: str, claims: Claims, resolver: Resolver) -> AccessResolutionRead:
    organization_id = claims["organization_id"]
    resolution = resolver.resolve_accessible_locations(user_id, organization_id)
    return AccessResolutionRead(
        user_id=user_id,
        organization_id=organization_id,
        is_org_wide=resolution.is_org_wide,
        location_ids=sorted(resolution.location_ids),
        access_contexts=resolution.access_contexts,
    )


@router.get(
    "/contexts/{context_type}/{context_id}",
    response_model=ContextAssignmentSummary,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def get_context_assignments(
    context_type: ContextType,
    context_id: str,
    claims: Claims,
    service: Service,
) -> ContextAssignmentSummary:
    return service.get_context_assignments(claims["organization_id"], context_type, context_id)


@router.get(
    "/{assignment_id}",
    response_model=AssignmentRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_READ))],
)
def get_assignment(assignment_id: str, claims: Claims, service: Service) -> AssignmentRead:
    try:
        return service.get_assignment(claims["organization_id"], assignment_id)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise


@router.put(
    "/{assignment_id}",
    response_model=AssignmentRead,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_WRITE))],
)
def update_assignment(
    assignment_id: str,
    payload: AssignmentUpdate,
    request: Request,
    claims: Claims,
    service: Service,
) -> AssignmentRead:
    try:
        result = service.update_assignment(claims["organization_id"], claims["sub"], assignment_id, payload)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise
    set_audit_context(
        request,
        action="assignment.update",
        resource=f"assignment:{assignment_id}",
        detail={"fields": sorted(payload.model_fields_set)},
    )
    return result


@router.delete(
    "/{assignment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ASSIGNMENT_WRITE))],
)
def delete_assignment(assignment_id: str, request: Request, claims: Claims, service: Service) -> Response:
    try:
        service.delete_assignment(claims["organization_id"], claims["sub"], assignment_id)
    except DomainError as exc:
        _handle_assignment_error(exc)
        raise
    set_audit_context(request, action="assignment.delete", resource=f"assignment:{assignment_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
