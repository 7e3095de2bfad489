"""
RBAC Routes

Thin HTTP surface over RBACService. RBAC errors are mapped to responses by
the exception handler registered in rbac_core.main.
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from rbac_core.api.deps import get_principal, get_rbac_service
from rbac_core.core.types import AuditQuery
from rbac_core.schemas.rbac import (
    AssignRequest,
    AssignResponse,
    AuditEntryResponse,
    AuditPageResponse,
    CheckRequest,
    CheckResponse,
    ErrorResponse,
    PermissionResponse,
    RevokeRequest,
    RevokeResponse,
    RoleResponse,
)
from rbac_core.services.audit_service import MAX_QUERY_LIMIT
from rbac_core.services.rbac_service import RBACService

router = APIRouter()

ERRORS = {
    401: {"description": "Missing X-Principal-Id header"},
    403: {"model": ErrorResponse, "description": "Insufficient permissions"},
    503: {"model": ErrorResponse, "description": "Dependency unavailable"},
}


def _errors(*codes):
    return {code: ERRORS[code] for code in codes}


@router.post("/check", response_model=CheckResponse, responses=_errors(503))
async def check_permission(
    body: CheckRequest,
    service: RBACService = Depends(get_rbac_service),
):
    """Evaluate a permission check. Denials are a 200 with allowed=false."""
    decision = await service.check_permission(
        body.user_id,
        body.permission,
        resource_id=body.resource_id,
        resource_owner=body.resource_owner,
    )
    return CheckResponse(allowed=decision.allowed, reason=decision.reason)


@router.post(
    "/assignments",
    response_model=AssignResponse,
    status_code=201,
    responses={**_errors(401, 403, 503), 404: {"model": ErrorResponse, "description": "Unknown role"}},
)
async def assign_role(
    body: AssignRequest,
    caller: str = Depends(get_principal),
    service: RBACService = Depends(get_rbac_service),
):
    """
    Assign a role.

    Requires: users.manage_roles
    """
    assignment = await service.assign_role(caller, body.user_id, body.role_id, body.expires_at)
    return AssignResponse(
        assignment_id=assignment.id,
        assigned_at=assignment.assigned_at,
        expires_at=assignment.expires_at,
    )


@router.post(
    "/assignments/revoke",
    response_model=RevokeResponse,
    responses={**_errors(401, 403, 503), 404: {"model": ErrorResponse, "description": "Role not held"}},
)
async def revoke_role(
    body: RevokeRequest,
    caller: str = Depends(get_principal),
    service: RBACService = Depends(get_rbac_service),
):
    """
    Revoke a role.

    Requires: users.manage_roles
    """
    revoked = await service.revoke_role(caller, body.user_id, body.role_id, body.reason)
    return RevokeResponse(revoked_at=revoked.revoked_at)


@router.get("/audit", response_model=AuditPageResponse, responses=_errors(401, 403, 503))
async def query_audit_log(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_QUERY_LIMIT),
    offset: int = Query(0, ge=0),
    caller: str = Depends(get_principal),
    service: RBACService = Depends(get_rbac_service),
):
    """
    Query the audit trail, oldest first.

    Requires: admin.audit_logs
    """
    page = await service.query_audit_log(
        caller,
        AuditQuery(
            start_date=start_date,
            end_date=end_date,
            user_id=user_id,
            action=action,
            limit=limit,
            offset=offset,
        ),
    )
    return AuditPageResponse(
        entries=[
            AuditEntryResponse(
                id=e.id,
                action=e.action,
                user_id=e.user_id,
                timestamp=e.timestamp,
                details=e.details,
                context=e.context,
            )
            for e in page.entries
        ],
        total=page.total,
    )


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(service: RBACService = Depends(get_rbac_service)):
    """List registered roles, most senior first."""
    return [RoleResponse(**role.to_dict()) for role in service.list_roles()]


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    category: Optional[str] = Query(None, description="Filter by category"),
    service: RBACService = Depends(get_rbac_service),
):
    """List catalogued permissions."""
    return [PermissionResponse(**p.to_dict()) for p in service.list_permissions(category)]
