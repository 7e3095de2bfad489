"""
API dependencies

The identity provider sits in front of this service and forwards the
authenticated principal in the X-Principal-Id header. The header is
trusted as-is; credentials are never verified here.
"""
from typing import Optional
from fastapi import Header, HTTPException, Request, status

from rbac_core.services.rbac_service import RBACService

PRINCIPAL_HEADER = "X-Principal-Id"


def get_rbac_service(request: Request) -> RBACService:
    """The service built by the application lifespan."""
    service = getattr(request.app.state, "rbac", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RBAC service not initialized",
        )
    return service


async def get_principal(
    x_principal_id: Optional[str] = Header(None, alias=PRINCIPAL_HEADER),
) -> str:
    """Authenticated principal id, required for mutations and audit queries."""
    if not x_principal_id or not x_principal_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return x_principal_id.strip()
