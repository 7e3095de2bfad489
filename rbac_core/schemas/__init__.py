from rbac_core.schemas.rbac import (
    CheckRequest,
    CheckResponse,
    AssignRequest,
    AssignResponse,
    RevokeRequest,
    RevokeResponse,
    AuditEntryResponse,
    AuditPageResponse,
    RoleResponse,
    PermissionResponse,
    ErrorResponse,
)
