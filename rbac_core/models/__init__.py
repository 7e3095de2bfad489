from rbac_core.models.role import RoleRecord, SYSTEM_ROLES
from rbac_core.models.role_assignment import RoleAssignmentRecord
from rbac_core.models.audit_log import AuditLogRecord

__all__ = [
    "RoleRecord",
    "SYSTEM_ROLES",
    "RoleAssignmentRecord",
    "AuditLogRecord",
]
