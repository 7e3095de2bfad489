"""
RBAC schemas
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class CheckRequest(BaseModel):
    user_id: str
    permission: str
    resource_id: Optional[str] = None
    resource_owner: Optional[str] = None


class CheckResponse(BaseModel):
    allowed: bool
    reason: str


class AssignRequest(BaseModel):
    user_id: str
    role_id: str
    expires_at: Optional[datetime] = None


class AssignResponse(BaseModel):
    assignment_id: str
    assigned_at: datetime
    expires_at: Optional[datetime] = None


class RevokeRequest(BaseModel):
    user_id: str
    role_id: str
    reason: Optional[str] = None


class RevokeResponse(BaseModel):
    ok: bool = True
    revoked_at: datetime


class AuditEntryResponse(BaseModel):
    id: str
    action: str
    user_id: Optional[str]
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class AuditPageResponse(BaseModel):
    entries: List[AuditEntryResponse]
    total: int


class RoleResponse(BaseModel):
    """Role details."""
    id: str
    name: str
    description: str
    level: int
    permissions: List[str]
    inherits: List[str]
    restrictions: List[str]
    is_system_role: bool
    version: int


class PermissionResponse(BaseModel):
    id: str
    category: str
    category_name: str
    description: str


class ErrorResponse(BaseModel):
    code: str
    message: str
