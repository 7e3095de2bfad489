"""
Domain types for the RBAC core.

Roles, assignments, audit entries and decisions are immutable values;
updates produce new instances via dataclasses.replace.
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from rbac_core.core.permissions import PermissionPattern


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Role:
    """
    Role definition.

    `permissions` and `restrictions` hold the pattern strings as declared;
    `grant_patterns` / `restriction_patterns` are filled in by the registry
    when the role is registered.
    """

    id: str
    name: str
    description: str = ""
    level: int = 0
    permissions: FrozenSet[str] = frozenset()
    inherits: Tuple[str, ...] = ()
    restrictions: FrozenSet[str] = frozenset()
    is_system_role: bool = False
    version: int = 1
    grant_patterns: FrozenSet[PermissionPattern] = field(default=frozenset(), compare=False, repr=False)
    restriction_patterns: FrozenSet[PermissionPattern] = field(default=frozenset(), compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], role_id: Optional[str] = None) -> "Role":
        """Create Role from a definition dictionary."""
        return cls(
            id=role_id or data["id"],
            name=data.get("name", role_id or data.get("id")),
            description=data.get("description", ""),
            level=int(data.get("level", 0)),
            permissions=frozenset(data.get("permissions", ())),
            inherits=tuple(data.get("inherits", ())),
            restrictions=frozenset(data.get("restrictions", ())),
            is_system_role=bool(data.get("is_system_role", data.get("isSystemRole", False))),
            version=int(data.get("version", 1)),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "level": self.level,
            "permissions": sorted(self.permissions),
            "inherits": list(self.inherits),
            "restrictions": sorted(self.restrictions),
            "is_system_role": self.is_system_role,
            "version": self.version,
        }


class AssignmentState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class RoleAssignment:
    """
    A principal holding a role.

    EXPIRED is derived from expires_at at read time; only REVOKED is stored
    (as revoked_at).
    """

    user_id: str
    role_id: str
    assigned_by: str
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, "assigned_at", as_utc(self.assigned_at))
        object.__setattr__(self, "expires_at", as_utc(self.expires_at))
        object.__setattr__(self, "revoked_at", as_utc(self.revoked_at))

    def state(self, now: Optional[datetime] = None) -> AssignmentState:
        if self.revoked_at is not None:
            return AssignmentState.REVOKED
        now = now or utcnow()
        if self.expires_at is not None and now > self.expires_at:
            return AssignmentState.EXPIRED
        return AssignmentState.ACTIVE

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) is AssignmentState.ACTIVE

    def renewed(self, assigned_by: str, expires_at: Optional[datetime]) -> "RoleAssignment":
        return replace(self, assigned_by=assigned_by, assigned_at=utcnow(), expires_at=expires_at)

    def revoked(self, at: Optional[datetime] = None) -> "RoleAssignment":
        return replace(self, revoked_at=at or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "state": self.state().value,
        }


class AuditAction:
    """Closed set of audit action names."""
    PERMISSION_CHECKED = "permission_checked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REVOKED = "role_revoked"
    ROLE_REGISTERED = "role_registered"
    ROLE_REFERENCE_MISSING = "role_reference_missing"
    AUDIT_RETENTION_SWEEP = "audit_retention_sweep"

    ALL = frozenset({
        PERMISSION_CHECKED,
        ROLE_ASSIGNED,
        ROLE_REVOKED,
        ROLE_REGISTERED,
        ROLE_REFERENCE_MISSING,
        AUDIT_RETENTION_SWEEP,
    })


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record."""

    action: str
    user_id: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: f"audit_{uuid.uuid4().hex}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
            "context": self.context,
        }


@dataclass(frozen=True)
class AuditQuery:
    """Filters for audit log queries."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    user_id: Optional[str] = None
    action: Optional[str] = None
    limit: int = 100
    offset: int = 0

    def __post_init__(self):
        object.__setattr__(self, "start_date", as_utc(self.start_date))
        object.__setattr__(self, "end_date", as_utc(self.end_date))

    def matches(self, entry: AuditEntry) -> bool:
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.action is not None and entry.action != self.action:
            return False
        if self.start_date is not None and entry.timestamp < self.start_date:
            return False
        if self.end_date is not None and entry.timestamp > self.end_date:
            return False
        return True

    def paginate(self, entries: Iterable[AuditEntry]) -> "AuditPage":
        """Filter, order by timestamp and slice per limit/offset."""
        matched = sorted((e for e in entries if self.matches(e)), key=lambda e: e.timestamp)
        return AuditPage(
            entries=matched[self.offset:self.offset + self.limit],
            total=len(matched),
        )


@dataclass(frozen=True)
class AuditPage:
    entries: List[AuditEntry]
    total: int


@dataclass(frozen=True)
class Decision:
    """Outcome of a permission check."""

    allowed: bool
    reason: str
    checked_at: datetime = field(default_factory=utcnow)
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "checked_at": self.checked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], cached: bool = False) -> "Decision":
        return cls(
            allowed=bool(data["allowed"]),
            reason=data["reason"],
            checked_at=datetime.fromisoformat(data["checked_at"]),
            cached=cached,
        )
