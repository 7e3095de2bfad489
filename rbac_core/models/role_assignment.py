"""
User-Role assignment table for RBAC

Supports:
- Time-limited role assignments (expires_at)
- Audit trail (assigned_by, assigned_at)
- Revocation as a stored state (revoked_at), rows are never deleted
- One active assignment per (user_id, role_id), enforced by a partial unique index
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Index, text

from rbac_core.core.database import Base


class RoleAssignmentRecord(Base):
    """Junction table linking principals to roles."""
    __tablename__ = "role_assignments"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(128), nullable=False)
    role_id = Column(String(64), nullable=False)
    assigned_by = Column(String(128), nullable=False)
    assigned_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_role_assignments_user_id', 'user_id'),
        Index('ix_role_assignments_user_role', 'user_id', 'role_id'),
        # At most one active (non-revoked) assignment per user and role
        Index(
            'uq_role_assignments_active', 'user_id', 'role_id',
            unique=True,
            postgresql_where=text('revoked_at IS NULL'),
            sqlite_where=text('revoked_at IS NULL'),
        ),
    )

    def __repr__(self):
        return f"<RoleAssignmentRecord(user_id='{self.user_id}', role_id='{self.role_id}')>"
