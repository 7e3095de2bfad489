"""
Audit Log model

Append-only. Entries are only removed in bulk by the store's own retention.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, JSON, Index

from rbac_core.core.database import Base


class AuditLogRecord(Base):
    """Persisted audit entry."""
    __tablename__ = "audit_log"

    id = Column(String(64), primary_key=True)
    action = Column(String(64), nullable=False)
    user_id = Column(String(128), nullable=True)
    ts = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    details = Column(JSON, default=dict)
    # Named 'event_context' to mirror details without clashing with reserved names
    event_context = Column(JSON, default=dict)

    __table_args__ = (
        Index('ix_audit_ts', 'ts'),
        Index('ix_audit_user', 'user_id', 'ts'),
        Index('ix_audit_action', 'action'),
    )

    def __repr__(self):
        return f"<AuditLogRecord(id='{self.id}', action='{self.action}')>"
