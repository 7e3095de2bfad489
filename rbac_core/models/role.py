"""
Role model for RBAC

Definitions are stored as a JSON blob; re-registering a role bumps its
version counter.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON

from rbac_core.core.database import Base


class RoleRecord(Base):
    """Persisted role definition."""
    __tablename__ = "roles"

    id = Column(String(64), primary_key=True)
    definition = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    is_system = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<RoleRecord(id='{self.id}', version={self.version})>"


# Default system roles - registered on startup
SYSTEM_ROLES = {
    "super_admin": {
        "name": "Super Administrator",
        "description": "Full system access with all permissions",
        "level": 100,
        "permissions": ["*"],
        "inherits": [],
        "restrictions": [],
        "is_system_role": True,
    },
    "project_manager": {
        "name": "Project Manager",
        "description": "Manages projects, teams, and client relationships",
        "level": 80,
        "permissions": [
            "projects.*", "tasks.*", "teams.*", "users.read", "users.invite",
            "files.*", "comments.*", "reports.view", "reports.create",
            "billing.view", "billing.create_invoices",
        ],
        "inherits": [],
        "restrictions": ["admin.*"],
        "is_system_role": True,
    },
    "team_lead": {
        "name": "Team Lead",
        "description": "Leads development teams and manages technical tasks",
        "level": 70,
        "permissions": [
            "projects.read", "projects.update", "tasks.*", "teams.read", "teams.manage",
            "users.read", "files.*", "comments.*", "reports.view",
        ],
        "inherits": ["developer"],
        "restrictions": ["users.delete", "projects.delete", "billing.*", "admin.*"],
        "is_system_role": True,
    },
    "developer": {
        "name": "Developer",
        "description": "Develops and maintains project deliverables",
        "level": 60,
        "permissions": [
            "projects.read", "tasks.read", "tasks.update", "tasks.track_time",
            "files.upload", "files.download", "comments.create", "comments.read",
        ],
        "inherits": [],
        "restrictions": ["users.*", "teams.delete", "projects.delete", "billing.*", "admin.*"],
        "is_system_role": True,
    },
    "designer": {
        "name": "Designer",
        "description": "Creates and manages design assets and user experience",
        "level": 60,
        "permissions": [
            "projects.read", "tasks.read", "tasks.update", "files.*",
            "comments.create", "comments.read", "reports.view",
        ],
        "inherits": [],
        "restrictions": ["users.*", "teams.delete", "projects.delete", "billing.*", "admin.*"],
        "is_system_role": True,
    },
    "client": {
        "name": "Client",
        "description": "Client access to view project progress and provide feedback",
        "level": 40,
        "permissions": [
            "projects.read", "tasks.read", "files.download", "comments.create",
            "comments.read", "reports.view", "billing.view",
        ],
        "inherits": [],
        "restrictions": ["users.*", "teams.*", "projects.update", "projects.delete", "admin.*"],
        "is_system_role": True,
    },
    "guest": {
        "name": "Guest",
        "description": "Limited read-only access to specific projects",
        "level": 20,
        "permissions": ["projects.read", "tasks.read", "comments.read"],
        "inherits": [],
        # Restricted from everything except explicitly allowed
        "restrictions": ["*"],
        "is_system_role": True,
    },
}
