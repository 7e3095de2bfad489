"""
Permission grammar and catalog

Permission string format: "category.action" (exact), "category.*" for every
action in a category, or "*" for everything. Identifiers are case-sensitive.

Patterns are parsed once into PermissionPattern values when a role is
registered; checks compare parsed (category, action) pairs instead of
re-splitting strings.
"""
import re
from dataclasses import dataclass
from enum import IntEnum
from functools import lru_cache
from typing import Dict, List, Optional, Iterable, Tuple

from rbac_core.core.exceptions import ValidationError

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")

GLOBAL_WILDCARD = "*"


class Permission:
    """
    Well-known permission identifiers.

    Categories: projects, tasks, users, teams, files, comments, reports,
    billing, admin
    """

    USERS_MANAGE_ROLES = "users.manage_roles"
    ADMIN_AUDIT_LOGS = "admin.audit_logs"

    PROJECTS_READ = "projects.read"
    PROJECTS_UPDATE = "projects.update"
    PROJECTS_DELETE = "projects.delete"

    # Superuser
    ALL = GLOBAL_WILDCARD


# Actions a principal may perform on resources it owns without a grant
OWNER_ACTIONS = frozenset({"read", "update"})

# Checks on these permissions are flagged in the audit trail
SENSITIVE_PERMISSIONS = frozenset({
    "admin.system_settings",
    "admin.security_settings",
    "users.delete",
    "projects.delete",
    "billing.manage",
    "admin.backup_restore",
})


class PatternKind(IntEnum):
    """Pattern kinds, valued by specificity (higher is more specific)."""
    GLOBAL = 1
    CATEGORY = 2
    EXACT = 3


@dataclass(frozen=True)
class PermissionPattern:
    """Parsed permission pattern: Exact(category, action) | CategoryWildcard(category) | Global."""

    kind: PatternKind
    category: Optional[str] = None
    action: Optional[str] = None

    def matches(self, category: str, action: str) -> bool:
        if self.kind is PatternKind.GLOBAL:
            return True
        if self.kind is PatternKind.CATEGORY:
            return self.category == category
        return self.category == category and self.action == action

    @property
    def specificity(self) -> int:
        return int(self.kind)

    def __str__(self) -> str:
        if self.kind is PatternKind.GLOBAL:
            return GLOBAL_WILDCARD
        if self.kind is PatternKind.CATEGORY:
            return f"{self.category}.*"
        return f"{self.category}.{self.action}"


GLOBAL = PermissionPattern(PatternKind.GLOBAL)


def parse_permission(value: str) -> Tuple[str, str]:
    """
    Split a concrete permission identifier into (category, action).

    Raises:
        ValidationError: if the identifier is not exactly "category.action"
    """
    if not isinstance(value, str) or value.count(".") != 1:
        raise ValidationError(
            f"Malformed permission '{value}': expected 'category.action'",
            value=value,
        )
    category, action = value.split(".")
    if not _SEGMENT.match(category) or not _SEGMENT.match(action):
        raise ValidationError(
            f"Malformed permission '{value}': category and action must be "
            "non-empty and contain only letters, digits, '_' or '-'",
            value=value,
        )
    return category, action


@lru_cache(maxsize=4096)
def parse_pattern(value: str) -> PermissionPattern:
    """Parse a grant/restriction pattern ("*", "category.*" or "category.action")."""
    if value == GLOBAL_WILDCARD:
        return GLOBAL
    if isinstance(value, str) and value.endswith(".*") and value.count(".") == 1:
        category = value[:-2]
        if not _SEGMENT.match(category):
            raise ValidationError(f"Malformed permission pattern '{value}'", value=value)
        return PermissionPattern(PatternKind.CATEGORY, category=category)
    category, action = parse_permission(value)
    return PermissionPattern(PatternKind.EXACT, category=category, action=action)


def parse_patterns(values: Iterable[str]) -> frozenset:
    return frozenset(parse_pattern(v) for v in values)


def best_match(patterns: Iterable[PermissionPattern], category: str, action: str) -> int:
    """Specificity of the most specific pattern matching (category, action), 0 if none."""
    best = 0
    for pattern in patterns:
        if pattern.specificity > best and pattern.matches(category, action):
            best = pattern.specificity
    return best


# =============================================================================
# CATALOG
# =============================================================================

DEFAULT_PERMISSION_CATEGORIES: Dict[str, Dict] = {
    "projects": {
        "name": "Project Management",
        "permissions": {
            "projects.create": "Create new projects",
            "projects.read": "View project details",
            "projects.update": "Edit project information",
            "projects.delete": "Delete projects",
            "projects.archive": "Archive/unarchive projects",
            "projects.export": "Export project data",
        },
    },
    "tasks": {
        "name": "Task Management",
        "permissions": {
            "tasks.create": "Create new tasks",
            "tasks.read": "View task details",
            "tasks.update": "Edit task information",
            "tasks.delete": "Delete tasks",
            "tasks.assign": "Assign tasks to team members",
            "tasks.track_time": "Track time on tasks",
        },
    },
    "users": {
        "name": "User Management",
        "permissions": {
            "users.create": "Create new user accounts",
            "users.read": "View user profiles",
            "users.update": "Edit user information",
            "users.delete": "Delete user accounts",
            "users.invite": "Invite new users",
            "users.manage_roles": "Assign and modify user roles",
        },
    },
    "teams": {
        "name": "Team Management",
        "permissions": {
            "teams.create": "Create new teams",
            "teams.read": "View team information",
            "teams.update": "Edit team details",
            "teams.delete": "Delete teams",
            "teams.manage": "Manage team membership",
            "teams.assign_projects": "Assign projects to teams",
        },
    },
    "files": {
        "name": "File Management",
        "permissions": {
            "files.upload": "Upload files",
            "files.download": "Download files",
            "files.delete": "Delete files",
            "files.share": "Share files with others",
            "files.manage_versions": "Manage file versions",
        },
    },
    "comments": {
        "name": "Communication",
        "permissions": {
            "comments.create": "Create comments",
            "comments.read": "View comments",
            "comments.update": "Edit own comments",
            "comments.delete": "Delete comments",
            "comments.moderate": "Moderate all comments",
        },
    },
    "reports": {
        "name": "Reports & Analytics",
        "permissions": {
            "reports.view": "View reports and analytics",
            "reports.create": "Create custom reports",
            "reports.export": "Export report data",
            "reports.schedule": "Schedule automated reports",
        },
    },
    "billing": {
        "name": "Billing & Invoicing",
        "permissions": {
            "billing.view": "View billing information",
            "billing.manage": "Manage billing and payments",
            "billing.export": "Export billing data",
            "billing.create_invoices": "Create and send invoices",
        },
    },
    "admin": {
        "name": "System Administration",
        "permissions": {
            "admin.system_settings": "Manage system settings",
            "admin.security_settings": "Manage security configurations",
            "admin.audit_logs": "View audit logs",
            "admin.backup_restore": "Perform backup and restore operations",
            "admin.integrations": "Manage third-party integrations",
        },
    },
}


@dataclass(frozen=True)
class PermissionDefinition:
    """Catalog entry for a single permission."""
    id: str
    category: str
    category_name: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "category": self.category,
            "category_name": self.category_name,
            "description": self.description,
        }


class PermissionCatalog:
    """
    Static registry of permission identifiers.

    Usage:
        catalog = PermissionCatalog.default()
        catalog.validate_pattern("projects.*")
    """

    def __init__(self) -> None:
        self._permissions: Dict[str, PermissionDefinition] = {}
        self._category_names: Dict[str, str] = {}

    @classmethod
    def default(cls) -> "PermissionCatalog":
        catalog = cls()
        for category, entry in DEFAULT_PERMISSION_CATEGORIES.items():
            for permission_id, description in entry["permissions"].items():
                catalog.register(permission_id, description, category_name=entry["name"])
        return catalog

    def register(self, permission_id: str, description: str, category_name: Optional[str] = None) -> PermissionDefinition:
        """
        Register a permission identifier.

        Raises:
            ValidationError: if the identifier is malformed or already registered
        """
        category, _ = parse_permission(permission_id)
        if permission_id in self._permissions:
            raise ValidationError(f"Permission '{permission_id}' already registered", value=permission_id)

        name = category_name or self._category_names.get(category) or category
        self._category_names.setdefault(category, name)
        definition = PermissionDefinition(
            id=permission_id,
            category=category,
            category_name=self._category_names[category],
            description=description,
        )
        self._permissions[permission_id] = definition
        return definition

    def get(self, permission_id: str) -> Optional[PermissionDefinition]:
        return self._permissions.get(permission_id)

    def __contains__(self, permission_id: str) -> bool:
        return permission_id in self._permissions

    def has_category(self, category: str) -> bool:
        return category in self._category_names

    def validate_pattern(self, value: str) -> PermissionPattern:
        """Parse a pattern and require that it refers to catalogued permissions."""
        pattern = parse_pattern(value)
        if pattern.kind is PatternKind.CATEGORY and not self.has_category(pattern.category):
            raise ValidationError(f"Unknown permission category '{pattern.category}'", value=value)
        if pattern.kind is PatternKind.EXACT and value not in self._permissions:
            raise ValidationError(f"Unknown permission '{value}'", value=value)
        return pattern

    def list(self, category: Optional[str] = None) -> List[PermissionDefinition]:
        items = sorted(self._permissions.values(), key=lambda p: p.id)
        if category is not None:
            items = [p for p in items if p.category == category]
        return items

    def categories(self) -> Dict[str, str]:
        """Map of category key to human-readable name."""
        return dict(self._category_names)
