"""
Persistent store adapters

The store is the source of truth for role definitions, role assignments
and the audit log. Two adapters:
- SQLAlchemyStore: async SQLAlchemy over the tables in rbac_core.models
- InMemoryStore: single-process store for tests and local runs
"""
import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, List, Optional

from sqlalchemy import select, update, and_, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from rbac_core.core.database import session_scope
from rbac_core.core.types import (
    AuditEntry,
    AuditPage,
    AuditQuery,
    Role,
    RoleAssignment,
    as_utc,
    utcnow,
)
from rbac_core.models import AuditLogRecord, RoleAssignmentRecord, RoleRecord

logger = logging.getLogger(__name__)


class PersistentStore(ABC):
    """Contract with the external persistent store."""

    @abstractmethod
    async def get_role_assignments(self, user_id: str) -> List[RoleAssignment]:
        """All non-revoked assignments for a principal (expired ones included)."""

    @abstractmethod
    async def get_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        """The non-revoked assignment of role_id to user_id, if any."""

    @abstractmethod
    async def put_role_assignment(self, assignment: RoleAssignment) -> None:
        """Insert or replace an assignment by id."""

    @abstractmethod
    async def delete_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        """Mark the assignment revoked. Returns the revoked assignment or None."""

    @abstractmethod
    async def append_audit_entry(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    async def query_audit_entries(self, query: AuditQuery) -> AuditPage:
        ...

    @abstractmethod
    async def load_roles(self) -> List[Role]:
        """Custom role definitions, latest version of each."""

    @abstractmethod
    async def save_role(self, role: Role) -> None:
        ...


# =============================================================================
# SQLALCHEMY
# =============================================================================

def _to_assignment(record: RoleAssignmentRecord) -> RoleAssignment:
    return RoleAssignment(
        id=record.id,
        user_id=record.user_id,
        role_id=record.role_id,
        assigned_by=record.assigned_by,
        assigned_at=record.assigned_at,
        expires_at=record.expires_at,
        revoked_at=record.revoked_at,
    )


def _to_entry(record: AuditLogRecord) -> AuditEntry:
    return AuditEntry(
        id=record.id,
        action=record.action,
        user_id=record.user_id,
        timestamp=as_utc(record.ts),
        details=record.details or {},
        context=record.event_context or {},
    )


class SQLAlchemyStore(PersistentStore):
    """
    Store backed by async SQLAlchemy sessions.

    Each call runs in its own transaction; a raised exception rolls it back.
    """

    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    async def get_role_assignments(self, user_id: str) -> List[RoleAssignment]:
        async with session_scope(self._sessionmaker) as db:
            result = await db.execute(
                select(RoleAssignmentRecord)
                .where(
                    and_(
                        RoleAssignmentRecord.user_id == user_id,
                        RoleAssignmentRecord.revoked_at.is_(None),
                    )
                )
            )
            return [_to_assignment(r) for r in result.scalars().all()]

    async def get_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        async with session_scope(self._sessionmaker) as db:
            result = await db.execute(
                select(RoleAssignmentRecord)
                .where(
                    and_(
                        RoleAssignmentRecord.user_id == user_id,
                        RoleAssignmentRecord.role_id == role_id,
                        RoleAssignmentRecord.revoked_at.is_(None),
                    )
                )
                .order_by(RoleAssignmentRecord.assigned_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _to_assignment(record) if record else None

    async def put_role_assignment(self, assignment: RoleAssignment) -> None:
        async with session_scope(self._sessionmaker) as db:
            await db.merge(
                RoleAssignmentRecord(
                    id=assignment.id,
                    user_id=assignment.user_id,
                    role_id=assignment.role_id,
                    assigned_by=assignment.assigned_by,
                    assigned_at=assignment.assigned_at,
                    expires_at=assignment.expires_at,
                    revoked_at=assignment.revoked_at,
                )
            )

    async def delete_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        revoked_at = utcnow()
        async with session_scope(self._sessionmaker) as db:
            result = await db.execute(
                select(RoleAssignmentRecord)
                .where(
                    and_(
                        RoleAssignmentRecord.user_id == user_id,
                        RoleAssignmentRecord.role_id == role_id,
                        RoleAssignmentRecord.revoked_at.is_(None),
                    )
                )
            )
            records = list(result.scalars().all())
            if not records:
                return None

            await db.execute(
                update(RoleAssignmentRecord)
                .where(RoleAssignmentRecord.id.in_([r.id for r in records]))
                .values(revoked_at=revoked_at)
            )
            return _to_assignment(records[0]).revoked(revoked_at)

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        async with session_scope(self._sessionmaker) as db:
            db.add(
                AuditLogRecord(
                    id=entry.id,
                    action=entry.action,
                    user_id=entry.user_id,
                    ts=entry.timestamp,
                    details=entry.details,
                    event_context=entry.context,
                )
            )

    async def query_audit_entries(self, query: AuditQuery) -> AuditPage:
        conditions = []
        if query.user_id is not None:
            conditions.append(AuditLogRecord.user_id == query.user_id)
        if query.action is not None:
            conditions.append(AuditLogRecord.action == query.action)
        if query.start_date is not None:
            conditions.append(AuditLogRecord.ts >= query.start_date)
        if query.end_date is not None:
            conditions.append(AuditLogRecord.ts <= query.end_date)

        async with session_scope(self._sessionmaker) as db:
            total = await db.execute(
                select(func.count(AuditLogRecord.id)).where(and_(True, *conditions))
            )
            result = await db.execute(
                select(AuditLogRecord)
                .where(and_(True, *conditions))
                .order_by(AuditLogRecord.ts.asc(), AuditLogRecord.id.asc())
                .limit(query.limit)
                .offset(query.offset)
            )
            return AuditPage(
                entries=[_to_entry(r) for r in result.scalars().all()],
                total=total.scalar() or 0,
            )

    async def load_roles(self) -> List[Role]:
        async with session_scope(self._sessionmaker) as db:
            result = await db.execute(select(RoleRecord).order_by(RoleRecord.id))
            roles = []
            for record in result.scalars().all():
                data = dict(record.definition or {})
                data["version"] = record.version
                roles.append(Role.from_dict(data, role_id=record.id))
            return roles

    async def save_role(self, role: Role) -> None:
        async with session_scope(self._sessionmaker) as db:
            await db.merge(
                RoleRecord(
                    id=role.id,
                    definition=role.to_dict(),
                    version=role.version,
                    is_system=role.is_system_role,
                )
            )


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryStore(PersistentStore):
    """Process-local store; keeps revoked assignments for history."""

    def __init__(self):
        self._assignments: Dict[str, RoleAssignment] = {}
        self._audit: List[AuditEntry] = []
        self._roles: Dict[str, Role] = {}
        self._lock = Lock()

    async def get_role_assignments(self, user_id: str) -> List[RoleAssignment]:
        with self._lock:
            return [
                a for a in self._assignments.values()
                if a.user_id == user_id and a.revoked_at is None
            ]

    async def get_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        for assignment in await self.get_role_assignments(user_id):
            if assignment.role_id == role_id:
                return assignment
        return None

    async def put_role_assignment(self, assignment: RoleAssignment) -> None:
        with self._lock:
            self._assignments[assignment.id] = assignment

    async def delete_role_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        revoked = None
        with self._lock:
            for assignment_id, assignment in list(self._assignments.items()):
                if (
                    assignment.user_id == user_id
                    and assignment.role_id == role_id
                    and assignment.revoked_at is None
                ):
                    revoked = assignment.revoked()
                    self._assignments[assignment_id] = revoked
        return revoked

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    async def query_audit_entries(self, query: AuditQuery) -> AuditPage:
        with self._lock:
            entries = list(self._audit)
        return query.paginate(entries)

    async def load_roles(self) -> List[Role]:
        with self._lock:
            return list(self._roles.values())

    async def save_role(self, role: Role) -> None:
        with self._lock:
            self._roles[role.id] = role

    def all_assignments(self) -> List[RoleAssignment]:
        with self._lock:
            return list(self._assignments.values())
