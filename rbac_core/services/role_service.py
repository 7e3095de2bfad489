"""
Role Assignment Service

Assigns and revokes roles. Every mutation is gated on users.manage_roles,
written through to the persistent store, and only then followed by cache
invalidation and an audit entry.

Mutations of the same (user, role) pair are serialized within the process;
across replicas the partial unique index on role_assignments rejects a
second active row.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from rbac_core.core.exceptions import AuthorizationError, DependencyError, NotFoundError, ValidationError
from rbac_core.core.permissions import Permission
from rbac_core.core.types import AuditAction, RoleAssignment, as_utc, utcnow
from rbac_core.core.utils import bounded
from rbac_core.services.audit_service import AuditLogger
from rbac_core.services.permission_cache import PermissionCache
from rbac_core.services.permission_evaluator import PermissionEvaluator
from rbac_core.services.role_registry import RoleRegistry
from rbac_core.services.store import PersistentStore

logger = logging.getLogger(__name__)


class RoleAssignmentService:
    """
    Service for managing role assignments.

    Features:
    - Caller authorization via the evaluator
    - Idempotent assign (renews an existing assignment)
    - Synchronous per-user cache invalidation after the store write
    - Audit trail for every mutation
    """

    def __init__(
        self,
        evaluator: PermissionEvaluator,
        registry: RoleRegistry,
        store: PersistentStore,
        cache: PermissionCache,
        audit: AuditLogger,
        store_timeout: float = 2.0,
    ):
        self.evaluator = evaluator
        self.registry = registry
        self.store = store
        self.cache = cache
        self.audit = audit
        self.store_timeout = store_timeout
        # (user_id, role_id) -> [lock, holders and waiters]
        self._locks: Dict[Tuple[str, str], List] = {}

    async def _authorize(self, caller_id: str) -> None:
        if not caller_id or not await self.evaluator.allows(caller_id, Permission.USERS_MANAGE_ROLES):
            raise AuthorizationError()

    @asynccontextmanager
    async def _serialized(self, user_id: str, role_id: str):
        key = (user_id, role_id)
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    async def assign(
        self,
        caller_id: str,
        user_id: str,
        role_id: str,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        """
        Assign a role to a user.

        Args:
            caller_id: Principal performing the assignment
            user_id: Principal receiving the role
            role_id: Registered role id
            expires_at: Optional expiration (must be in the future)

        Returns:
            The active assignment (new or renewed)

        Raises:
            AuthorizationError: caller lacks users.manage_roles
            ValidationError: bad user id or expiration
            NotFoundError: role is not registered
            DependencyError: store write or cache invalidation failed
        """
        await self._authorize(caller_id)

        if not user_id:
            raise ValidationError("user_id is required")
        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= utcnow():
            raise ValidationError("expires_at must be in the future", value=expires_at.isoformat())
        self.registry.get(role_id)

        async with self._serialized(user_id, role_id):
            existing = await bounded(
                self.store.get_role_assignment(user_id, role_id),
                self.store_timeout,
                "store",
            )
            if existing is not None:
                assignment = existing.renewed(assigned_by=caller_id, expires_at=expires_at)
            else:
                assignment = RoleAssignment(
                    user_id=user_id,
                    role_id=role_id,
                    assigned_by=caller_id,
                    expires_at=expires_at,
                )

            await bounded(self.store.put_role_assignment(assignment), self.store_timeout, "store")

            details = {
                "role_id": role_id,
                "assignment_id": assignment.id,
                "assigned_by": caller_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "renewed": existing is not None,
            }
            await self._invalidate(user_id, AuditAction.ROLE_ASSIGNED, details)

        logger.info(f"Role {role_id} assigned to {user_id} by {caller_id}")
        return assignment

    async def revoke(
        self,
        caller_id: str,
        user_id: str,
        role_id: str,
        reason: Optional[str] = None,
    ) -> RoleAssignment:
        """
        Revoke a role from a user.

        When this returns, no subsequent check for user_id can be served
        from a cache entry computed before the revocation.

        Raises:
            AuthorizationError: caller lacks users.manage_roles
            NotFoundError: user does not hold the role
            DependencyError: store write or cache invalidation failed
        """
        await self._authorize(caller_id)

        async with self._serialized(user_id, role_id):
            revoked = await bounded(
                self.store.delete_role_assignment(user_id, role_id),
                self.store_timeout,
                "store",
            )
            if revoked is None:
                raise NotFoundError(
                    f"User '{user_id}' does not hold role '{role_id}'",
                    details={"user_id": user_id, "role_id": role_id},
                )

            details = {
                "role_id": role_id,
                "assignment_id": revoked.id,
                "revoked_by": caller_id,
                "reason": reason,
            }
            await self._invalidate(user_id, AuditAction.ROLE_REVOKED, details)

        logger.info(f"Role {role_id} revoked from {user_id} by {caller_id}")
        return revoked

    async def _invalidate(self, user_id: str, action: str, details: dict) -> None:
        """
        Invalidate the user's cache entries, then audit the committed mutation.

        The store write has already succeeded, so the audit entry is written
        even when invalidation fails; the failure is then raised.
        """
        try:
            await self.cache.invalidate_user(user_id)
        except DependencyError as e:
            logger.error(f"Cache invalidation failed for {user_id} after {action}: {e.message}")
            self.audit.log(action, user_id, {**details, "cache_invalidated": False})
            verb = "assigned" if action == AuditAction.ROLE_ASSIGNED else "revoked"
            raise DependencyError(
                f"Role {verb} but cache invalidation failed",
                dependency="cache",
            ) from e

        self.audit.log(action, user_id, {**details, "cache_invalidated": True})
