"""
Permission Evaluator

Answers "may principal P do permission X [on resource R]?".

Evaluation:
1. validate the permission identifier (malformed => ValidationError)
2. per-check cache lookup
3. resolve active assignments into closures (role + inherited roles),
   through the resolved-set cache
4. a closure allows X when its most specific matching grant is more
   specific than its most specific matching restriction; any allowing
   closure allows the check
5. resource owner override for read/update
6. cache the decision, then audit it

A persistent store failure denies with reason "evaluation unavailable".
Cache failures fall back to direct computation.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from rbac_core.core.exceptions import DependencyError, ValidationError
from rbac_core.core.permissions import (
    OWNER_ACTIONS,
    SENSITIVE_PERMISSIONS,
    PermissionPattern,
    best_match,
    parse_pattern,
    parse_permission,
)
from rbac_core.core.types import AuditAction, Decision, utcnow
from rbac_core.core.utils import bounded
from rbac_core.services.audit_service import AuditLogger
from rbac_core.services.permission_cache import PermissionCache
from rbac_core.services.role_registry import RoleRegistry
from rbac_core.services.store import PersistentStore

logger = logging.getLogger(__name__)

REASON_GRANTED = "Permission granted"
REASON_OWNER = "Resource owner access"
REASON_DENIED = "Insufficient permissions"
REASON_UNAVAILABLE = "evaluation unavailable"

RESTRICTION_ENFORCE = "enforce"
RESTRICTION_ADVISORY = "advisory"


@dataclass(frozen=True)
class AssignmentClosure:
    """Grants and restrictions contributed by one active assignment."""

    role_id: str
    grants: FrozenSet[PermissionPattern]
    restrictions: FrozenSet[PermissionPattern]
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now <= self.expires_at

    def allows(self, category: str, action: str, enforce_restrictions: bool = True) -> bool:
        grant = best_match(self.grants, category, action)
        if not grant:
            return False
        if not enforce_restrictions:
            return True
        return grant > best_match(self.restrictions, category, action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role_id": self.role_id,
            "grants": sorted(str(p) for p in self.grants),
            "restrictions": sorted(str(p) for p in self.restrictions),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssignmentClosure":
        expires_at = data.get("expires_at")
        return cls(
            role_id=data["role_id"],
            grants=frozenset(parse_pattern(p) for p in data["grants"]),
            restrictions=frozenset(parse_pattern(p) for p in data["restrictions"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


class PermissionEvaluator:
    """
    Decision engine over the role registry, cache and persistent store.

    Holds no mutable state of its own; safe to share between concurrent
    request handlers.
    """

    def __init__(
        self,
        registry: RoleRegistry,
        store: PersistentStore,
        cache: PermissionCache,
        audit: AuditLogger,
        restriction_mode: str = RESTRICTION_ENFORCE,
        store_timeout: float = 2.0,
    ):
        if restriction_mode not in (RESTRICTION_ENFORCE, RESTRICTION_ADVISORY):
            raise ValidationError(f"Unknown restriction mode '{restriction_mode}'", value=restriction_mode)
        self.registry = registry
        self.store = store
        self.cache = cache
        self.audit = audit
        self.enforce_restrictions = restriction_mode == RESTRICTION_ENFORCE
        self.store_timeout = store_timeout

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    async def check(
        self,
        user_id: str,
        permission: str,
        resource_id: Optional[str] = None,
        resource_owner: Optional[str] = None,
    ) -> Decision:
        """
        Evaluate a permission check.

        Raises:
            ValidationError: empty principal or malformed permission
        """
        if not user_id:
            raise ValidationError("Principal id is required")
        category, action = parse_permission(permission)

        owner_context = resource_owner is not None and resource_owner == user_id
        key = PermissionCache.check_key(user_id, permission, resource_id, owner=owner_context)
        stamp = await self.cache.stamp(user_id, self.registry.fingerprint)

        cached = await self.cache.get_decision(key, stamp)
        if cached is not None:
            return cached

        now = utcnow()
        try:
            closures = await self.resolve_assignments(user_id, now, stamp=stamp)
        except DependencyError as e:
            logger.warning(f"Permission check failed closed for {user_id} on {permission}: {e.message}")
            decision = Decision(allowed=False, reason=REASON_UNAVAILABLE, checked_at=now)
            self._audit_check(user_id, permission, resource_id, decision)
            return decision

        allowing = [c for c in closures if c.allows(category, action, self.enforce_restrictions)]
        if allowing:
            decision = Decision(allowed=True, reason=REASON_GRANTED, checked_at=now)
            ttl = self._ttl_until_expiry(allowing, now)
        elif owner_context and action in OWNER_ACTIONS:
            decision = Decision(allowed=True, reason=REASON_OWNER, checked_at=now)
            ttl = None
        else:
            decision = Decision(allowed=False, reason=REASON_DENIED, checked_at=now)
            ttl = None

        # Completes even if the caller is cancelled; the audit write below does not
        await asyncio.shield(self.cache.set_decision(key, decision, stamp, ttl))
        self._audit_check(user_id, permission, resource_id, decision)
        return decision

    async def allows(self, user_id: str, permission: str) -> bool:
        """Boolean form of check() for callers gating their own operations."""
        return (await self.check(user_id, permission)).allowed

    @staticmethod
    def _ttl_until_expiry(closures: List[AssignmentClosure], now: datetime) -> Optional[int]:
        """Seconds until the last allowing assignment expires; None when one never expires."""
        if any(c.expires_at is None for c in closures):
            return None
        latest = max(c.expires_at for c in closures)
        return int((latest - now).total_seconds())

    def _audit_check(self, user_id: str, permission: str, resource_id: Optional[str], decision: Decision) -> None:
        context = {"sensitive": True} if permission in SENSITIVE_PERMISSIONS else {}
        self.audit.log(
            AuditAction.PERMISSION_CHECKED,
            user_id,
            {
                "permission": permission,
                "resource_id": resource_id,
                "result": decision.allowed,
                "reason": decision.reason,
            },
            context,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_assignments(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        stamp: Optional[str] = None,
    ) -> List[AssignmentClosure]:
        """
        Active assignment closures for a principal.

        The cache stamp must be taken before the store is read so that a
        concurrent invalidation makes the written set a miss.

        Raises:
            DependencyError: the persistent store failed or timed out
        """
        now = now or utcnow()
        if stamp is None:
            stamp = await self.cache.stamp(user_id, self.registry.fingerprint)

        cached = await self.cache.get_permission_set(user_id, stamp)
        if cached is not None:
            closures = [AssignmentClosure.from_dict(item) for item in cached]
            return [c for c in closures if c.is_active(now)]

        assignments = await bounded(
            self.store.get_role_assignments(user_id),
            self.store_timeout,
            "store",
        )

        closures = []
        for assignment in assignments:
            if not assignment.is_active(now):
                continue
            role = self.registry.find(assignment.role_id)
            if role is None:
                logger.warning(
                    f"Assignment {assignment.id} for {user_id} references missing role "
                    f"'{assignment.role_id}'; it contributes no permissions"
                )
                self.audit.log(
                    AuditAction.ROLE_REFERENCE_MISSING,
                    user_id,
                    {"role_id": assignment.role_id, "assignment_id": assignment.id},
                )
                continue

            grants = set()
            restrictions = set()
            for member in self.registry.resolve_inheritance(role.id):
                grants.update(member.grant_patterns)
                restrictions.update(member.restriction_patterns)
            closures.append(
                AssignmentClosure(
                    role_id=role.id,
                    grants=frozenset(grants),
                    restrictions=frozenset(restrictions),
                    expires_at=assignment.expires_at,
                )
            )

        await self.cache.set_permission_set(user_id, [c.to_dict() for c in closures], stamp)
        return closures

    async def get_effective_permissions(self, user_id: str) -> List[Dict[str, Any]]:
        """Per-assignment grants and restrictions currently in effect for a principal."""
        closures = await self.resolve_assignments(user_id)
        return [c.to_dict() for c in sorted(closures, key=lambda c: c.role_id)]

    async def has_role(self, user_id: str, role_id: str) -> bool:
        """Whether the principal directly holds an active assignment of role_id."""
        assignment = await bounded(
            self.store.get_role_assignment(user_id, role_id),
            self.store_timeout,
            "store",
        )
        return assignment is not None and assignment.is_active()
