"""
Role Registry

Holds role definitions, validates them against the permission catalog and
resolves inheritance.

Concurrency: readers grab the current snapshot (roles + inheritance memo)
without locking. Writers build a complete new snapshot under a lock and
swap it in, so a reader never sees a partially-updated role and memoized
closures never outlive the roles they were computed from.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Dict, FrozenSet, Iterable, List, Optional

from rbac_core.core.exceptions import NotFoundError, ValidationError
from rbac_core.core.permissions import PermissionCatalog
from rbac_core.core.types import Role

logger = logging.getLogger(__name__)


@dataclass
class _Snapshot:
    roles: Dict[str, Role]
    memo: Dict[str, FrozenSet[Role]] = field(default_factory=dict)
    version: int = 0
    fingerprint: str = ""


def _fingerprint(roles: Dict[str, Role]) -> str:
    """Content hash of the role definitions; equal across replicas holding the same roles."""
    blob = json.dumps([roles[k].to_dict() for k in sorted(roles)], sort_keys=True)
    return hashlib.sha256(blob.encode()).hexdigest()[:16]


class RoleRegistry:
    """
    Registry of active roles.

    Usage:
        registry = RoleRegistry(PermissionCatalog.default())
        registry.register(Role.from_dict({...}, role_id="developer"))
        closure = registry.resolve_inheritance("team_lead")
    """

    def __init__(self, catalog: PermissionCatalog):
        self.catalog = catalog
        self._snapshot = _Snapshot(roles={}, fingerprint=_fingerprint({}))
        self._write_lock = Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every successful mutation."""
        return self._snapshot.version

    @property
    def fingerprint(self) -> str:
        """Content hash of the active role definitions, used to stamp cache entries."""
        return self._snapshot.fingerprint

    def get(self, role_id: str) -> Role:
        role = self._snapshot.roles.get(role_id)
        if role is None:
            raise NotFoundError(f"Role '{role_id}' not found", details={"role_id": role_id})
        return role

    def find(self, role_id: str) -> Optional[Role]:
        return self._snapshot.roles.get(role_id)

    def __contains__(self, role_id: str) -> bool:
        return role_id in self._snapshot.roles

    def list(self) -> List[Role]:
        return sorted(self._snapshot.roles.values(), key=lambda r: (-r.level, r.id))

    def resolve_inheritance(self, role_id: str) -> FrozenSet[Role]:
        """
        Transitive closure of role_id over `inherits`, including the role itself.

        Memoized per role id until the next registry mutation.
        """
        snapshot = self._snapshot
        cached = snapshot.memo.get(role_id)
        if cached is not None:
            return cached

        if role_id not in snapshot.roles:
            raise NotFoundError(f"Role '{role_id}' not found", details={"role_id": role_id})

        closure: Dict[str, Role] = {}
        stack = [role_id]
        while stack:
            current = stack.pop()
            if current in closure:
                continue
            role = snapshot.roles[current]
            closure[current] = role
            stack.extend(parent for parent in role.inherits if parent not in closure)

        result = frozenset(closure.values())
        snapshot.memo[role_id] = result
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def validate(self, roles: Iterable[Role], replace_existing: bool = False) -> List[Role]:
        """
        Validate roles against the current registry without installing them.

        Returns the roles as they would be installed (patterns parsed,
        versions assigned).

        Raises:
            ValidationError: duplicate id, unknown permission, unknown
                inherited role, or cyclic inheritance
        """
        prepared, _ = self._prepare(self._snapshot.roles, list(roles), replace_existing)
        return prepared

    def register(self, role: Role, replace_existing: bool = False) -> Role:
        """Validate and install a single role."""
        return self.register_many([role], replace_existing=replace_existing)[0]

    def register_many(self, roles: Iterable[Role], replace_existing: bool = False) -> List[Role]:
        """
        Validate and install roles atomically.

        Either every role is installed or none is.
        """
        roles = list(roles)
        with self._write_lock:
            current = self._snapshot
            prepared, merged = self._prepare(current.roles, roles, replace_existing)
            self._snapshot = _Snapshot(
                roles=merged,
                version=current.version + 1,
                fingerprint=_fingerprint(merged),
            )

        for role in prepared:
            logger.info(f"Role registered: {role.id} (version {role.version})")
        return prepared

    def unregister(self, role_id: str) -> Role:
        """
        Remove a custom role.

        Raises:
            NotFoundError: role does not exist
            ValidationError: role is a system role or is inherited by another role
        """
        with self._write_lock:
            current = self._snapshot
            role = current.roles.get(role_id)
            if role is None:
                raise NotFoundError(f"Role '{role_id}' not found", details={"role_id": role_id})
            if role.is_system_role:
                raise ValidationError(f"Cannot remove system role '{role_id}'", value=role_id)
            dependents = sorted(r.id for r in current.roles.values() if role_id in r.inherits)
            if dependents:
                raise ValidationError(
                    f"Role '{role_id}' is inherited by: {', '.join(dependents)}",
                    value=role_id,
                )
            remaining = {k: v for k, v in current.roles.items() if k != role_id}
            self._snapshot = _Snapshot(
                roles=remaining,
                version=current.version + 1,
                fingerprint=_fingerprint(remaining),
            )

        logger.info(f"Role unregistered: {role_id}")
        return role

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _prepare(self, existing: Dict[str, Role], roles: List[Role], replace_existing: bool):
        seen = set()
        prepared = []
        for role in roles:
            if not role.id:
                raise ValidationError("Role id is required")
            if role.id in seen:
                raise ValidationError(f"Duplicate role id '{role.id}' in batch", value=role.id)
            seen.add(role.id)

            previous = existing.get(role.id)
            if previous is not None and not replace_existing:
                raise ValidationError(f"Role '{role.id}' already registered", value=role.id)

            grants = frozenset(self.catalog.validate_pattern(p) for p in role.permissions)
            restrictions = frozenset(self.catalog.validate_pattern(p) for p in role.restrictions)
            version = previous.version + 1 if previous is not None else role.version
            prepared.append(
                replace(
                    role,
                    version=version,
                    grant_patterns=grants,
                    restriction_patterns=restrictions,
                )
            )

        merged = dict(existing)
        merged.update({role.id: role for role in prepared})

        for role in prepared:
            for parent in role.inherits:
                if parent not in merged:
                    raise ValidationError(
                        f"Role '{role.id}' inherits unknown role '{parent}'",
                        value=parent,
                    )

        self._check_acyclic(merged, [role.id for role in prepared])
        return prepared, merged

    @staticmethod
    def _check_acyclic(roles: Dict[str, Role], start_ids: List[str]) -> None:
        """Depth-first traversal with a visiting set; a back edge is a cycle."""
        done = set()

        def visit(role_id: str, visiting: List[str]) -> None:
            if role_id in done:
                return
            if role_id in visiting:
                cycle = visiting[visiting.index(role_id):] + [role_id]
                raise ValidationError(
                    f"Cyclic role inheritance: {' -> '.join(cycle)}",
                    value=cycle,
                )
            visiting.append(role_id)
            for parent in roles[role_id].inherits:
                visit(parent, visiting)
            visiting.pop()
            done.add(role_id)

        for role_id in start_ids:
            visit(role_id, [])
