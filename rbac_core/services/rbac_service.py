"""
RBAC Service

Composition root for the RBAC core. Builds the catalog, registry, cache,
evaluator, assignment service and audit logger, and owns their lifecycle.
There are no module-level singletons: callers construct one service and
pass it where it is needed (the API stores it on app.state).

Usage:
    service = await RBACService.from_settings(settings)
    await service.start()
    decision = await service.check_permission("u1", "projects.read")
    await service.shutdown()
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from rbac_core.core.config import Settings
from rbac_core.core.database import build_engine, build_sessionmaker
from rbac_core.core.exceptions import AuthorizationError, DependencyError, ValidationError
from rbac_core.core.permissions import Permission, PermissionCatalog, PermissionDefinition
from rbac_core.core.redis_client import CacheStore, InMemoryCacheStore, create_cache_store
from rbac_core.core.types import AuditAction, AuditPage, AuditQuery, Decision, Role, RoleAssignment
from rbac_core.core.utils import bounded
from rbac_core.jobs.audit_retention import AuditRetentionJob
from rbac_core.models.role import SYSTEM_ROLES
from rbac_core.services.audit_service import AuditLogger
from rbac_core.services.permission_cache import PermissionCache
from rbac_core.services.permission_evaluator import PermissionEvaluator
from rbac_core.services.role_registry import RoleRegistry
from rbac_core.services.role_service import RoleAssignmentService
from rbac_core.services.store import InMemoryStore, PersistentStore, SQLAlchemyStore

logger = logging.getLogger(__name__)


def system_roles() -> List[Role]:
    return [Role.from_dict(definition, role_id=role_id) for role_id, definition in SYSTEM_ROLES.items()]


class RBACService:
    """Facade exposing the RBAC operations to callers."""

    def __init__(
        self,
        store: PersistentStore,
        cache_store: CacheStore,
        catalog: Optional[PermissionCatalog] = None,
        check_ttl: int = 300,
        set_ttl: int = 600,
        cache_timeout: float = 0.5,
        store_timeout: float = 2.0,
        restriction_mode: str = "enforce",
        audit_enabled: bool = True,
        audit_retention_days: int = 365,
        audit_buffer_size: int = 10000,
        audit_forward_retries: int = 3,
        audit_retry_delay: float = 0.5,
        audit_sweep_interval_hours: float = 24,
        engine: Optional[AsyncEngine] = None,
    ):
        self.store = store
        self.store_timeout = store_timeout
        self.catalog = catalog or PermissionCatalog.default()
        self.registry = RoleRegistry(self.catalog)
        self.cache = PermissionCache(cache_store, check_ttl=check_ttl, set_ttl=set_ttl, timeout=cache_timeout)
        self.audit = AuditLogger(
            store,
            enabled=audit_enabled,
            retention_days=audit_retention_days,
            buffer_size=audit_buffer_size,
            forward_retries=audit_forward_retries,
            retry_delay=audit_retry_delay,
            store_timeout=store_timeout,
        )
        self.evaluator = PermissionEvaluator(
            self.registry,
            store,
            self.cache,
            self.audit,
            restriction_mode=restriction_mode,
            store_timeout=store_timeout,
        )
        self.audit.bind_authorizer(self.evaluator.allows)
        self.assignments = RoleAssignmentService(
            self.evaluator,
            self.registry,
            store,
            self.cache,
            self.audit,
            store_timeout=store_timeout,
        )
        self.retention_job = AuditRetentionJob(self.audit, interval_hours=audit_sweep_interval_hours)
        self._engine = engine
        self._started = False

    @classmethod
    async def from_settings(cls, settings: Settings) -> "RBACService":
        """Build a service backed by the configured database and cache store."""
        engine = build_engine(settings)
        store = SQLAlchemyStore(build_sessionmaker(engine))
        cache_store = await create_cache_store(settings.REDIS_URL)
        return cls(
            store,
            cache_store,
            check_ttl=settings.PERMISSION_CHECK_TTL_SECONDS,
            set_ttl=settings.PERMISSION_SET_TTL_SECONDS,
            cache_timeout=settings.CACHE_TIMEOUT_SECONDS,
            store_timeout=settings.STORE_TIMEOUT_SECONDS,
            restriction_mode=settings.RESTRICTION_MODE,
            audit_enabled=settings.AUDIT_ENABLED,
            audit_retention_days=settings.AUDIT_RETENTION_DAYS,
            audit_buffer_size=settings.AUDIT_BUFFER_SIZE,
            audit_forward_retries=settings.AUDIT_FORWARD_RETRIES,
            audit_retry_delay=settings.AUDIT_RETRY_DELAY_SECONDS,
            audit_sweep_interval_hours=settings.AUDIT_SWEEP_INTERVAL_HOURS,
            engine=engine,
        )

    @classmethod
    def in_memory(cls, **kwargs) -> "RBACService":
        """Single-process service with in-memory store and cache."""
        return cls(InMemoryStore(), InMemoryCacheStore(), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register system roles, load custom roles, start background workers."""
        if self._started:
            return
        self.registry.register_many(system_roles())
        await self._load_custom_roles()
        await self.audit.start()
        await self.retention_job.start()
        self._started = True
        logger.info(f"RBAC service started with {len(self.registry.list())} roles")

    async def _load_custom_roles(self) -> None:
        try:
            pending = await bounded(self.store.load_roles(), self.store_timeout, "store")
        except DependencyError as e:
            logger.error(f"Could not load custom roles, continuing with system roles only: {e.message}")
            return

        pending = [role for role in pending if role.id not in SYSTEM_ROLES]
        # Roles may inherit other custom roles; keep registering until no progress
        while pending:
            failed = []
            for role in pending:
                try:
                    self.registry.register(role)
                except ValidationError as e:
                    failed.append((role, e))
            if len(failed) == len(pending):
                for role, error in failed:
                    logger.error(f"Skipping stored role '{role.id}': {error.message}")
                break
            pending = [role for role, _ in failed]

    async def shutdown(self) -> None:
        """Stop workers, flush buffered audit forwards, release connections."""
        await self.retention_job.stop()
        await self.audit.stop()
        await self.cache.close()
        if self._engine is not None:
            await self._engine.dispose()
        self._started = False
        logger.info("RBAC service shut down")

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def check_permission(
        self,
        user_id: str,
        permission: str,
        resource_id: Optional[str] = None,
        resource_owner: Optional[str] = None,
    ) -> Decision:
        return await self.evaluator.check(user_id, permission, resource_id, resource_owner)

    async def assign_role(
        self,
        caller_id: str,
        user_id: str,
        role_id: str,
        expires_at: Optional[datetime] = None,
    ) -> RoleAssignment:
        return await self.assignments.assign(caller_id, user_id, role_id, expires_at)

    async def revoke_role(
        self,
        caller_id: str,
        user_id: str,
        role_id: str,
        reason: Optional[str] = None,
    ) -> RoleAssignment:
        return await self.assignments.revoke(caller_id, user_id, role_id, reason)

    async def query_audit_log(self, caller_id: str, filters: AuditQuery) -> AuditPage:
        return await self.audit.query(caller_id, filters)

    # ------------------------------------------------------------------
    # Role definitions
    # ------------------------------------------------------------------

    async def register_role(self, caller_id: str, role: Role, replace: bool = False) -> Role:
        """
        Register (or, with replace=True, re-version) a custom role.

        The definition is persisted before it becomes active. Cached
        decisions computed against the previous definitions stop matching
        the registry fingerprint and are also deleted.

        Raises:
            AuthorizationError: caller lacks users.manage_roles
            ValidationError: invalid definition or attempt to replace a system role
            DependencyError: the definition could not be persisted
        """
        if not caller_id or not await self.evaluator.allows(caller_id, Permission.USERS_MANAGE_ROLES):
            raise AuthorizationError()

        existing = self.registry.find(role.id)
        if role.id in SYSTEM_ROLES or (existing is not None and existing.is_system_role):
            raise ValidationError(f"Cannot redefine system role '{role.id}'", value=role.id)

        prepared = self.registry.validate([role], replace_existing=replace)[0]
        await bounded(self.store.save_role(prepared), self.store_timeout, "store")
        active = self.registry.register(role, replace_existing=replace)

        try:
            await self.cache.invalidate_all()
        except DependencyError as e:
            logger.warning(f"Cache flush after registering {role.id} failed: {e.message}")

        self.audit.log(
            AuditAction.ROLE_REGISTERED,
            caller_id,
            {"role_id": active.id, "version": active.version, "replaced": existing is not None},
        )
        return active

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_roles(self) -> List[Role]:
        return self.registry.list()

    def list_permissions(self, category: Optional[str] = None) -> List[PermissionDefinition]:
        return self.catalog.list(category)

    async def get_effective_permissions(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.evaluator.get_effective_permissions(user_id)

    async def has_role(self, user_id: str, role_id: str) -> bool:
        return await self.evaluator.has_role(user_id, role_id)

    async def clear_user_cache(self, user_id: str) -> int:
        """Drop every cached decision and the resolved set for a principal."""
        return await self.cache.invalidate_user(user_id)

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self._started else "starting",
            "roles": len(self.registry.list()),
            "registry_version": self.registry.version,
            "audit_buffered": len(self.audit.entries()),
            "audit_dropped": self.audit.dropped,
            "audit_backlog": self.audit.backlog,
            "retention_job": self.retention_job.running,
        }
