"""
Tests for permission evaluation: grammar, inheritance, restrictions,
ownership, caching and fail-closed behaviour.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from rbac_core.core.exceptions import ValidationError
from rbac_core.core.permissions import parse_pattern
from rbac_core.core.redis_client import InMemoryCacheStore
from rbac_core.core.types import AuditAction, Role, utcnow
from rbac_core.models.role import SYSTEM_ROLES
from rbac_core.services.permission_cache import PermissionCache
from rbac_core.services.permission_evaluator import (
    REASON_DENIED,
    REASON_GRANTED,
    REASON_OWNER,
    REASON_UNAVAILABLE,
    AssignmentClosure,
    PermissionEvaluator,
)
from rbac_core.services.rbac_service import RBACService

from tests.conftest import ADMIN


def audit_actions(service, action, user_id=None):
    return [
        e for e in service.audit.entries()
        if e.action == action and (user_id is None or e.user_id == user_id)
    ]


async def add_role(service, role_id, permissions, restrictions=(), inherits=()):
    return await service.register_role(
        ADMIN,
        Role(
            id=role_id,
            name=role_id,
            permissions=frozenset(permissions),
            restrictions=frozenset(restrictions),
            inherits=tuple(inherits),
        ),
    )


class TestGrants:

    @pytest.mark.asyncio
    async def test_category_wildcard_grants_every_action(self, service, grant):
        await grant("u1", "project_manager")
        for action in ("create", "read", "update", "archive"):
            decision = await service.check_permission("u1", f"projects.{action}")
            assert decision.allowed, action

    @pytest.mark.asyncio
    @pytest.mark.parametrize("permission", ["projects.create", "admin.backup_restore", "anything.at_all"])
    async def test_global_wildcard_grants_any_well_formed_permission(self, service, permission):
        decision = await service.check_permission(ADMIN, permission)
        assert decision.allowed
        assert decision.reason == REASON_GRANTED

    @pytest.mark.asyncio
    async def test_inherited_permissions_granted(self, service, grant):
        await grant("lead", "team_lead")
        for permission in SYSTEM_ROLES["developer"]["permissions"]:
            assert (await service.check_permission("lead", permission)).allowed, permission

    @pytest.mark.asyncio
    async def test_no_assignments_denied(self, service):
        decision = await service.check_permission("nobody", "projects.read")
        assert not decision.allowed
        assert decision.reason == REASON_DENIED

    @pytest.mark.asyncio
    async def test_expired_assignment_excluded(self, service, grant):
        await grant("u1", "project_manager", expires_at=utcnow() - timedelta(minutes=1))
        assert not (await service.check_permission("u1", "projects.read")).allowed


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("permission", ["not-a-permission", "projects.read.all", "projects.*", "*"])
    async def test_malformed_permission_raises(self, service, cache_store, permission):
        with pytest.raises(ValidationError):
            await service.check_permission(ADMIN, permission)
        assert len(cache_store) == 0
        assert not audit_actions(service, AuditAction.PERMISSION_CHECKED)

    @pytest.mark.asyncio
    async def test_empty_principal_raises(self, service):
        with pytest.raises(ValidationError):
            await service.check_permission("", "projects.read")


class TestRestrictions:

    @pytest.mark.asyncio
    async def test_guest_reads_but_cannot_update(self, service, grant):
        await grant("g1", "guest")
        assert (await service.check_permission("g1", "projects.read")).allowed
        assert not (await service.check_permission("g1", "projects.update")).allowed

    @pytest.mark.asyncio
    async def test_exact_restriction_subtracts_from_wildcard_grant(self, service, grant):
        await add_role(service, "archivist", ["projects.*"], restrictions=["projects.delete"])
        await grant("u1", "archivist")
        assert (await service.check_permission("u1", "projects.archive")).allowed
        assert not (await service.check_permission("u1", "projects.delete")).allowed

    @pytest.mark.asyncio
    async def test_parent_restrictions_apply_to_closure(self, service, grant):
        # developer restricts users.*; team_lead grants users.read exactly
        await grant("lead", "team_lead")
        assert (await service.check_permission("lead", "users.read")).allowed
        assert not (await service.check_permission("lead", "users.update")).allowed

    @pytest.mark.asyncio
    async def test_restrictions_do_not_cross_assignments(self, service, grant):
        await grant("u1", "guest")
        await grant("u1", "project_manager")
        assert (await service.check_permission("u1", "projects.update")).allowed

    @pytest.mark.asyncio
    async def test_advisory_mode_ignores_restrictions(self, grant, store):
        service = RBACService(store, InMemoryCacheStore(), restriction_mode="advisory")
        await service.start()
        await grant(ADMIN, "super_admin")
        try:
            await add_role(service, "archivist", ["projects.*"], restrictions=["projects.delete"])
            await grant("u1", "archivist")
            assert (await service.check_permission("u1", "projects.delete")).allowed
        finally:
            await service.shutdown()

    def test_unknown_restriction_mode_rejected(self):
        with pytest.raises(ValidationError):
            PermissionEvaluator(MagicMock(), MagicMock(), MagicMock(), MagicMock(), restriction_mode="strict")


class TestOwnership:

    @pytest.mark.asyncio
    async def test_owner_may_read_and_update(self, service):
        for permission in ("tasks.read", "tasks.update"):
            decision = await service.check_permission("u1", permission, resource_id="t1", resource_owner="u1")
            assert decision.allowed
            assert decision.reason == REASON_OWNER

    @pytest.mark.asyncio
    async def test_owner_may_not_delete(self, service):
        decision = await service.check_permission("u1", "tasks.delete", resource_id="t1", resource_owner="u1")
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_non_owner_denied(self, service):
        decision = await service.check_permission("u1", "tasks.read", resource_id="t1", resource_owner="u2")
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_owner_decision_not_reused_without_owner_context(self, service):
        await service.check_permission("u1", "tasks.update", resource_id="t1", resource_owner="u1")
        decision = await service.check_permission("u1", "tasks.update", resource_id="t1")
        assert not decision.allowed
        assert not decision.cached

    @pytest.mark.asyncio
    async def test_owner_decision_not_served_for_colon_in_resource_id(self, service, grant):
        await grant("g1", "guest")
        owned = await service.check_permission("g1", "projects.update", resource_id="doc1", resource_owner="g1")
        assert owned.reason == REASON_OWNER

        decision = await service.check_permission("g1", "projects.update", resource_id="doc1:owner")
        assert not decision.allowed
        assert not decision.cached


class TestCaching:

    @pytest.mark.asyncio
    async def test_second_check_served_from_cache(self, service, grant):
        await grant("u1", "developer")
        first = await service.check_permission("u1", "tasks.update")
        second = await service.check_permission("u1", "tasks.update")
        assert not first.cached
        assert second.cached
        assert second.allowed == first.allowed
        assert len(audit_actions(service, AuditAction.PERMISSION_CHECKED, "u1")) == 1

    @pytest.mark.asyncio
    async def test_revoke_is_visible_immediately(self, service):
        await service.assign_role(ADMIN, "u1", "designer")
        assert (await service.check_permission("u1", "files.share")).allowed

        await service.revoke_role(ADMIN, "u1", "designer")
        decision = await service.check_permission("u1", "files.share")
        assert not decision.allowed
        assert not decision.cached

    @pytest.mark.asyncio
    async def test_check_in_flight_during_revoke_does_not_recache_grant(self, service, grant, store):
        await grant("u1", "designer")
        original = store.get_role_assignments
        reading = asyncio.Event()
        release = asyncio.Event()

        async def paused(user_id):
            assignments = await original(user_id)
            if user_id == "u1" and not release.is_set():
                reading.set()
                await release.wait()
            return assignments

        store.get_role_assignments = paused
        in_flight = asyncio.create_task(service.check_permission("u1", "files.share"))
        await reading.wait()

        await service.revoke_role(ADMIN, "u1", "designer")
        release.set()
        assert (await in_flight).allowed

        decision = await service.check_permission("u1", "files.share")
        assert not decision.allowed
        assert not decision.cached
        assert await service.get_effective_permissions("u1") == []

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_computation(self, service, grant):
        await grant("u1", "developer")
        broken = MagicMock()
        for name in ("get", "set", "delete", "keys"):
            setattr(broken, name, AsyncMock(side_effect=ConnectionError("redis down")))
        service.cache.store = broken

        decision = await service.check_permission("u1", "tasks.update")
        assert decision.allowed

    def test_ttl_follows_latest_expiring_allowing_assignment(self):
        now = utcnow()
        soon = AssignmentClosure("a", frozenset(), frozenset(), expires_at=now + timedelta(seconds=30))
        later = AssignmentClosure("b", frozenset(), frozenset(), expires_at=now + timedelta(seconds=90))
        forever = AssignmentClosure("c", frozenset(), frozenset())

        assert PermissionEvaluator._ttl_until_expiry([soon, later], now) == 90
        assert PermissionEvaluator._ttl_until_expiry([soon, forever], now) is None

    @pytest.mark.asyncio
    async def test_cached_permission_set_rechecks_expiry(self, service, grant):
        await grant("u1", "developer", expires_at=utcnow() + timedelta(hours=1))
        await service.evaluator.resolve_assignments("u1")

        later = utcnow() + timedelta(hours=2)
        assert await service.evaluator.resolve_assignments("u1", now=later) == []

    @pytest.mark.asyncio
    async def test_cancelled_check_still_caches_decision(self, store, grant):
        class SlowCacheStore(InMemoryCacheStore):
            def __init__(self):
                super().__init__()
                self.writing = asyncio.Event()

            async def set(self, key, value, ttl_seconds):
                if key.startswith("permission:"):
                    self.writing.set()
                    await asyncio.sleep(0.05)
                await super().set(key, value, ttl_seconds)

        slow = SlowCacheStore()
        service = RBACService(store, slow)
        await service.start()
        await grant("u1", "developer")
        try:
            task = asyncio.create_task(service.check_permission("u1", "tasks.read"))
            await slow.writing.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            await asyncio.sleep(0.1)
            assert await slow.get(PermissionCache.check_key("u1", "tasks.read")) is not None
            assert not audit_actions(service, AuditAction.PERMISSION_CHECKED, "u1")
        finally:
            await service.shutdown()


class TestFailClosed:

    @pytest.mark.asyncio
    async def test_store_error_denies(self, service, grant, store):
        await grant("u1", "developer")
        store.get_role_assignments = AsyncMock(side_effect=RuntimeError("db down"))

        decision = await service.check_permission("u1", "tasks.read")

        assert not decision.allowed
        assert decision.reason == REASON_UNAVAILABLE
        entry = audit_actions(service, AuditAction.PERMISSION_CHECKED, "u1")[-1]
        assert entry.details["reason"] == REASON_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unavailable_decision_not_cached(self, service, grant, store):
        await grant("u1", "developer")
        original = store.get_role_assignments
        store.get_role_assignments = AsyncMock(side_effect=RuntimeError("db down"))
        assert not (await service.check_permission("u1", "tasks.read")).allowed

        store.get_role_assignments = original
        assert (await service.check_permission("u1", "tasks.read")).allowed

    @pytest.mark.asyncio
    async def test_store_timeout_denies(self, store, grant):
        async def hang(user_id):
            await asyncio.sleep(5)

        service = RBACService(store, InMemoryCacheStore(), store_timeout=0.05)
        await service.start()
        await grant("u1", "developer")
        store.get_role_assignments = AsyncMock(side_effect=hang)
        try:
            decision = await service.check_permission("u1", "tasks.read")
            assert decision.reason == REASON_UNAVAILABLE
        finally:
            await service.shutdown()


class TestDanglingRoles:

    @pytest.mark.asyncio
    async def test_missing_role_contributes_nothing(self, service, grant):
        await add_role(service, "temp_role", ["reports.view"])
        await grant("u1", "temp_role")
        await grant("u1", "guest")
        service.registry.unregister("temp_role")

        assert not (await service.check_permission("u1", "reports.view")).allowed
        assert (await service.check_permission("u1", "projects.read")).allowed

        warnings = audit_actions(service, AuditAction.ROLE_REFERENCE_MISSING, "u1")
        assert warnings and warnings[0].details["role_id"] == "temp_role"


class TestAuditing:

    @pytest.mark.asyncio
    async def test_check_is_audited(self, service, grant):
        await grant("u1", "developer")
        await service.check_permission("u1", "tasks.read", resource_id="t7")

        entry = audit_actions(service, AuditAction.PERMISSION_CHECKED, "u1")[-1]
        assert entry.details == {
            "permission": "tasks.read",
            "resource_id": "t7",
            "result": True,
            "reason": REASON_GRANTED,
        }
        assert entry.context == {}

    @pytest.mark.asyncio
    async def test_sensitive_checks_flagged(self, service):
        await service.check_permission("u1", "projects.delete")
        entry = audit_actions(service, AuditAction.PERMISSION_CHECKED, "u1")[-1]
        assert entry.context == {"sensitive": True}


class TestIntrospection:

    @pytest.mark.asyncio
    async def test_effective_permissions(self, service, grant):
        await grant("lead", "team_lead")
        effective = await service.get_effective_permissions("lead")
        assert [e["role_id"] for e in effective] == ["team_lead"]
        assert "tasks.track_time" in effective[0]["grants"]
        assert "users.*" in effective[0]["restrictions"]

    @pytest.mark.asyncio
    async def test_has_role_is_direct_only(self, service, grant):
        await grant("lead", "team_lead")
        assert await service.has_role("lead", "team_lead")
        assert not await service.has_role("lead", "developer")

    def test_closure_round_trip(self):
        closure = AssignmentClosure(
            "guest",
            frozenset({parse_pattern("projects.read")}),
            frozenset({parse_pattern("*")}),
            expires_at=utcnow(),
        )
        assert AssignmentClosure.from_dict(closure.to_dict()) == closure
