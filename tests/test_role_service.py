"""
Tests for role assignment and revocation.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from rbac_core.core.exceptions import AuthorizationError, DependencyError, NotFoundError, ValidationError
from rbac_core.core.types import AuditAction, utcnow

from tests.conftest import ADMIN


def mutations(service, action):
    return [e for e in service.audit.entries() if e.action == action]


def active_assignments(store, user_id, role_id):
    return [
        a for a in store.all_assignments()
        if a.user_id == user_id and a.role_id == role_id and a.is_active()
    ]


class TestAssign:

    @pytest.mark.asyncio
    async def test_assign_creates_assignment(self, service, store):
        assignment = await service.assign_role(ADMIN, "u1", "developer")

        assert assignment.user_id == "u1"
        assert assignment.assigned_by == ADMIN
        assert active_assignments(store, "u1", "developer") == [assignment]

        entry = mutations(service, AuditAction.ROLE_ASSIGNED)[-1]
        assert entry.user_id == "u1"
        assert entry.details["role_id"] == "developer"
        assert entry.details["cache_invalidated"] is True
        assert entry.details["renewed"] is False

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, service, store):
        first_expiry = utcnow() + timedelta(days=1)
        second_expiry = utcnow() + timedelta(days=7)

        first = await service.assign_role(ADMIN, "u1", "developer", expires_at=first_expiry)
        second = await service.assign_role(ADMIN, "u1", "developer", expires_at=second_expiry)

        active = active_assignments(store, "u1", "developer")
        assert len(active) == 1
        assert active[0].id == first.id == second.id
        assert active[0].expires_at == second_expiry
        assert mutations(service, AuditAction.ROLE_ASSIGNED)[-1].details["renewed"] is True

    @pytest.mark.asyncio
    async def test_concurrent_assigns_leave_one_active_assignment(self, service, store):
        original = store.get_role_assignment

        async def slow_read(user_id, role_id):
            await asyncio.sleep(0.01)
            return await original(user_id, role_id)

        store.get_role_assignment = slow_read
        first, second = await asyncio.gather(
            service.assign_role(ADMIN, "u1", "developer"),
            service.assign_role(ADMIN, "u1", "developer"),
        )

        assert len(active_assignments(store, "u1", "developer")) == 1
        assert first.id == second.id
        assert service.assignments._locks == {}

    @pytest.mark.asyncio
    async def test_caller_without_manage_roles_rejected(self, service, store, grant):
        await grant("dev", "developer")

        with pytest.raises(AuthorizationError) as exc:
            await service.assign_role("dev", "u1", "super_admin")

        assert exc.value.message == "insufficient permissions"
        assert not active_assignments(store, "u1", "super_admin")
        assert not mutations(service, AuditAction.ROLE_ASSIGNED)

    @pytest.mark.asyncio
    async def test_unknown_role(self, service):
        with pytest.raises(NotFoundError):
            await service.assign_role(ADMIN, "u1", "astronaut")

    @pytest.mark.asyncio
    async def test_past_expiry_rejected(self, service):
        with pytest.raises(ValidationError, match="future"):
            await service.assign_role(ADMIN, "u1", "developer", expires_at=utcnow() - timedelta(seconds=1))

    @pytest.mark.asyncio
    async def test_assign_grants_immediately(self, service):
        assert not (await service.check_permission("u1", "tasks.track_time")).allowed
        await service.assign_role(ADMIN, "u1", "developer")
        assert (await service.check_permission("u1", "tasks.track_time")).allowed

    @pytest.mark.asyncio
    async def test_store_write_failure_has_no_side_effects(self, service, store):
        store.put_role_assignment = AsyncMock(side_effect=RuntimeError("db down"))
        service.cache.invalidate_user = AsyncMock()

        with pytest.raises(DependencyError):
            await service.assign_role(ADMIN, "u1", "developer")

        service.cache.invalidate_user.assert_not_awaited()
        assert not mutations(service, AuditAction.ROLE_ASSIGNED)
        assert not active_assignments(store, "u1", "developer")

    @pytest.mark.asyncio
    async def test_invalidation_failure_reported_after_write(self, service, store):
        service.cache.invalidate_user = AsyncMock(
            side_effect=DependencyError("redis down", dependency="cache")
        )

        with pytest.raises(DependencyError, match="cache invalidation failed"):
            await service.assign_role(ADMIN, "u1", "developer")

        assert active_assignments(store, "u1", "developer")
        entry = mutations(service, AuditAction.ROLE_ASSIGNED)[-1]
        assert entry.details["cache_invalidated"] is False


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_marks_assignment_revoked(self, service, store):
        await service.assign_role(ADMIN, "u1", "designer")
        revoked = await service.revoke_role(ADMIN, "u1", "designer", reason="left project")

        assert revoked.revoked_at is not None
        assert not active_assignments(store, "u1", "designer")
        assert not await service.has_role("u1", "designer")

        entry = mutations(service, AuditAction.ROLE_REVOKED)[-1]
        assert entry.details["reason"] == "left project"
        assert entry.details["revoked_by"] == ADMIN

    @pytest.mark.asyncio
    async def test_revoke_denies_cached_permission(self, service):
        await service.assign_role(ADMIN, "u1", "client")
        assert (await service.check_permission("u1", "billing.view")).allowed
        assert (await service.check_permission("u1", "billing.view")).cached

        await service.revoke_role(ADMIN, "u1", "client")
        assert not (await service.check_permission("u1", "billing.view")).allowed

    @pytest.mark.asyncio
    async def test_revoke_unheld_role(self, service):
        with pytest.raises(NotFoundError):
            await service.revoke_role(ADMIN, "u1", "designer")

    @pytest.mark.asyncio
    async def test_caller_without_manage_roles_rejected(self, service, store, grant):
        await grant("u1", "designer")
        with pytest.raises(AuthorizationError):
            await service.revoke_role("u1", "u1", "designer")
        assert active_assignments(store, "u1", "designer")

    @pytest.mark.asyncio
    async def test_store_failure_has_no_side_effects(self, service, store, grant):
        await grant("u1", "designer")
        store.delete_role_assignment = AsyncMock(side_effect=RuntimeError("db down"))
        service.cache.invalidate_user = AsyncMock()

        with pytest.raises(DependencyError):
            await service.revoke_role(ADMIN, "u1", "designer")

        service.cache.invalidate_user.assert_not_awaited()
        assert not mutations(service, AuditAction.ROLE_REVOKED)

    @pytest.mark.asyncio
    async def test_reassign_after_revoke_creates_new_assignment(self, service, store):
        first = await service.assign_role(ADMIN, "u1", "designer")
        await service.revoke_role(ADMIN, "u1", "designer")
        second = await service.assign_role(ADMIN, "u1", "designer")

        assert second.id != first.id
        assert active_assignments(store, "u1", "designer") == [second]
