"""
Tests for the role registry: validation, inheritance and versioning.
"""
import pytest

from rbac_core.core.exceptions import NotFoundError, ValidationError
from rbac_core.core.permissions import PatternKind
from rbac_core.core.types import Role
from rbac_core.services.rbac_service import system_roles
from rbac_core.services.role_registry import RoleRegistry


def make_role(role_id, permissions=(), inherits=(), restrictions=(), **kwargs):
    return Role(
        id=role_id,
        name=role_id.title(),
        permissions=frozenset(permissions),
        inherits=tuple(inherits),
        restrictions=frozenset(restrictions),
        **kwargs,
    )


@pytest.fixture
def registry(catalog):
    registry = RoleRegistry(catalog)
    registry.register_many(system_roles())
    return registry


class TestRegistration:

    def test_system_roles_registered(self, registry):
        ids = [r.id for r in registry.list()]
        assert ids[0] == "super_admin"
        assert ids[-1] == "guest"
        assert len(ids) == 7
        assert registry.get("team_lead").is_system_role

    def test_patterns_parsed_at_registration(self, registry):
        developer = registry.get("developer")
        kinds = {p.kind for p in developer.restriction_patterns}
        assert PatternKind.CATEGORY in kinds
        assert any(str(p) == "projects.read" for p in developer.grant_patterns)

    def test_get_unknown_role(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("astronaut")
        assert registry.find("astronaut") is None

    def test_duplicate_id_rejected(self, registry):
        with pytest.raises(ValidationError, match="already registered"):
            registry.register(make_role("developer", ["projects.read"]))

    def test_duplicate_id_in_batch_rejected(self, registry):
        with pytest.raises(ValidationError, match="Duplicate"):
            registry.register_many([make_role("qa"), make_role("qa")])
        assert "qa" not in registry

    def test_unknown_permission_rejected(self, registry):
        with pytest.raises(ValidationError, match="Unknown permission"):
            registry.register(make_role("qa", ["projects.launch"]))
        assert "qa" not in registry

    def test_malformed_permission_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.register(make_role("qa", ["projects"]))

    def test_unknown_parent_rejected(self, registry):
        with pytest.raises(ValidationError, match="inherits unknown role 'astronaut'"):
            registry.register(make_role("qa", ["projects.read"], inherits=["astronaut"]))

    def test_cyclic_inheritance_rejected_atomically(self, registry):
        version = registry.version
        with pytest.raises(ValidationError, match="Cyclic role inheritance"):
            registry.register_many([
                make_role("role_a", ["projects.read"], inherits=["role_b"]),
                make_role("role_b", ["tasks.read"], inherits=["role_a"]),
            ])
        assert "role_a" not in registry
        assert "role_b" not in registry
        assert registry.version == version

    def test_self_inheritance_rejected(self, registry):
        with pytest.raises(ValidationError, match="role_a -> role_a"):
            registry.register(make_role("role_a", inherits=["role_a"]))

    def test_validate_does_not_install(self, registry):
        prepared = registry.validate([make_role("qa", ["tasks.*"])])
        assert prepared[0].grant_patterns
        assert "qa" not in registry


class TestInheritance:

    def test_closure_includes_role_and_parents(self, registry):
        closure = {r.id for r in registry.resolve_inheritance("team_lead")}
        assert closure == {"team_lead", "developer"}

    def test_transitive_closure(self, registry):
        registry.register(make_role("senior_lead", ["reports.create"], inherits=["team_lead"]))
        closure = {r.id for r in registry.resolve_inheritance("senior_lead")}
        assert closure == {"senior_lead", "team_lead", "developer"}

    def test_closure_is_memoized(self, registry):
        first = registry.resolve_inheritance("team_lead")
        assert registry.resolve_inheritance("team_lead") is first

    def test_unknown_role(self, registry):
        with pytest.raises(NotFoundError):
            registry.resolve_inheritance("astronaut")


class TestVersioning:

    def test_replace_bumps_version_and_clears_memo(self, registry):
        registry.register(make_role("qa", ["tasks.read"]))
        registry.register(make_role("qa_lead", ["tasks.update"], inherits=["qa"]))
        before = {r.id for r in registry.resolve_inheritance("qa_lead")}
        fingerprint = registry.fingerprint

        replaced = registry.register(
            make_role("qa_lead", ["tasks.update"], inherits=["qa", "designer"]),
            replace_existing=True,
        )

        assert replaced.version == 2
        assert registry.fingerprint != fingerprint
        assert before == {"qa_lead", "qa"}
        assert {r.id for r in registry.resolve_inheritance("qa_lead")} == {"qa_lead", "qa", "designer"}

    def test_replace_into_cycle_keeps_previous_definition(self, registry):
        registry.register(make_role("qa", ["tasks.read"]))
        registry.register(make_role("qa_lead", ["tasks.update"], inherits=["qa"]))

        with pytest.raises(ValidationError, match="Cyclic"):
            registry.register(make_role("qa", ["tasks.read"], inherits=["qa_lead"]), replace_existing=True)

        assert registry.get("qa").inherits == ()
        assert registry.get("qa").version == 1

    def test_fingerprint_is_content_based(self, catalog):
        one = RoleRegistry(catalog)
        two = RoleRegistry(catalog)
        one.register_many(system_roles())
        two.register_many(list(reversed(system_roles())))
        assert one.fingerprint == two.fingerprint


class TestUnregister:

    def test_unregister_custom_role(self, registry):
        registry.register(make_role("qa", ["tasks.read"]))
        version = registry.version
        registry.unregister("qa")
        assert "qa" not in registry
        assert registry.version == version + 1

    def test_system_role_cannot_be_removed(self, registry):
        with pytest.raises(ValidationError, match="system role"):
            registry.unregister("guest")

    def test_inherited_role_cannot_be_removed(self, registry):
        registry.register(make_role("qa", ["tasks.read"]))
        registry.register(make_role("qa_lead", ["tasks.update"], inherits=["qa"]))
        with pytest.raises(ValidationError, match="inherited by: qa_lead"):
            registry.unregister("qa")

    def test_unknown_role(self, registry):
        with pytest.raises(NotFoundError):
            registry.unregister("astronaut")
