"""
Tests for the permission grammar and catalog.
"""
import pytest

from rbac_core.core.exceptions import ValidationError
from rbac_core.core.permissions import (
    GLOBAL,
    PatternKind,
    PermissionCatalog,
    best_match,
    parse_pattern,
    parse_permission,
)


class TestParsePermission:

    def test_splits_category_and_action(self):
        assert parse_permission("projects.create") == ("projects", "create")
        assert parse_permission("tasks.track_time") == ("tasks", "track_time")

    @pytest.mark.parametrize("value", [
        "not-a-permission",
        "projects.create.extra",
        "",
        ".read",
        "projects.",
        "projects.*",
        "*",
        "projects. read",
    ])
    def test_malformed_identifiers_rejected(self, value):
        with pytest.raises(ValidationError) as exc:
            parse_permission(value)
        assert exc.value.details["value"] == value

    def test_identifiers_are_case_sensitive(self):
        assert parse_permission("Projects.Read") == ("Projects", "Read")


class TestParsePattern:

    def test_global(self):
        pattern = parse_pattern("*")
        assert pattern is GLOBAL
        assert pattern.kind is PatternKind.GLOBAL
        assert pattern.matches("anything", "at_all")

    def test_category_wildcard(self):
        pattern = parse_pattern("projects.*")
        assert pattern.kind is PatternKind.CATEGORY
        assert pattern.matches("projects", "create")
        assert not pattern.matches("tasks", "create")
        assert str(pattern) == "projects.*"

    def test_exact(self):
        pattern = parse_pattern("projects.read")
        assert pattern.kind is PatternKind.EXACT
        assert pattern.matches("projects", "read")
        assert not pattern.matches("projects", "update")
        assert not pattern.matches("Projects", "read")

    def test_malformed_wildcard(self):
        with pytest.raises(ValidationError):
            parse_pattern("proj ects.*")
        with pytest.raises(ValidationError):
            parse_pattern("a.b.*")

    def test_best_match_prefers_most_specific(self):
        patterns = [parse_pattern("*"), parse_pattern("projects.*"), parse_pattern("projects.read")]
        assert best_match(patterns, "projects", "read") == PatternKind.EXACT
        assert best_match(patterns, "projects", "delete") == PatternKind.CATEGORY
        assert best_match(patterns, "billing", "view") == PatternKind.GLOBAL
        assert best_match([parse_pattern("tasks.read")], "projects", "read") == 0


class TestPermissionCatalog:

    def test_default_categories(self, catalog):
        assert set(catalog.categories()) == {
            "projects", "tasks", "users", "teams", "files",
            "comments", "reports", "billing", "admin",
        }
        assert catalog.categories()["billing"] == "Billing & Invoicing"

    def test_list_by_category(self, catalog):
        ids = [p.id for p in catalog.list("billing")]
        assert ids == ["billing.create_invoices", "billing.export", "billing.manage", "billing.view"]

    def test_definition_describes_permission(self, catalog):
        definition = catalog.get("users.manage_roles")
        assert definition.category == "users"
        assert definition.description == "Assign and modify user roles"

    def test_validate_pattern_accepts_catalogued(self, catalog):
        assert catalog.validate_pattern("*") is GLOBAL
        assert catalog.validate_pattern("admin.*").category == "admin"
        assert catalog.validate_pattern("admin.audit_logs").action == "audit_logs"

    def test_validate_pattern_rejects_unknown(self, catalog):
        with pytest.raises(ValidationError, match="Unknown permission category"):
            catalog.validate_pattern("rockets.*")
        with pytest.raises(ValidationError, match="Unknown permission 'projects.launch'"):
            catalog.validate_pattern("projects.launch")

    def test_register_custom_permission(self, catalog):
        catalog.register("projects.launch", "Launch a project")
        assert "projects.launch" in catalog
        assert catalog.get("projects.launch").category_name == "Project Management"

        with pytest.raises(ValidationError, match="already registered"):
            catalog.register("projects.launch", "Again")
