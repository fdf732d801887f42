"""Tests for security/rbac.py -- deny-by-default permission checks.

Covers:
- pure decision helpers: evaluate_conditions (strict equality) and find_grant
- role -> permission resolution, including inheritance and cycles
- each deny path independently: no role, no permission, failing condition
- permission_check events for grants and denials
- assign/unassign idempotence
"""

from unittest.mock import MagicMock

import pytest

from core.errors import StoreUnavailable
from security.models import Permission, Role
from security.rbac import evaluate_conditions, find_grant


@pytest.fixture
def seeded(rbac):
    """Permissions and roles shared by most tests.

    viewer    -> project:read
    developer -> project:write (projectId "123" only), inherits viewer
    admin     -> project:delete, inherits developer
    """
    rbac.create_permission(Permission(id="p-read", resource="project", action="read", name="Read projects"))
    rbac.create_permission(
        Permission(id="p-write-123", resource="project", action="write", conditions={"projectId": "123"})
    )
    rbac.create_permission(Permission(id="p-delete", resource="project", action="delete"))
    rbac.create_role(Role(id="viewer", name="Viewer", permissions=["p-read"]))
    rbac.create_role(Role(id="developer", name="Developer", permissions=["p-write-123"], inherit_from=["viewer"]))
    rbac.create_role(Role(id="admin", name="Admin", permissions=["p-delete"], inherit_from=["developer"]))
    return rbac


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestEvaluateConditions:
    def test_no_conditions_always_pass(self):
        assert evaluate_conditions(None, None) is True
        assert evaluate_conditions({}, {"x": 1}) is True

    def test_exact_match(self):
        assert evaluate_conditions({"projectId": "123"}, {"projectId": "123", "extra": 1}) is True

    @pytest.mark.parametrize("context", [{"projectId": "456"}, {"projectId": 123}, {}, None])
    def test_mismatch_missing_or_other_type_denies(self, context):
        assert evaluate_conditions({"projectId": "123"}, context) is False

    def test_bool_is_not_int(self):
        assert evaluate_conditions({"level": 1}, {"level": True}) is False
        assert evaluate_conditions({"level": 1}, {"level": 1}) is True

    def test_all_conditions_must_hold(self):
        conditions = {"projectId": "123", "env": "prod"}
        assert evaluate_conditions(conditions, {"projectId": "123"}) is False
        assert evaluate_conditions(conditions, {"projectId": "123", "env": "prod"}) is True


class TestFindGrant:
    def test_first_matching_permission_wins(self):
        perms = [
            Permission(id="a", resource="doc", action="read", conditions={"owner": "u1"}),
            Permission(id="b", resource="doc", action="read"),
        ]
        assert find_grant(perms, "doc", "read", {"owner": "u2"}).id == "b"
        assert find_grant(perms, "doc", "read", {"owner": "u1"}).id == "a"

    def test_resource_and_action_must_both_match(self):
        perms = [Permission(id="a", resource="doc", action="read")]
        assert find_grant(perms, "doc", "write") is None
        assert find_grant(perms, "report", "read") is None
        assert find_grant([], "doc", "read") is None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestHasPermission:
    def test_user_without_roles_is_denied(self, seeded):
        assert seeded.has_permission("u1", "project", "read") is False

    def test_direct_permission_granted(self, seeded):
        seeded.assign_role("u1", "viewer")
        assert seeded.has_permission("u1", "project", "read") is True
        assert seeded.has_permission("u1", "project", "delete") is False

    def test_condition_on_project_id(self, seeded):
        seeded.assign_role("u1", "developer")
        assert seeded.has_permission("u1", "project", "write", {"projectId": "123"}) is True
        assert seeded.has_permission("u1", "project", "write", {"projectId": "456"}) is False
        assert seeded.has_permission("u1", "project", "write", {}) is False
        assert seeded.has_permission("u1", "project", "write") is False

    def test_inherited_permissions(self, seeded):
        seeded.assign_role("u1", "admin")
        assert seeded.has_permission("u1", "project", "delete") is True
        assert seeded.has_permission("u1", "project", "read") is True
        assert seeded.has_permission("u1", "project", "write", {"projectId": "123"}) is True

    def test_inheritance_cycle_terminates(self, rbac):
        rbac.create_permission(Permission(id="p", resource="r", action="a"))
        rbac.create_role(Role(id="x", name="X", inherit_from=["y"]))
        rbac.create_role(Role(id="y", name="Y", permissions=["p"], inherit_from=["x"]))
        rbac.assign_role("u1", "x")
        assert rbac.has_permission("u1", "r", "a") is True
        assert rbac.has_permission("u1", "r", "b") is False

    def test_dangling_references_never_grant(self, rbac):
        rbac.create_role(Role(id="ghostly", name="Ghostly", permissions=["missing"], inherit_from=["nope"]))
        rbac.assign_role("u1", "ghostly")
        rbac.assign_role("u1", "undefined-role")
        assert rbac.has_permission("u1", "anything", "read") is False

    def test_effective_permissions_deduplicated(self, seeded):
        seeded.assign_role("u1", "admin")
        seeded.assign_role("u1", "viewer")
        ids = sorted(p.id for p in seeded.effective_permissions("u1"))
        assert ids == ["p-delete", "p-read", "p-write-123"]

    def test_store_error_denies(self, seeded, store):
        seeded.assign_role("u1", "viewer")
        store.smembers = MagicMock(side_effect=StoreUnavailable("smembers"))
        assert seeded.has_permission("u1", "project", "read") is False

    def test_store_error_is_still_recorded(self, seeded, store, events):
        seeded.assign_role("u1", "viewer")
        before = events.count()
        store.smembers = MagicMock(side_effect=StoreUnavailable("smembers"))
        assert seeded.has_permission("u1", "project", "read") is False
        assert events.count() == before + 1
        event = events.recent(1)[0]
        assert event.type == "permission_check"
        assert event.details == {
            "resource": "project",
            "action": "read",
            "granted": False,
            "error": "StoreUnavailable",
        }

    def test_corrupt_permission_denies(self, seeded, store, events):
        seeded.assign_role("u1", "viewer")
        store.set("permission:p-read", "{not json")
        assert seeded.has_permission("u1", "project", "read") is False
        assert events.recent(1)[0].details["error"] == "MalformedStoredData"


class TestEvents:
    def test_grant_event(self, seeded, events):
        seeded.assign_role("u1", "viewer")
        seeded.has_permission("u1", "project", "read", {"ipAddress": "10.0.0.5", "userAgent": "curl/8"})
        event = events.recent(1)[0]
        assert event.type == "permission_check"
        assert event.severity == "low"
        assert event.details == {"resource": "project", "action": "read", "granted": True, "permission": "p-read"}
        assert event.ip_address == "10.0.0.5"
        assert event.user_agent == "curl/8"

    def test_denial_event(self, seeded, events):
        seeded.has_permission("u1", "project", "read")
        event = events.recent(1)[0]
        assert event.severity == "medium"
        assert event.details["granted"] is False
        assert event.ip_address == "internal"

    def test_every_check_is_recorded(self, seeded, events):
        before = events.count()
        for _ in range(3):
            seeded.has_permission("u1", "project", "read")
        assert events.count() == before + 3


class TestAdministration:
    def test_assign_is_idempotent(self, seeded, events):
        assert seeded.assign_role("u1", "viewer") is True
        assert seeded.assign_role("u1", "viewer") is False
        assert seeded.get_user_roles("u1") == ["viewer"]
        assert events.recent(1)[0].details == {"action": "role_assigned", "role_id": "viewer", "newly_assigned": False}

    def test_unassign(self, seeded):
        seeded.assign_role("u1", "viewer")
        assert seeded.unassign_role("u1", "viewer") is True
        assert seeded.unassign_role("u1", "viewer") is False
        assert seeded.has_permission("u1", "project", "read") is False

    def test_create_role_overwrites(self, seeded):
        seeded.create_role(Role(id="viewer", name="Viewer v2", permissions=[]))
        seeded.assign_role("u1", "viewer")
        assert seeded.get_role("viewer").name == "Viewer v2"
        assert seeded.has_permission("u1", "project", "read") is False

    def test_get_permission_roundtrip(self, seeded):
        permission = seeded.get_permission("p-write-123")
        assert permission.conditions == {"projectId": "123"}
        assert seeded.get_permission("missing") is None

    def test_list_roles(self, seeded):
        assert [r.id for r in seeded.list_roles()] == ["admin", "developer", "viewer"]
