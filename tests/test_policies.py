"""Tests for role, ownership, permission, 2FA, and API key policies."""

import pytest

from taskgate.service import policies
from taskgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from taskgate.service.gate import AuthContext
from taskgate.storage.models import Role, Task, User


def _identity(role="user", user_id="u1", two_factor=False) -> AuthContext:
    user = User(
        id=user_id,
        email=f"{user_id}@example.com",
        first_name="Test",
        last_name="User",
        role=role,
        two_factor_enabled=two_factor,
    )
    return AuthContext(
        user_id=user_id, email=user.email, role=role, token="t", issued_at=0, user=user
    )


class TestRequireRole:
    def test_allowed_role_passes(self):
        identity = _identity("manager")
        assert policies.require_role(identity, "admin", "manager") is identity

    def test_enum_roles_accepted(self):
        identity = _identity("admin")
        assert policies.require_role(identity, Role.ADMIN) is identity

    def test_other_role_forbidden(self):
        with pytest.raises(ForbiddenError) as exc_info:
            policies.require_role(_identity("user"), *policies.MANAGER_OR_ADMIN)
        assert exc_info.value.error_code == "INSUFFICIENT_PERMISSIONS"
        assert "admin, manager" in exc_info.value.message

    def test_missing_identity(self):
        with pytest.raises(AuthenticationError) as exc_info:
            policies.require_role(None, "admin")
        assert exc_info.value.error_code == "AUTHENTICATION_REQUIRED"


class TestOwnerOrAdmin:
    def test_owner_passes(self):
        policies.require_owner_or_admin(_identity(user_id="u1"), "u1")

    def test_admin_passes_for_anyone(self):
        policies.require_owner_or_admin(_identity("admin", user_id="a1"), "u1")

    def test_other_user_forbidden(self):
        with pytest.raises(ForbiddenError):
            policies.require_owner_or_admin(_identity(user_id="u2"), "u1")

    def test_manager_is_not_owner(self):
        with pytest.raises(ForbiddenError):
            policies.require_owner_or_admin(_identity("manager", user_id="m1"), "u1")


class TestResourceOwnership:
    """Assignee owns the resource when set, otherwise the creator."""

    @pytest.fixture
    def tasks(self):
        return {
            "assigned": Task(id="assigned", title="a", created_by_id="creator", assigned_to_id="assignee"),
            "unassigned": Task(id="unassigned", title="b", created_by_id="creator"),
        }

    def test_assignee_owns(self, tasks):
        task = policies.require_resource_ownership(_identity(user_id="assignee"), "assigned", tasks.get)
        assert task.id == "assigned"

    def test_creator_loses_ownership_to_assignee(self, tasks):
        with pytest.raises(ForbiddenError):
            policies.require_resource_ownership(_identity(user_id="creator"), "assigned", tasks.get)

    def test_creator_owns_unassigned(self, tasks):
        task = policies.require_resource_ownership(_identity(user_id="creator"), "unassigned", tasks.get)
        assert task.id == "unassigned"

    def test_admin_bypasses(self, tasks):
        task = policies.require_resource_ownership(_identity("admin", user_id="root"), "assigned", tasks.get)
        assert task.id == "assigned"

    def test_missing_id(self, tasks):
        with pytest.raises(ValidationError) as exc_info:
            policies.require_resource_ownership(_identity(), "", tasks.get)
        assert exc_info.value.error_code == "MISSING_RESOURCE_ID"

    def test_unknown_resource(self, tasks):
        with pytest.raises(NotFoundError) as exc_info:
            policies.require_resource_ownership(_identity(), "nope", tasks.get)
        assert exc_info.value.error_code == "RESOURCE_NOT_FOUND"

    def test_resolve_owner_id(self, tasks):
        assert policies.resolve_owner_id(tasks["assigned"]) == "assignee"
        assert policies.resolve_owner_id(tasks["unassigned"]) == "creator"


class TestPermissions:
    @pytest.mark.parametrize(
        "role,permission,expected",
        [
            ("admin", "read", True),
            ("admin", "write", True),
            ("admin", "anything", True),
            ("manager", "read", True),
            ("manager", "write", True),
            ("manager", "delete", False),
            ("user", "read", True),
            ("user", "write", False),
            ("guest", "read", False),
        ],
    )
    def test_matrix(self, role, permission, expected):
        assert policies.has_permission(role, permission) is expected

    def test_permissions_for(self):
        assert tuple(policies.permissions_for("admin")) == ("*",)
        assert tuple(policies.permissions_for("manager")) == ("read", "write")
        assert tuple(policies.permissions_for("user")) == ("read",)

    def test_require_permission(self):
        policies.require_permission(_identity("manager"), policies.WRITE)
        with pytest.raises(ForbiddenError):
            policies.require_permission(_identity("user"), policies.WRITE)


class TestTwoFactor:
    def test_not_enabled_passes_without_token(self):
        identity = _identity(two_factor=False)
        assert policies.require_two_factor(identity, None) is identity

    def test_enabled_requires_token(self):
        with pytest.raises(AuthenticationError) as exc_info:
            policies.require_two_factor(_identity(two_factor=True), None)
        assert exc_info.value.error_code == "2FA_REQUIRED"

    def test_short_token_rejected(self):
        with pytest.raises(AuthenticationError) as exc_info:
            policies.require_two_factor(_identity(two_factor=True), "12345")
        assert exc_info.value.error_code == "INVALID_2FA_TOKEN"

    def test_six_characters_accepted(self):
        identity = _identity(two_factor=True)
        assert policies.require_two_factor(identity, "123456") is identity


class TestApiKey:
    def test_matching_key(self):
        policies.require_api_key("secret-key", "secret-key")

    @pytest.mark.parametrize("expected,provided", [("secret-key", "wrong"), ("secret-key", None), (None, "x")])
    def test_rejections(self, expected, provided):
        with pytest.raises(AuthenticationError) as exc_info:
            policies.require_api_key(expected, provided)
        assert exc_info.value.error_code == "INVALID_API_KEY"
