"""Tests for the authorization gate."""

import pytest

from conftest import STRONG_PASSWORD
from findclass.service.errors import ForbiddenError, Unauthenticated
from findclass.service.gate import extract_bearer
from findclass.storage.models import UserRole, UserStatus


@pytest.fixture
def student_token(runtime):
    user = runtime.credentials.register("student@example.com", STRONG_PASSWORD, "Stu")
    return user, runtime.sessions.login(user).access_token


@pytest.fixture
def admin_token(runtime):
    user = runtime.credentials.register("admin@example.com", STRONG_PASSWORD, "Ada", UserRole.ADMIN)
    return user, runtime.sessions.login(user).access_token


class TestAuthenticate:
    def test_resolves_user_role_and_session(self, runtime, student_token):
        user, token = student_token
        ctx = runtime.gate.authenticate(token)
        assert ctx.user_id == user.id
        assert ctx.role is UserRole.STUDENT
        assert not ctx.is_admin

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, runtime, token):
        with pytest.raises(Unauthenticated) as excinfo:
            runtime.gate.authenticate(token)
        assert excinfo.value.status_code == 401

    def test_revoked_session(self, runtime, student_token):
        _, token = student_token
        runtime.sessions.logout(token)
        with pytest.raises(Unauthenticated):
            runtime.gate.authenticate(token)

    def test_disabled_user(self, runtime, student_token):
        """Disabling an account locks out tokens issued before the change."""
        user, token = student_token
        runtime.credentials.set_status(user.id, UserStatus.DISABLED)
        with pytest.raises(Unauthenticated):
            runtime.gate.authenticate(token)

    def test_role_comes_from_the_user_record(self, runtime, student_token, admin_token):
        """A promotion is visible without reissuing the caller's token."""
        user, token = student_token
        admin, _ = admin_token
        application = runtime.roles.apply(user.id, UserRole.TEACHER, "Ten years in classrooms")
        runtime.roles.approve(admin.id, application.id, "APPROVED")

        assert runtime.gate.authenticate(token).role is UserRole.TEACHER


class TestRequireRole:
    def test_allowed(self, runtime, admin_token):
        _, token = admin_token
        ctx = runtime.gate.require_role(token, [UserRole.ADMIN])
        assert ctx.is_admin

    def test_forbidden(self, runtime, student_token):
        _, token = student_token
        with pytest.raises(ForbiddenError) as excinfo:
            runtime.gate.require_role(token, [UserRole.ADMIN])
        assert excinfo.value.status_code == 403
        assert excinfo.value.detail["required"] == ["ADMIN"]

    def test_unauthenticated_before_forbidden(self, runtime):
        with pytest.raises(Unauthenticated):
            runtime.gate.require_role(None, [UserRole.ADMIN])

    def test_accepts_role_values(self, runtime, student_token):
        _, token = student_token
        ctx = runtime.gate.require_role(token, ["STUDENT", "PARENT"])
        assert ctx.role is UserRole.STUDENT


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer token", "token"),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer ", None),
        (None, None),
        ("", None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected
