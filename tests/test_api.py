"""HTTP tests for the /v1 API and the error envelope."""

import pytest
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD
from findclass import app as app_module
from findclass.service.runtime import get_runtime
from findclass.storage.models import UserRole, VerificationPurpose

NEW_PASSWORD = "N3w&Passw0rd!x"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _latest_code(email, purpose):
    codes = [
        c
        for c in get_runtime().store.codes.values()
        if c.email == email and c.purpose is purpose
    ]
    assert codes, f"no {purpose.value} code for {email}"
    return max(codes, key=lambda c: c.created_at).code


def _register(client, email="alice@example.com", **extra):
    body = {"email": email, "password": STRONG_PASSWORD, "name": "Alice", **extra}
    response = client.post("/v1/auth/register", json=body)
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    return {
        "user_id": data["user"]["id"],
        "refresh_token": data["refresh_token"],
        "headers": {"Authorization": f"Bearer {data['access_token']}"},
    }


@pytest.fixture
def admin(client):
    """An ADMIN account created out of band, logged in over HTTP."""
    get_runtime().credentials.register(
        "admin@example.com", STRONG_PASSWORD, "Ada", UserRole.ADMIN
    )
    response = client.post(
        "/v1/auth/login", json={"email": "admin@example.com", "password": STRONG_PASSWORD}
    )
    assert response.status_code == 200, response.text
    token = response.json()["data"]["access_token"]
    return {"headers": {"Authorization": f"Bearer {token}"}}


class TestRegistration:
    def test_register_returns_tokens_and_user(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": " Alice@Example.com ", "password": STRONG_PASSWORD, "name": "Alice"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "alice@example.com"
        assert body["data"]["user"]["role"] == "STUDENT"
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["access_token"] != body["data"]["refresh_token"]

    def test_register_sends_a_register_code(self, client):
        _register(client)
        assert len(_latest_code("alice@example.com", VerificationPurpose.REGISTER)) == 6

    def test_duplicate_email_is_409(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/register",
            json={"email": "ALICE@example.com", "password": STRONG_PASSWORD, "name": "Other"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "duplicate_email"
        assert body["request_id"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"password": "short"},
            {"password": "alllowercase123!"},
            {"role": "ADMIN"},
            {"role": "TEACHER"},
            {"email": "not-an-email"},
            {"name": ""},
        ],
    )
    def test_invalid_registration_is_400(self, client, overrides):
        body = {"email": "alice@example.com", "password": STRONG_PASSWORD, "name": "Alice"}
        body.update(overrides)
        response = client.post("/v1/auth/register", json=body)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert isinstance(error["details"], list)


class TestLoginAndTokens:
    def test_login_wrong_password(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "Wr0ng&Password"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_unknown_email_looks_the_same(self, client):
        response = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": STRONG_PASSWORD}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_protected_route_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    def test_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_refresh_rotates_once(self, client):
        alice = _register(client)

        first = client.post("/v1/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert first.status_code == 200
        new_access = first.json()["data"]["access_token"]
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {new_access}"})
        assert me.status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_logout_revokes_current_session(self, client):
        alice = _register(client)

        assert client.post("/v1/auth/logout", headers=alice["headers"]).status_code == 200
        assert client.get("/v1/auth/me", headers=alice["headers"]).status_code == 401

    def test_list_sessions_and_logout_all(self, client):
        alice = _register(client)
        client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD}
        )

        listed = client.get("/v1/auth/sessions", headers=alice["headers"])
        items = listed.json()["data"]["items"]
        assert len(items) == 2
        assert sum(1 for item in items if item["current"]) == 1

        revoked = client.post("/v1/auth/logout-all", headers=alice["headers"])
        assert revoked.json()["data"]["revoked"] == 2
        assert client.get("/v1/auth/me", headers=alice["headers"]).status_code == 401


class TestVerificationCodes:
    def test_verify_register_code_once(self, client):
        _register(client)
        code = _latest_code("alice@example.com", VerificationPurpose.REGISTER)
        body = {"email": "alice@example.com", "code": code, "purpose": "REGISTER"}

        first = client.post("/v1/auth/verify-code", json=body)
        assert first.status_code == 200
        assert first.json()["data"]["verified"] is True

        second = client.post("/v1/auth/verify-code", json=body)
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "invalid_code"

    def test_send_code_rate_limit(self, client):
        body = {"email": "bob@example.com", "purpose": "LOGIN"}
        for _ in range(3):
            response = client.post("/v1/auth/send-verification-code", json=body)
            assert response.status_code == 200
            assert response.json()["data"]["expires_in"] == 300

        limited = client.post("/v1/auth/send-verification-code", json=body)
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) >= 1

    def test_malformed_code_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/verify-code", json={"email": "alice@example.com", "code": "12ab56"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestPasswordReset:
    def test_reset_flow(self, client):
        alice = _register(client)

        requested = client.post(
            "/v1/auth/password/reset-request", json={"email": "alice@example.com"}
        )
        assert requested.status_code == 200
        code = _latest_code("alice@example.com", VerificationPurpose.PASSWORD_RESET)

        reset = client.post(
            "/v1/auth/password/reset",
            json={"email": "alice@example.com", "code": code, "new_password": NEW_PASSWORD},
        )
        assert reset.status_code == 200

        # every session is revoked by the reset
        assert client.get("/v1/auth/me", headers=alice["headers"]).status_code == 401
        old = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD}
        )
        assert old.status_code == 401
        new = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": NEW_PASSWORD}
        )
        assert new.status_code == 200

    def test_reset_request_for_unknown_email_still_succeeds(self, client):
        response = client.post(
            "/v1/auth/password/reset-request", json={"email": "ghost@example.com"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "sent"
        assert not [c for c in get_runtime().store.codes.values() if c.email == "ghost@example.com"]

    def test_reset_with_wrong_code(self, client):
        _register(client)
        client.post("/v1/auth/password/reset-request", json={"email": "alice@example.com"})
        code = _latest_code("alice@example.com", VerificationPurpose.PASSWORD_RESET)
        wrong = "000000" if code != "000000" else "111111"

        response = client.post(
            "/v1/auth/password/reset",
            json={"email": "alice@example.com", "code": wrong, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_code"


class TestProfile:
    def test_update_profile(self, client):
        alice = _register(client, phone="+64211234567")

        response = client.put(
            "/v1/auth/me",
            json={"name": "Alice Smith", "language": "en", "phone": ""},
            headers=alice["headers"],
        )
        assert response.status_code == 200
        user = response.json()["data"]
        assert user["name"] == "Alice Smith"
        assert user["language"] == "en"
        assert user["phone"] is None


class TestRoleApplications:
    def test_alice_becomes_a_teacher(self, client, admin):
        alice = _register(client)

        applied = client.post(
            "/v1/auth/roles/apply",
            json={"role": "TEACHER", "reason": "10 years experience"},
            headers=alice["headers"],
        )
        assert applied.status_code == 201
        application_id = applied.json()["data"]["id"]
        assert applied.json()["data"]["status"] == "PENDING"

        duplicate = client.post(
            "/v1/auth/roles/apply", json={"role": "INSTITUTION"}, headers=alice["headers"]
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "duplicate_pending_application"

        pending = client.get("/v1/auth/roles/applications/pending", headers=admin["headers"])
        assert [a["id"] for a in pending.json()["data"]["items"]] == [application_id]

        approved = client.post(
            f"/v1/auth/roles/applications/{application_id}/approve",
            json={"decision": "APPROVED", "comment": "Welcome aboard"},
            headers=admin["headers"],
        )
        assert approved.status_code == 200
        assert approved.json()["data"]["status"] == "APPROVED"

        # the existing access token now carries the new role
        roles = client.get("/v1/auth/roles", headers=alice["headers"]).json()["data"]
        assert roles["current_role"] == "TEACHER"
        assert roles["pending_application"] is None
        assert any(r["application_id"] == application_id for r in roles["roles"])

        history = client.get(
            f"/v1/auth/roles/applications/{application_id}/history", headers=alice["headers"]
        ).json()["data"]["items"]
        assert [h["to_status"] for h in history] == ["PENDING", "APPROVED"]

        again = client.post(
            f"/v1/auth/roles/applications/{application_id}/approve",
            json={"decision": "REJECTED"},
            headers=admin["headers"],
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "invalid_transition"

    def test_cancel_and_reapply(self, client):
        alice = _register(client)
        applied = client.post(
            "/v1/auth/roles/apply", json={"role": "TEACHER"}, headers=alice["headers"]
        )
        application_id = applied.json()["data"]["id"]

        cancelled = client.delete(
            f"/v1/auth/roles/applications/{application_id}", headers=alice["headers"]
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "CANCELLED"

        again = client.post(
            "/v1/auth/roles/apply", json={"role": "TEACHER"}, headers=alice["headers"]
        )
        assert again.status_code == 201
        mine = client.get("/v1/auth/roles/applications/my", headers=alice["headers"])
        assert len(mine.json()["data"]["items"]) == 2

    def test_pending_list_takes_a_limit(self, client, admin):
        for email in ("alice@example.com", "bob@example.com"):
            user = _register(client, email=email)
            client.post("/v1/auth/roles/apply", json={"role": "TEACHER"}, headers=user["headers"])

        url = "/v1/auth/roles/applications/pending"
        assert len(client.get(url, headers=admin["headers"]).json()["data"]["items"]) == 2
        limited = client.get(url, params={"limit": 1}, headers=admin["headers"])
        assert len(limited.json()["data"]["items"]) == 1
        rejected = client.get(url, params={"limit": 0}, headers=admin["headers"])
        assert rejected.status_code == 400
        assert rejected.json()["error"]["code"] == "validation_error"

    def test_admin_role_cannot_be_applied_for(self, client):
        alice = _register(client)
        response = client.post(
            "/v1/auth/roles/apply", json={"role": "ADMIN"}, headers=alice["headers"]
        )
        assert response.status_code == 400

    def test_other_users_cannot_read_an_application(self, client):
        alice = _register(client)
        bob = _register(client, email="bob@example.com")
        application_id = client.post(
            "/v1/auth/roles/apply", json={"role": "TEACHER"}, headers=alice["headers"]
        ).json()["data"]["id"]

        response = client.get(
            f"/v1/auth/roles/applications/{application_id}", headers=bob["headers"]
        )
        assert response.status_code == 403

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/v1/auth/roles/applications/pending"),
            ("post", "/v1/auth/roles/applications/some-id/approve"),
            ("post", "/v1/admin/users/some-id/status"),
        ],
    )
    def test_students_are_forbidden_from_admin_routes(self, client, method, path):
        alice = _register(client)
        payload = {"decision": "APPROVED"} if "approve" in path else {"status": "DISABLED"}
        kwargs = {"headers": alice["headers"]}
        if method == "post":
            kwargs["json"] = payload
        response = getattr(client, method)(path, **kwargs)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestAdminUserStatus:
    def test_disabling_a_user_revokes_sessions(self, client, admin):
        alice = _register(client)

        response = client.post(
            f"/v1/admin/users/{alice['user_id']}/status",
            json={"status": "DISABLED"},
            headers=admin["headers"],
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "DISABLED"

        assert client.get("/v1/auth/me", headers=alice["headers"]).status_code == 401
        login = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": STRONG_PASSWORD}
        )
        assert login.status_code == 403
        assert login.json()["error"]["code"] == "account_disabled"

    def test_unknown_user(self, client, admin):
        response = client.post(
            "/v1/admin/users/missing/status", json={"status": "DISABLED"}, headers=admin["headers"]
        )
        assert response.status_code == 404


class TestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["storage"]["backend"] == "memory"

    def test_healthz_reports_storage_outage(self, client, monkeypatch):
        def broken_ping():
            raise ConnectionError("down")

        monkeypatch.setattr(get_runtime().store, "ping", broken_ping)
        response = client.get("/healthz")
        assert response.status_code == 503
        assert response.json()["checks"]["storage"]["status"] == "unhealthy"

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/v1/auth/login",
            json={"email": "ghost@example.com", "password": STRONG_PASSWORD},
            headers={"X-Request-ID": "req-12345"},
        )
        assert response.headers["X-Request-ID"] == "req-12345"
        assert response.json()["request_id"] == "req-12345"

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/v1/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_wrong_method_uses_error_envelope(self, client):
        response = client.delete("/v1/auth/login")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
