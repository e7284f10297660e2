"""Unit tests for session and token management."""

import base64
import json

import pytest

from conftest import STRONG_PASSWORD
from findclass.service.errors import InvalidToken, Unauthenticated
from findclass.service.sessions import hash_refresh_token


@pytest.fixture
def alice(runtime):
    return runtime.credentials.register("alice@example.com", STRONG_PASSWORD, "Alice")


def _claims(token):
    payload = token.split(".")[1]
    payload += "=" * ((4 - len(payload) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(payload))


class TestLogin:
    """Tests for login() and the issued token pair."""

    def test_login_creates_session(self, runtime, alice, memory_store):
        tokens = runtime.sessions.login(alice, user_agent="pytest", ip_addr="127.0.0.1")

        session = memory_store.get_session(tokens.session_id)
        assert session.user_id == alice.id
        assert session.user_agent == "pytest"
        assert session.token_hash == hash_refresh_token(tokens.refresh_token)
        assert session.token_hash != tokens.refresh_token

    def test_claims(self, runtime, alice, settings):
        tokens = runtime.sessions.login(alice)
        access = _claims(tokens.access_token)
        refresh = _claims(tokens.refresh_token)

        assert access["sub"] == alice.id
        assert access["sid"] == tokens.session_id
        assert access["token_type"] == "access"
        assert access["iss"] == settings.jwt_issuer
        assert access["aud"] == settings.jwt_audience
        assert refresh["token_type"] == "refresh"
        assert refresh["sid"] == tokens.session_id

    def test_token_lifetimes(self, runtime, alice, clock, settings):
        tokens = runtime.sessions.login(alice)
        assert (tokens.expires_at - clock.now()).total_seconds() == settings.access_token_ttl_minutes * 60
        assert (
            tokens.refresh_expires_at - clock.now()
        ).total_seconds() == settings.refresh_token_ttl_minutes * 60

    def test_to_dict(self, runtime, alice):
        data = runtime.sessions.login(alice).to_dict()
        assert data["token_type"] == "bearer"
        assert set(data) >= {"access_token", "refresh_token", "expires_at"}


class TestVerifyAccessToken:
    """Tests for verify_access_token()."""

    def test_valid_token(self, runtime, alice):
        tokens = runtime.sessions.login(alice)
        payload, session = runtime.sessions.verify_access_token(tokens.access_token)
        assert payload["sub"] == alice.id
        assert session.id == tokens.session_id

    def test_refresh_token_is_not_an_access_token(self, runtime, alice):
        tokens = runtime.sessions.login(alice)
        with pytest.raises(Unauthenticated):
            runtime.sessions.verify_access_token(tokens.refresh_token)

    def test_tampered_signature(self, runtime, alice):
        tokens = runtime.sessions.login(alice)
        header, payload, sig = tokens.access_token.split(".")
        forged = f"{header}.{payload}.{'A' * len(sig)}"
        with pytest.raises(Unauthenticated):
            runtime.sessions.verify_access_token(forged)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_malformed(self, runtime, token):
        with pytest.raises(Unauthenticated):
            runtime.sessions.verify_access_token(token)

    def test_access_token_expires(self, runtime, alice, clock, settings):
        tokens = runtime.sessions.login(alice)
        clock.advance(minutes=settings.access_token_ttl_minutes, seconds=1)
        with pytest.raises(Unauthenticated):
            runtime.sessions.verify_access_token(tokens.access_token)


class TestRefresh:
    """Tests for refresh() rotation."""

    def test_refresh_issues_new_pair(self, runtime, alice, memory_store):
        first = runtime.sessions.login(alice)
        second = runtime.sessions.refresh(first.refresh_token)

        assert second.access_token != first.access_token
        assert second.refresh_token != first.refresh_token
        assert memory_store.get_session(first.session_id) is None
        runtime.sessions.verify_access_token(second.access_token)

    def test_old_access_token_dies_with_rotation(self, runtime, alice):
        first = runtime.sessions.login(alice)
        runtime.sessions.refresh(first.refresh_token)
        with pytest.raises(Unauthenticated):
            runtime.sessions.verify_access_token(first.access_token)

    def test_replayed_refresh_token_is_rejected(self, runtime, alice):
        first = runtime.sessions.login(alice)
        runtime.sessions.refresh(first.refresh_token)

        with pytest.raises(InvalidToken):
            runtime.sessions.refresh(first.refresh_token)

    def test_access_token_cannot_refresh(self, runtime, alice):
        first = runtime.sessions.login(alice)
        with pytest.raises(InvalidToken):
            runtime.sessions.refresh(first.access_token)

    def test_refresh_after_session_expiry(self, runtime, alice, clock, settings):
        first = runtime.sessions.login(alice)
        clock.advance(minutes=settings.refresh_token_ttl_minutes)
        with pytest.raises(InvalidToken):
            runtime.sessions.refresh(first.refresh_token)

    def test_refresh_for_disabled_user(self, runtime, alice):
        from findclass.storage.models import UserStatus

        first = runtime.sessions.login(alice)
        runtime.credentials.set_status(alice.id, UserStatus.DISABLED)
        with pytest.raises(InvalidToken):
            runtime.sessions.refresh(first.refresh_token)

    def test_refresh_keeps_client_metadata(self, runtime, alice, memory_store):
        first = runtime.sessions.login(alice, user_agent="phone", ip_addr="10.0.0.1")
        second = runtime.sessions.refresh(first.refresh_token)
        session = memory_store.get_session(second.session_id)
        assert (session.user_agent, session.ip_addr) == ("phone", "10.0.0.1")


class TestLogout:
    """Tests for logout(), logout_all() and session listing."""

    def test_logout_revokes_access_token(self, runtime, alice):
        tokens = runtime.sessions.login(alice)
        runtime.sessions.logout(tokens.access_token)

        with pytest.raises(Unauthenticated):
            runtime.sessions.verify_access_token(tokens.access_token)
        with pytest.raises(InvalidToken):
            runtime.sessions.refresh(tokens.refresh_token)

    def test_logout_with_refresh_token_is_rejected(self, runtime, alice):
        tokens = runtime.sessions.login(alice)
        with pytest.raises(Unauthenticated):
            runtime.sessions.logout(tokens.refresh_token)

    def test_logout_all(self, runtime, alice):
        a = runtime.sessions.login(alice)
        b = runtime.sessions.login(alice)

        assert runtime.sessions.logout_all(alice.id) == 2
        for tokens in (a, b):
            with pytest.raises(Unauthenticated):
                runtime.sessions.verify_access_token(tokens.access_token)

    def test_logout_all_except_current(self, runtime, alice):
        keep = runtime.sessions.login(alice)
        runtime.sessions.login(alice)

        assert runtime.sessions.logout_all(alice.id, except_session_id=keep.session_id) == 1
        runtime.sessions.verify_access_token(keep.access_token)

    def test_list_sessions_newest_first_and_active_only(self, runtime, alice, clock, settings):
        old = runtime.sessions.login(alice)
        clock.advance(minutes=settings.refresh_token_ttl_minutes - 1)
        newer = runtime.sessions.login(alice)
        clock.advance(minutes=1)

        listed = runtime.sessions.list_sessions(alice.id)
        assert [s.id for s in listed] == [newer.session_id]
        assert old.session_id not in {s.id for s in listed}

    def test_cleanup_expired(self, runtime, alice, clock, settings, memory_store):
        runtime.sessions.login(alice)
        clock.advance(minutes=settings.refresh_token_ttl_minutes)
        live = runtime.sessions.login(alice)

        assert runtime.sessions.cleanup_expired() == 1
        assert list(memory_store.sessions) == [live.session_id]
