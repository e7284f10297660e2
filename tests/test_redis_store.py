"""RedisStore contract tests.

Run against the Redis server at ``FINDCLASS_TEST_REDIS_URL`` (default
redis://localhost:6379/15) when one answers, and against fakeredis otherwise,
so the Lua scripts always execute. Every test works under its own key prefix
and removes its keys afterwards.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from findclass.storage.errors import (
    PENDING_APPLICATION_UNIQUE,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
    StorageUnavailable,
)
from findclass.storage.models import (
    ApplicationStatus,
    RoleApplication,
    RoleApplicationHistoryEntry,
    Session,
    User,
    UserRole,
    UserStatus,
    VerificationCode,
    VerificationPurpose,
    new_id,
)
from findclass.storage.redis_store import RedisStore

REDIS_URL = os.environ.get("FINDCLASS_TEST_REDIS_URL", "redis://localhost:6379/15")
NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def _redis_available() -> bool:
    try:
        client = Redis.from_url(REDIS_URL, socket_connect_timeout=0.5, socket_timeout=0.5)
        client.ping()
        client.close()
        return True
    except (RedisConnectionError, RedisTimeoutError, OSError):
        return False


REDIS_AVAILABLE = _redis_available()


@pytest.fixture
def store():
    prefix = f"findclass-test-{uuid.uuid4().hex[:8]}"
    if REDIS_AVAILABLE:
        redis_store = RedisStore(REDIS_URL, prefix=prefix)
    else:
        redis_store = RedisStore(client=fakeredis.FakeRedis(decode_responses=True), prefix=prefix)
    yield redis_store
    for key in redis_store.client.scan_iter(match=f"{prefix}:*"):
        redis_store.client.delete(key)
    redis_store.close()


def _user(email="alice@example.com"):
    return User(
        id=new_id(),
        email=email,
        password_hash="$argon2id$stub",
        name="Alice",
        created_at=NOW,
        updated_at=NOW,
    )


def _apply(store, user, role=UserRole.TEACHER):
    app = RoleApplication(id=new_id(), user_id=user.id, role=role, created_at=NOW, updated_at=NOW)
    entry = RoleApplicationHistoryEntry(
        id=new_id(),
        application_id=app.id,
        to_status=ApplicationStatus.PENDING,
        actor_id=user.id,
        created_at=NOW,
    )
    return store.create_application(app, entry)


class TestUsers:
    def test_create_and_lookup(self, store):
        user = store.create_user(_user())
        assert store.get_user_by_email("alice@example.com").id == user.id

    def test_duplicate_email(self, store):
        store.create_user(_user())
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user(_user())
        assert excinfo.value.constraint == USER_EMAIL_UNIQUE

    def test_update_user_patch(self, store):
        user = store.create_user(_user())
        later = NOW + timedelta(minutes=1)
        updated = store.update_user(
            user.id, updated_at=later, name="Alice B", status=UserStatus.DISABLED
        )
        assert updated.name == "Alice B"
        assert updated.status is UserStatus.DISABLED
        assert updated.updated_at == later
        assert store.update_user("missing", updated_at=later, name="x") is None


class TestCodes:
    def test_redeem_once(self, store):
        store.create_code(
            VerificationCode(
                id=new_id(),
                email="alice@example.com",
                code="123456",
                purpose=VerificationPurpose.REGISTER,
                created_at=NOW,
                expires_at=NOW + timedelta(minutes=5),
            )
        )
        assert store.count_codes_since("alice@example.com", VerificationPurpose.REGISTER, NOW) == 1
        assert store.redeem_code("alice@example.com", "123456", VerificationPurpose.REGISTER, NOW)
        assert not store.redeem_code("alice@example.com", "123456", VerificationPurpose.REGISTER, NOW)

    def test_expired_code(self, store):
        store.create_code(
            VerificationCode(
                id=new_id(),
                email="alice@example.com",
                code="654321",
                purpose=VerificationPurpose.LOGIN,
                created_at=NOW,
                expires_at=NOW + timedelta(minutes=5),
            )
        )
        at_expiry = NOW + timedelta(minutes=5)
        assert not store.redeem_code("alice@example.com", "654321", VerificationPurpose.LOGIN, at_expiry)


class TestSessions:
    def test_rotate_once(self, store):
        user = store.create_user(_user())
        first = store.create_session(
            Session.new(user.id, token_jti="j1", token_hash="h1", now=NOW)
        )
        second = Session.new(user.id, token_jti="j2", token_hash="h2", now=NOW)
        third = Session.new(user.id, token_jti="j3", token_hash="h3", now=NOW)

        assert store.rotate_session(first.id, "h1", second)
        assert not store.rotate_session(first.id, "h1", third)
        assert store.get_session(first.id) is None
        assert store.get_session_by_token_hash("h2").id == second.id
        assert [s.id for s in store.list_user_sessions(user.id)] == [second.id]

    def test_delete_user_sessions(self, store):
        user = store.create_user(_user())
        keep = store.create_session(Session.new(user.id, token_jti="a", token_hash="ha", now=NOW))
        store.create_session(Session.new(user.id, token_jti="b", token_hash="hb", now=NOW))

        assert store.delete_user_sessions(user.id, except_session_id=keep.id) == 1
        assert [s.id for s in store.list_user_sessions(user.id)] == [keep.id]


class TestApplications:
    def test_one_pending_per_user(self, store):
        user = store.create_user(_user())
        _apply(store, user)
        with pytest.raises(ConstraintViolation) as excinfo:
            _apply(store, user, UserRole.INSTITUTION)
        assert excinfo.value.constraint == PENDING_APPLICATION_UNIQUE

    def test_approve_promotes_and_frees_pending_slot(self, store):
        user = store.create_user(_user())
        app = _apply(store, user)

        result = store.transition_application(
            app.id, to_status=ApplicationStatus.APPROVED, actor_id="admin", at=NOW, comment="ok"
        )
        assert result.application.status is ApplicationStatus.APPROVED
        assert result.application.reviewer_id == "admin"
        assert result.promoted_user.role is UserRole.TEACHER
        assert store.get_user(user.id).role is UserRole.TEACHER
        assert store.list_pending_applications() == []
        assert len(store.list_application_history(app.id)) == 2
        _apply(store, user, UserRole.INSTITUTION)

    def test_second_transition_fails(self, store):
        user = store.create_user(_user())
        app = _apply(store, user)
        assert store.transition_application(
            app.id, to_status=ApplicationStatus.REJECTED, actor_id="admin", at=NOW
        )
        assert (
            store.transition_application(
                app.id, to_status=ApplicationStatus.APPROVED, actor_id="admin", at=NOW
            )
            is None
        )
        assert store.get_user(user.id).role is UserRole.STUDENT

    def test_cancel_checks_owner(self, store):
        user = store.create_user(_user())
        app = _apply(store, user)
        assert (
            store.transition_application(
                app.id,
                to_status=ApplicationStatus.CANCELLED,
                actor_id="intruder",
                at=NOW,
                owner_id="intruder",
            )
            is None
        )
        cancelled = store.transition_application(
            app.id,
            to_status=ApplicationStatus.CANCELLED,
            actor_id=user.id,
            at=NOW,
            comment="Cancelled by user",
            owner_id=user.id,
        )
        assert cancelled.application.reviewer_id is None

    def test_list_pending_respects_limit(self, store):
        _apply(store, store.create_user(_user("alice@example.com")))
        _apply(store, store.create_user(_user("bob@example.com")))

        assert len(store.list_pending_applications(limit=1)) == 1
        assert len(store.list_pending_applications()) == 2


def test_unreachable_server_is_storage_unavailable():
    store = RedisStore("redis://127.0.0.1:1/0", socket_timeout=0.2)
    with pytest.raises(StorageUnavailable):
        store.get_user("anyone")
    store.close()


class TestRateLimit:
    def test_bucket_is_shared_per_key(self, store):
        assert store.check_rate_limit("login:alice@example.com", 2, 60) == (True, 1, 0)
        assert store.check_rate_limit("login:alice@example.com", 2, 60)[0]
        allowed, remaining, reset_seconds = store.check_rate_limit("login:alice@example.com", 2, 60)
        assert not allowed
        assert remaining == 0
        assert reset_seconds >= 1
        assert store.check_rate_limit("login:bob@example.com", 2, 60)[0]

    def test_bucket_key_expires(self, store):
        store.check_rate_limit("signup:alice@example.com", 10, 60)
        ttl = store.client.ttl(store._key("ratelimit", "signup:alice@example.com"))
        assert 0 < ttl <= 60
