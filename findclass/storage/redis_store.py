from __future__ import annotations

import functools
import json
import math
import time
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from findclass.logging import get_logger
from findclass.storage.common import (
    deserialize_application,
    deserialize_history,
    deserialize_session,
    deserialize_user,
    serialize_application,
    serialize_code,
    serialize_history,
    serialize_session,
    serialize_user,
)
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
    TransitionResult,
    User,
    UserStatus,
    VerificationCode,
    VerificationPurpose,
    new_id,
)

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Records outlive their logical expiry by this much so read-time checks, not
# key eviction, decide validity.
_EXPIRY_GRACE_SECONDS = 60


def _translate_errors(fn: F) -> F:
    @functools.wraps(fn)
    def wrapper(self: "RedisStore", *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_unavailable", operation=fn.__name__, error=str(exc))
            raise StorageUnavailable() from exc

    return wrapper  # type: ignore[return-value]


def _ttl_seconds(start: datetime, end: datetime) -> int:
    return max(1, math.ceil((end - start).total_seconds())) + _EXPIRY_GRACE_SECONDS


class RedisStore:
    """Single keyspace backend on Redis.

    Every aggregate lives under one key prefix; secondary indexes (email to
    user, refresh hash to session, user to pending application) are plain
    keys claimed with SET NX or inside Lua scripts, so uniqueness and state
    transitions are decided by a single atomic server-side step.
    """

    _CREATE_USER_SCRIPT = """
if redis.call('SET', KEYS[1], ARGV[1], 'NX') then
  redis.call('SET', KEYS[2], ARGV[2])
  return 1
end
return 0
"""

    # Fields in ARGV[1] overwrite the stored record; JSON null clears a field
    _PATCH_USER_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local user = cjson.decode(raw)
local patch = cjson.decode(ARGV[1])
for k, v in pairs(patch) do user[k] = v end
local encoded = cjson.encode(user)
redis.call('SET', KEYS[1], encoded)
return encoded
"""

    _REDEEM_CODE_SCRIPT = """
local raw = redis.call('HGET', KEYS[1], ARGV[1])
if not raw then return 0 end
local rec = cjson.decode(raw)
if rec['used'] == true or tonumber(rec['expires_ts']) <= tonumber(ARGV[2]) then
  return 0
end
rec['used'] = true
redis.call('HSET', KEYS[1], ARGV[1], cjson.encode(rec))
return 1
"""

    _ROTATE_SESSION_SCRIPT = """
if redis.call('GET', KEYS[2]) ~= ARGV[1] then return 0 end
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
redis.call('DEL', KEYS[1], KEYS[2])
redis.call('SREM', KEYS[5], ARGV[1])
redis.call('SET', KEYS[3], ARGV[2], 'EX', ARGV[4])
redis.call('SET', KEYS[4], ARGV[3], 'EX', ARGV[4])
redis.call('SADD', KEYS[5], ARGV[3])
return 1
"""

    _CREATE_APPLICATION_SCRIPT = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX') then return 0 end
redis.call('SET', KEYS[2], ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
redis.call('RPUSH', KEYS[5], ARGV[3])
return 1
"""

    # KEYS: application, pending index, history, pending-per-user, user
    # ARGV: to_status, actor, comment, at, owner, reviewer, history entry json
    _TRANSITION_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local app = cjson.decode(raw)
if app['status'] ~= 'PENDING' then return false end
if ARGV[5] ~= '' and app['user_id'] ~= ARGV[5] then return false end
local user_raw = ''
if ARGV[1] == 'APPROVED' then
  local current = redis.call('GET', KEYS[5])
  if not current then return false end
  local user = cjson.decode(current)
  user['role'] = app['role']
  user['updated_at'] = ARGV[4]
  user_raw = cjson.encode(user)
  redis.call('SET', KEYS[5], user_raw)
end
app['status'] = ARGV[1]
app['updated_at'] = ARGV[4]
if ARGV[3] ~= '' then app['comment'] = ARGV[3] else app['comment'] = cjson.null end
if ARGV[6] ~= '' then app['reviewer_id'] = ARGV[6] end
local encoded = cjson.encode(app)
redis.call('SET', KEYS[1], encoded)
redis.call('DEL', KEYS[4])
redis.call('ZREM', KEYS[2], app['id'])
redis.call('RPUSH', KEYS[3], ARGV[7])
return {encoded, user_raw}
"""

    # KEYS: bucket
    # ARGV: now, refill rate per second, capacity, cost
    _TOKEN_BUCKET_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end
tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)
if tokens < cost then
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
  redis.call('EXPIRE', KEYS[1], math.max(reset_after, 1))
  return {0, math.floor(tokens), reset_after}
end
tokens = tokens - cost
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], math.max(math.ceil(capacity / refill_rate), 1))
return {1, math.floor(tokens), 0}
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        prefix: str = "findclass",
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.prefix = prefix
        self.logger = logger
        self._create_user = self.client.register_script(self._CREATE_USER_SCRIPT)
        self._patch_user = self.client.register_script(self._PATCH_USER_SCRIPT)
        self._redeem_code = self.client.register_script(self._REDEEM_CODE_SCRIPT)
        self._rotate_session = self.client.register_script(self._ROTATE_SESSION_SCRIPT)
        self._create_application = self.client.register_script(self._CREATE_APPLICATION_SCRIPT)
        self._transition = self.client.register_script(self._TRANSITION_SCRIPT)
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    # -- keys ----------------------------------------------------------------

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    def _user_key(self, user_id: str) -> str:
        return self._key("user", user_id)

    def _email_key(self, email: str) -> str:
        return self._key("user", "email", email)

    def _code_key(self, email: str, purpose: VerificationPurpose) -> str:
        return self._key("vcode", "code", VerificationPurpose(purpose).value, email)

    def _issued_key(self, email: str, purpose: VerificationPurpose) -> str:
        return self._key("vcode", "issued", VerificationPurpose(purpose).value, email)

    def _session_key(self, session_id: str) -> str:
        return self._key("session", "id", session_id)

    def _session_hash_key(self, token_hash: str) -> str:
        return self._key("session", "hash", token_hash)

    def _user_sessions_key(self, user_id: str) -> str:
        return self._key("session", "user", user_id)

    def _application_key(self, application_id: str) -> str:
        return self._key("role_app", "id", application_id)

    def _pending_user_key(self, user_id: str) -> str:
        return self._key("role_app", "pending", user_id)

    def _pending_index_key(self) -> str:
        return self._key("role_app", "pending_index")

    def _user_applications_key(self, user_id: str) -> str:
        return self._key("role_app", "user", user_id)

    def _history_key(self, application_id: str) -> str:
        return self._key("role_app", "history", application_id)

    # -- users ---------------------------------------------------------------

    @_translate_errors
    def create_user(self, user: User) -> User:
        created = self._create_user(
            keys=[self._email_key(user.email), self._user_key(user.id)],
            args=[user.id, json.dumps(serialize_user(user))],
        )
        if not int(created):
            raise ConstraintViolation(
                "email already exists", {"field": "email", "constraint": USER_EMAIL_UNIQUE}
            )
        return user

    @_translate_errors
    def get_user(self, user_id: str) -> Optional[User]:
        raw = self.client.get(self._user_key(user_id))
        return deserialize_user(json.loads(raw)) if raw else None

    @_translate_errors
    def get_user_by_email(self, email: str) -> Optional[User]:
        user_id = self.client.get(self._email_key(email))
        return self.get_user(user_id) if user_id else None

    @_translate_errors
    def update_user(
        self,
        user_id: str,
        *,
        updated_at: datetime,
        name: Optional[str] = None,
        language: Optional[str] = None,
        phone: Optional[str] = None,
        clear_phone: bool = False,
        password_hash: Optional[str] = None,
        status: Optional[UserStatus] = None,
    ) -> Optional[User]:
        patch: dict[str, Any] = {"updated_at": updated_at.isoformat()}
        if name is not None:
            patch["name"] = name
        if language is not None:
            patch["language"] = language
        if phone is not None:
            patch["phone"] = phone
        elif clear_phone:
            patch["phone"] = None
        if password_hash is not None:
            patch["password_hash"] = password_hash
        if status is not None:
            patch["status"] = UserStatus(status).value
        raw = self._patch_user(keys=[self._user_key(user_id)], args=[json.dumps(patch)])
        return deserialize_user(json.loads(raw)) if raw else None

    # -- verification codes --------------------------------------------------

    @_translate_errors
    def create_code(self, code: VerificationCode) -> VerificationCode:
        record = {**serialize_code(code), "expires_ts": code.expires_at.timestamp()}
        code_key = self._code_key(code.email, code.purpose)
        issued_key = self._issued_key(code.email, code.purpose)
        ttl = _ttl_seconds(code.created_at, code.expires_at)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(code_key, code.code, json.dumps(record))
        pipe.expire(code_key, ttl)
        pipe.zadd(issued_key, {code.id: code.created_at.timestamp()})
        pipe.expire(issued_key, ttl)
        pipe.execute()
        return code

    @_translate_errors
    def redeem_code(
        self, email: str, code: str, purpose: VerificationPurpose, now: datetime
    ) -> bool:
        result = self._redeem_code(
            keys=[self._code_key(email, purpose)], args=[code, now.timestamp()]
        )
        return bool(int(result))

    @_translate_errors
    def count_codes_since(
        self, email: str, purpose: VerificationPurpose, since: datetime
    ) -> int:
        return int(self.client.zcount(self._issued_key(email, purpose), since.timestamp(), "+inf"))

    @_translate_errors
    def delete_expired_codes(self, now: datetime) -> int:
        removed = 0
        now_ts = now.timestamp()
        for key in self.client.scan_iter(match=self._key("vcode", "code", "*")):
            for field, raw in self.client.hgetall(key).items():
                if float(json.loads(raw).get("expires_ts", 0)) <= now_ts:
                    removed += int(self.client.hdel(key, field))
        return removed

    # -- sessions ------------------------------------------------------------

    @_translate_errors
    def create_session(self, session: Session) -> Session:
        ttl = _ttl_seconds(session.created_at, session.expires_at)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(self._session_key(session.id), json.dumps(serialize_session(session)), ex=ttl)
        pipe.set(self._session_hash_key(session.token_hash), session.id, ex=ttl)
        pipe.sadd(self._user_sessions_key(session.user_id), session.id)
        pipe.execute()
        return session

    @_translate_errors
    def get_session(self, session_id: str) -> Optional[Session]:
        raw = self.client.get(self._session_key(session_id))
        return deserialize_session(json.loads(raw)) if raw else None

    @_translate_errors
    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        session_id = self.client.get(self._session_hash_key(token_hash))
        return self.get_session(session_id) if session_id else None

    @_translate_errors
    def rotate_session(
        self, old_session_id: str, old_token_hash: str, new_session: Session
    ) -> bool:
        result = self._rotate_session(
            keys=[
                self._session_key(old_session_id),
                self._session_hash_key(old_token_hash),
                self._session_key(new_session.id),
                self._session_hash_key(new_session.token_hash),
                self._user_sessions_key(new_session.user_id),
            ],
            args=[
                old_session_id,
                json.dumps(serialize_session(new_session)),
                new_session.id,
                _ttl_seconds(new_session.created_at, new_session.expires_at),
            ],
        )
        return bool(int(result))

    @_translate_errors
    def delete_session(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(self._session_key(session.id))
        pipe.delete(self._session_hash_key(session.token_hash))
        pipe.srem(self._user_sessions_key(session.user_id), session.id)
        deleted, _, _ = pipe.execute()
        return bool(deleted)

    @_translate_errors
    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        removed = 0
        for session_id in self.client.smembers(self._user_sessions_key(user_id)):
            if session_id == except_session_id:
                continue
            if self.delete_session(session_id):
                removed += 1
            else:
                self.client.srem(self._user_sessions_key(user_id), session_id)
        return removed

    @_translate_errors
    def list_user_sessions(self, user_id: str) -> List[Session]:
        index_key = self._user_sessions_key(user_id)
        session_ids = sorted(self.client.smembers(index_key))
        if not session_ids:
            return []
        raws = self.client.mget([self._session_key(sid) for sid in session_ids])
        sessions: List[Session] = []
        for session_id, raw in zip(session_ids, raws):
            if raw:
                sessions.append(deserialize_session(json.loads(raw)))
            else:
                # Key evicted by its TTL; drop the dangling index entry
                self.client.srem(index_key, session_id)
        return sessions

    @_translate_errors
    def delete_expired_sessions(self, now: datetime) -> int:
        removed = 0
        for key in self.client.scan_iter(match=self._key("session", "id", "*")):
            raw = self.client.get(key)
            if not raw:
                continue
            session = deserialize_session(json.loads(raw))
            if session.is_expired(now) and self.delete_session(session.id):
                removed += 1
        return removed

    # -- role applications ---------------------------------------------------

    @_translate_errors
    def create_application(
        self, application: RoleApplication, history: RoleApplicationHistoryEntry
    ) -> RoleApplication:
        created = self._create_application(
            keys=[
                self._pending_user_key(application.user_id),
                self._application_key(application.id),
                self._user_applications_key(application.user_id),
                self._pending_index_key(),
                self._history_key(application.id),
            ],
            args=[
                application.id,
                json.dumps(serialize_application(application)),
                json.dumps(serialize_history(history)),
                application.created_at.timestamp(),
            ],
        )
        if not int(created):
            raise ConstraintViolation(
                "pending role application already exists",
                {"field": "user_id", "constraint": PENDING_APPLICATION_UNIQUE},
            )
        return application

    @_translate_errors
    def get_application(self, application_id: str) -> Optional[RoleApplication]:
        raw = self.client.get(self._application_key(application_id))
        return deserialize_application(json.loads(raw)) if raw else None

    def _load_applications(self, application_ids: List[str]) -> List[RoleApplication]:
        if not application_ids:
            return []
        raws = self.client.mget([self._application_key(aid) for aid in application_ids])
        return [deserialize_application(json.loads(raw)) for raw in raws if raw]

    @_translate_errors
    def list_user_applications(self, user_id: str) -> List[RoleApplication]:
        ids = self.client.zrevrange(self._user_applications_key(user_id), 0, -1)
        return self._load_applications(list(ids))

    @_translate_errors
    def list_pending_applications(self, limit: Optional[int] = None) -> List[RoleApplication]:
        stop = -1 if limit is None else limit - 1
        ids = self.client.zrevrange(self._pending_index_key(), 0, stop)
        return [
            app
            for app in self._load_applications(list(ids))
            if app.status is ApplicationStatus.PENDING
        ]

    @_translate_errors
    def list_application_history(
        self, application_id: str
    ) -> List[RoleApplicationHistoryEntry]:
        raws = self.client.lrange(self._history_key(application_id), 0, -1)
        return [deserialize_history(json.loads(raw)) for raw in raws]

    @_translate_errors
    def transition_application(
        self,
        application_id: str,
        *,
        to_status: ApplicationStatus,
        actor_id: str,
        at: datetime,
        comment: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Optional[TransitionResult]:
        # user_id never changes, so reading it outside the script is safe
        current = self.get_application(application_id)
        if current is None:
            return None
        entry = RoleApplicationHistoryEntry(
            id=new_id(),
            application_id=application_id,
            from_status=ApplicationStatus.PENDING,
            to_status=to_status,
            actor_id=actor_id,
            comment=comment,
            created_at=at,
        )
        reviewer = "" if to_status is ApplicationStatus.CANCELLED else actor_id
        result = self._transition(
            keys=[
                self._application_key(application_id),
                self._pending_index_key(),
                self._history_key(application_id),
                self._pending_user_key(current.user_id),
                self._user_key(current.user_id),
            ],
            args=[
                to_status.value,
                actor_id,
                comment or "",
                at.isoformat(),
                owner_id or "",
                reviewer,
                json.dumps(serialize_history(entry)),
            ],
        )
        if not result:
            return None
        app_raw, user_raw = result
        promoted = deserialize_user(json.loads(user_raw)) if user_raw else None
        return TransitionResult(
            application=deserialize_application(json.loads(app_raw)),
            history=entry,
            promoted_user=promoted,
        )

    # -- rate limits ---------------------------------------------------------

    @_translate_errors
    def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Shared token bucket; returns ``(allowed, remaining, reset_seconds)``."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[self._key("ratelimit", key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(tokens)), int(reset_after or 0)

    # -- housekeeping --------------------------------------------------------

    @_translate_errors
    def ping(self) -> bool:
        return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()
