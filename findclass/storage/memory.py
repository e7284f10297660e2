from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from findclass.logging import get_logger
from findclass.storage.common import (
    deserialize_application,
    deserialize_code,
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


class MemoryStore:
    """In-process backing store for tests and local development.

    Every read-check-write happens under one re-entrant lock, which gives the
    same all-or-nothing behaviour the database backends get from constraints
    and transactions. With ``fs_root`` set, state is written to
    ``<fs_root>/state/memory_store.json`` after each mutation.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.email_index: Dict[str, str] = {}
        self.codes: Dict[str, VerificationCode] = {}
        self.sessions: Dict[str, Session] = {}
        self.applications: Dict[str, RoleApplication] = {}
        self.history: Dict[str, List[RoleApplicationHistoryEntry]] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.email in self.email_index:
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email", "constraint": USER_EMAIL_UNIQUE},
                )
            self.users[user.id] = replace(user)
            self.email_index[user.email] = user.id
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.email_index.get(email)
            return self.get_user(user_id) if user_id else None

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
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            if name is not None:
                user.name = name
            if language is not None:
                user.language = language
            if phone is not None:
                user.phone = phone
            elif clear_phone:
                user.phone = None
            if password_hash is not None:
                user.password_hash = password_hash
            if status is not None:
                user.status = status
            user.updated_at = updated_at
            self._persist_state()
            return replace(user)

    # -- verification codes --------------------------------------------------

    def create_code(self, code: VerificationCode) -> VerificationCode:
        with self._data_lock:
            self.codes[code.id] = replace(code)
            self._persist_state()
            return replace(code)

    def redeem_code(
        self, email: str, code: str, purpose: VerificationPurpose, now: datetime
    ) -> bool:
        with self._data_lock:
            for record in self.codes.values():
                if (
                    record.email == email
                    and record.code == code
                    and record.purpose is purpose
                    and record.is_redeemable(now)
                ):
                    record.used = True
                    self._persist_state()
                    return True
            return False

    def count_codes_since(
        self, email: str, purpose: VerificationPurpose, since: datetime
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for record in self.codes.values()
                if record.email == email
                and record.purpose is purpose
                and record.created_at >= since
            )

    def delete_expired_codes(self, now: datetime) -> int:
        with self._data_lock:
            expired = [cid for cid, rec in self.codes.items() if rec.expires_at <= now]
            for cid in expired:
                del self.codes[cid]
            if expired:
                self._persist_state()
            return len(expired)

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token_hash == token_hash:
                    return replace(session)
            return None

    def rotate_session(
        self, old_session_id: str, old_token_hash: str, new_session: Session
    ) -> bool:
        with self._data_lock:
            current = self.sessions.get(old_session_id)
            if current is None or current.token_hash != old_token_hash:
                return False
            del self.sessions[old_session_id]
            self.sessions[new_session.id] = replace(new_session)
            self._persist_state()
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                del self.sessions[sid]
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                del self.sessions[sid]
            if expired:
                self._persist_state()
            return len(expired)

    # -- role applications ---------------------------------------------------

    def create_application(
        self, application: RoleApplication, history: RoleApplicationHistoryEntry
    ) -> RoleApplication:
        with self._data_lock:
            if any(
                app.user_id == application.user_id
                and app.status is ApplicationStatus.PENDING
                for app in self.applications.values()
            ):
                raise ConstraintViolation(
                    "pending role application already exists",
                    {"field": "user_id", "constraint": PENDING_APPLICATION_UNIQUE},
                )
            self.applications[application.id] = replace(application)
            self.history[application.id] = [replace(history)]
            self._persist_state()
            return replace(application)

    def get_application(self, application_id: str) -> Optional[RoleApplication]:
        with self._data_lock:
            app = self.applications.get(application_id)
            return replace(app) if app else None

    def list_user_applications(self, user_id: str) -> List[RoleApplication]:
        with self._data_lock:
            return [replace(a) for a in self.applications.values() if a.user_id == user_id]

    def list_pending_applications(self, limit: Optional[int] = None) -> List[RoleApplication]:
        with self._data_lock:
            pending = sorted(
                (a for a in self.applications.values() if a.status is ApplicationStatus.PENDING),
                key=lambda a: a.created_at,
                reverse=True,
            )
            return [replace(a) for a in pending[:limit]]

    def list_application_history(
        self, application_id: str
    ) -> List[RoleApplicationHistoryEntry]:
        with self._data_lock:
            return [replace(h) for h in self.history.get(application_id, [])]

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
        with self._data_lock:
            app = self.applications.get(application_id)
            if app is None or app.status is not ApplicationStatus.PENDING:
                return None
            if owner_id is not None and app.user_id != owner_id:
                return None
            promoted: Optional[User] = None
            if to_status is ApplicationStatus.APPROVED:
                user = self.users.get(app.user_id)
                if user is None:
                    return None
                user.role = app.role
                user.updated_at = at
                promoted = replace(user)
            entry = RoleApplicationHistoryEntry(
                id=new_id(),
                application_id=app.id,
                from_status=app.status,
                to_status=to_status,
                actor_id=actor_id,
                comment=comment,
                created_at=at,
            )
            app.status = to_status
            app.updated_at = at
            if to_status is not ApplicationStatus.CANCELLED:
                app.reviewer_id = actor_id
            app.comment = comment
            self.history.setdefault(app.id, []).append(entry)
            self._persist_state()
            return TransitionResult(
                application=replace(app), history=replace(entry), promoted_user=promoted
            )

    # -- housekeeping --------------------------------------------------------

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [serialize_user(u) for u in self.users.values()],
            "codes": [serialize_code(c) for c in self.codes.values()],
            "sessions": [serialize_session(s) for s in self.sessions.values()],
            "applications": [serialize_application(a) for a in self.applications.values()],
            "history": [
                serialize_history(h) for entries in self.history.values() for h in entries
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: deserialize_user(u) for u in data.get("users", [])}
        self.email_index = {u.email: u.id for u in self.users.values()}
        self.codes = {c["id"]: deserialize_code(c) for c in data.get("codes", [])}
        self.sessions = {s["id"]: deserialize_session(s) for s in data.get("sessions", [])}
        self.applications = {
            a["id"]: deserialize_application(a) for a in data.get("applications", [])
        }
        self.history = {}
        for raw in data.get("history", []):
            entry = deserialize_history(raw)
            self.history.setdefault(entry.application_id, []).append(entry)
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            applications=len(self.applications),
        )
        return True
