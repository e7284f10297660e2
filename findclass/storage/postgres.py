from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from findclass.logging import get_logger
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
    UserRole,
    UserStatus,
    VerificationCode,
    VerificationPurpose,
    new_id,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        language TEXT NOT NULL DEFAULT 'zh',
        phone TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT user_email_unique UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        purpose TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS verification_code_lookup
        ON verification_code (email, purpose, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user (id),
        token_jti TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS role_application (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user (id),
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        reason TEXT,
        reviewer_id TEXT,
        comment TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS role_application_pending_unique
        ON role_application (user_id) WHERE status = 'PENDING'
    """,
    """
    CREATE TABLE IF NOT EXISTS role_application_history (
        id TEXT PRIMARY KEY,
        application_id TEXT NOT NULL REFERENCES role_application (id),
        from_status TEXT,
        to_status TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        comment TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS role_application_history_app
        ON role_application_history (application_id, created_at)
    """,
)

_REQUIRED_TABLES = (
    "app_user",
    "verification_code",
    "auth_session",
    "role_application",
    "role_application_history",
)


class PostgresStore:
    """PostgreSQL backend.

    Uniqueness rules are enforced by constraints (``user_email_unique`` and the
    partial index ``role_application_pending_unique``); state changes that
    must be exclusive are single conditional UPDATE/DELETE statements whose
    row locks decide the winner of a race.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable() from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = [
                table
                for table in _REQUIRED_TABLES
                if conn.execute("SELECT to_regclass(%s::text) AS oid", (table,)).fetchone()["oid"]
                is None
            ]
        if missing:
            raise RuntimeError(f"database schema missing tables: {', '.join(missing)}")

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name") or "",
            role=UserRole(row.get("role") or UserRole.STUDENT.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            language=row.get("language") or "zh",
            phone=row.get("phone"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_jti=row["token_jti"],
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _application_from_row(row: dict) -> RoleApplication:
        return RoleApplication(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            role=UserRole(row["role"]),
            status=ApplicationStatus(row["status"]),
            reason=row.get("reason"),
            reviewer_id=row.get("reviewer_id"),
            comment=row.get("comment"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _history_from_row(row: dict) -> RoleApplicationHistoryEntry:
        from_status = row.get("from_status")
        return RoleApplicationHistoryEntry(
            id=str(row["id"]),
            application_id=str(row["application_id"]),
            from_status=ApplicationStatus(from_status) if from_status else None,
            to_status=ApplicationStatus(row["to_status"]),
            actor_id=str(row["actor_id"]),
            comment=row.get("comment"),
            created_at=row["created_at"],
        )

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, role, status, language, phone, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.name,
                        user.role.value,
                        user.status.value,
                        user.language,
                        user.phone,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "constraint": USER_EMAIL_UNIQUE}
            ) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

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
        assignments = ["updated_at = %s"]
        params: list[Any] = [updated_at]
        if name is not None:
            assignments.append("name = %s")
            params.append(name)
        if language is not None:
            assignments.append("language = %s")
            params.append(language)
        if phone is not None:
            assignments.append("phone = %s")
            params.append(phone)
        elif clear_phone:
            assignments.append("phone = NULL")
        if password_hash is not None:
            assignments.append("password_hash = %s")
            params.append(password_hash)
        if status is not None:
            assignments.append("status = %s")
            params.append(UserStatus(status).value)
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._user_from_row(row) if row else None

    # -- verification codes --------------------------------------------------

    def create_code(self, code: VerificationCode) -> VerificationCode:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO verification_code (id, email, code, purpose, created_at, expires_at, used)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    code.id,
                    code.email,
                    code.code,
                    code.purpose.value,
                    code.created_at,
                    code.expires_at,
                    code.used,
                ),
            )
        return code

    def redeem_code(
        self, email: str, code: str, purpose: VerificationPurpose, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_code SET used = TRUE
                WHERE used = FALSE AND id = (
                    SELECT id FROM verification_code
                    WHERE email = %s AND code = %s AND purpose = %s
                      AND used = FALSE AND expires_at > %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (email, code, VerificationPurpose(purpose).value, now),
            ).fetchone()
        return row is not None

    def count_codes_since(
        self, email: str, purpose: VerificationPurpose, since: datetime
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM verification_code
                WHERE email = %s AND purpose = %s AND created_at >= %s
                """,
                (email, VerificationPurpose(purpose).value, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    def delete_expired_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM verification_code WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # -- sessions ------------------------------------------------------------

    def _insert_session(self, conn: Any, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (id, user_id, token_jti, token_hash, created_at, expires_at, user_agent, ip_addr)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.token_jti,
                session.token_hash,
                session.created_at,
                session.expires_at,
                session.user_agent,
                session.ip_addr,
            ),
        )

    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            self._insert_session(conn, session)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self, old_session_id: str, old_token_hash: str, new_session: Session
    ) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE id = %s AND token_hash = %s",
                    (old_session_id, old_token_hash),
                )
                if cur.rowcount != 1:
                    return False
                self._insert_session(conn, new_session)
        return True

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return bool(cur.rowcount)

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # -- role applications ---------------------------------------------------

    def _insert_history(self, conn: Any, entry: RoleApplicationHistoryEntry) -> None:
        conn.execute(
            """
            INSERT INTO role_application_history (id, application_id, from_status, to_status, actor_id, comment, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.id,
                entry.application_id,
                entry.from_status.value if entry.from_status else None,
                entry.to_status.value,
                entry.actor_id,
                entry.comment,
                entry.created_at,
            ),
        )

    def create_application(
        self, application: RoleApplication, history: RoleApplicationHistoryEntry
    ) -> RoleApplication:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO role_application (id, user_id, role, status, reason, reviewer_id, comment, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            application.id,
                            application.user_id,
                            application.role.value,
                            application.status.value,
                            application.reason,
                            application.reviewer_id,
                            application.comment,
                            application.created_at,
                            application.updated_at,
                        ),
                    )
                    self._insert_history(conn, history)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "pending role application already exists",
                {"field": "user_id", "constraint": PENDING_APPLICATION_UNIQUE},
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"field": "user_id"}
            ) from exc
        return application

    def get_application(self, application_id: str) -> Optional[RoleApplication]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role_application WHERE id = %s", (application_id,)
            ).fetchone()
        return self._application_from_row(row) if row else None

    def list_user_applications(self, user_id: str) -> List[RoleApplication]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role_application WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._application_from_row(row) for row in rows]

    def list_pending_applications(self, limit: Optional[int] = None) -> List[RoleApplication]:
        query = "SELECT * FROM role_application WHERE status = 'PENDING' ORDER BY created_at DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT %s"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._application_from_row(row) for row in rows]

    def list_application_history(
        self, application_id: str
    ) -> List[RoleApplicationHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM role_application_history
                WHERE application_id = %s ORDER BY created_at ASC
                """,
                (application_id,),
            ).fetchall()
        return [self._history_from_row(row) for row in rows]

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
        reviewer = None if to_status is ApplicationStatus.CANCELLED else actor_id
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE role_application
                    SET status = %s, comment = %s, updated_at = %s,
                        reviewer_id = COALESCE(%s, reviewer_id)
                    WHERE id = %s AND status = 'PENDING'
                      AND (%s::text IS NULL OR user_id = %s)
                    RETURNING *
                    """,
                    (
                        to_status.value,
                        comment,
                        at,
                        reviewer,
                        application_id,
                        owner_id,
                        owner_id,
                    ),
                ).fetchone()
                if not row:
                    return None
                application = self._application_from_row(row)
                entry = RoleApplicationHistoryEntry(
                    id=new_id(),
                    application_id=application.id,
                    from_status=ApplicationStatus.PENDING,
                    to_status=to_status,
                    actor_id=actor_id,
                    comment=comment,
                    created_at=at,
                )
                self._insert_history(conn, entry)
                promoted = None
                if to_status is ApplicationStatus.APPROVED:
                    user_row = conn.execute(
                        "UPDATE app_user SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
                        (application.role.value, at, application.user_id),
                    ).fetchone()
                    promoted = self._user_from_row(user_row) if user_row else None
        return TransitionResult(application=application, history=entry, promoted_user=promoted)
