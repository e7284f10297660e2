"""Record <-> dict conversion shared by the memory and Redis backends.

Both backends keep records as JSON-compatible dicts (a state file for the
memory store, string values for Redis), so the field mapping lives here once.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

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
)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "password_hash": user.password_hash,
        "name": user.name,
        "role": user.role.value,
        "status": user.status.value,
        "language": user.language,
        "phone": user.phone,
        "created_at": serialize_datetime(user.created_at),
        "updated_at": serialize_datetime(user.updated_at),
    }


def deserialize_user(data: Dict[str, Any]) -> User:
    return User(
        id=str(data["id"]),
        email=data["email"],
        password_hash=data["password_hash"],
        name=data.get("name", ""),
        role=UserRole(data.get("role", UserRole.STUDENT.value)),
        status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
        language=data.get("language") or "zh",
        phone=data.get("phone"),
        created_at=deserialize_datetime(data["created_at"]),
        updated_at=deserialize_datetime(data.get("updated_at") or data["created_at"]),
    )


def serialize_code(code: VerificationCode) -> Dict[str, Any]:
    return {
        "id": code.id,
        "email": code.email,
        "code": code.code,
        "purpose": code.purpose.value,
        "created_at": serialize_datetime(code.created_at),
        "expires_at": serialize_datetime(code.expires_at),
        "used": code.used,
    }


def deserialize_code(data: Dict[str, Any]) -> VerificationCode:
    return VerificationCode(
        id=str(data["id"]),
        email=data["email"],
        code=data["code"],
        purpose=VerificationPurpose(data["purpose"]),
        created_at=deserialize_datetime(data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        used=bool(data.get("used", False)),
    )


def serialize_session(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "token_jti": session.token_jti,
        "token_hash": session.token_hash,
        "created_at": serialize_datetime(session.created_at),
        "expires_at": serialize_datetime(session.expires_at),
        "user_agent": session.user_agent,
        "ip_addr": session.ip_addr,
    }


def deserialize_session(data: Dict[str, Any]) -> Session:
    return Session(
        id=str(data["id"]),
        user_id=str(data["user_id"]),
        token_jti=data["token_jti"],
        token_hash=data["token_hash"],
        created_at=deserialize_datetime(data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        user_agent=data.get("user_agent"),
        ip_addr=data.get("ip_addr"),
    )


def serialize_application(app: RoleApplication) -> Dict[str, Any]:
    return {
        "id": app.id,
        "user_id": app.user_id,
        "role": app.role.value,
        "status": app.status.value,
        "reason": app.reason,
        "reviewer_id": app.reviewer_id,
        "comment": app.comment,
        "created_at": serialize_datetime(app.created_at),
        "updated_at": serialize_datetime(app.updated_at),
    }


def deserialize_application(data: Dict[str, Any]) -> RoleApplication:
    return RoleApplication(
        id=str(data["id"]),
        user_id=str(data["user_id"]),
        role=UserRole(data["role"]),
        status=ApplicationStatus(data["status"]),
        reason=data.get("reason"),
        reviewer_id=data.get("reviewer_id"),
        comment=data.get("comment"),
        created_at=deserialize_datetime(data["created_at"]),
        updated_at=deserialize_datetime(data["updated_at"]),
    )


def serialize_history(entry: RoleApplicationHistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "application_id": entry.application_id,
        "from_status": entry.from_status.value if entry.from_status else None,
        "to_status": entry.to_status.value,
        "actor_id": entry.actor_id,
        "comment": entry.comment,
        "created_at": serialize_datetime(entry.created_at),
    }


def deserialize_history(data: Dict[str, Any]) -> RoleApplicationHistoryEntry:
    from_status = data.get("from_status")
    return RoleApplicationHistoryEntry(
        id=str(data["id"]),
        application_id=str(data["application_id"]),
        from_status=ApplicationStatus(from_status) if from_status else None,
        to_status=ApplicationStatus(data["to_status"]),
        actor_id=str(data["actor_id"]),
        comment=data.get("comment"),
        created_at=deserialize_datetime(data["created_at"]),
    )
