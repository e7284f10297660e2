from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class UserRole(str, Enum):
    STUDENT = "STUDENT"
    PARENT = "PARENT"
    TEACHER = "TEACHER"
    INSTITUTION = "INSTITUTION"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class VerificationPurpose(str, Enum):
    REGISTER = "REGISTER"
    LOGIN = "LOGIN"
    PASSWORD_RESET = "PASSWORD_RESET"


class ApplicationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not ApplicationStatus.PENDING


# Roles a user may be granted through an application; ADMIN is bootstrap-only
REQUESTABLE_ROLES = frozenset(
    {UserRole.STUDENT, UserRole.PARENT, UserRole.TEACHER, UserRole.INSTITUTION}
)
# Roles a user may pick for themselves at sign-up
SELF_SERVICE_ROLES = frozenset({UserRole.STUDENT, UserRole.PARENT})


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str
    created_at: datetime
    updated_at: datetime
    role: UserRole = UserRole.STUDENT
    status: UserStatus = UserStatus.ACTIVE
    language: str = "zh"
    phone: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is UserStatus.ACTIVE


@dataclass
class VerificationCode:
    id: str
    email: str
    code: str
    purpose: VerificationPurpose
    created_at: datetime
    expires_at: datetime
    used: bool = False

    def is_redeemable(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class Session:
    id: str
    user_id: str
    token_jti: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        token_jti: str,
        token_hash: str,
        now: datetime,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        session_id: str | None = None,
    ) -> "Session":
        return cls(
            id=session_id or new_id(),
            user_id=user_id,
            token_jti=token_jti,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class RoleApplication:
    id: str
    user_id: str
    role: UserRole
    created_at: datetime
    updated_at: datetime
    status: ApplicationStatus = ApplicationStatus.PENDING
    reason: Optional[str] = None
    reviewer_id: Optional[str] = None
    comment: Optional[str] = None


@dataclass
class RoleApplicationHistoryEntry:
    id: str
    application_id: str
    to_status: ApplicationStatus
    actor_id: str
    created_at: datetime
    from_status: Optional[ApplicationStatus] = None
    comment: Optional[str] = None


@dataclass
class TransitionResult:
    """Outcome of a conditional application transition."""

    application: RoleApplication
    history: RoleApplicationHistoryEntry
    promoted_user: Optional[User] = None
