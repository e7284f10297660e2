from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from findclass.storage.models import (
    SELF_SERVICE_ROLES,
    ApplicationStatus,
    UserRole,
    UserStatus,
    VerificationPurpose,
)


def _normalize_unicode(value: str) -> str:
    """Strip spoofing characters and apply NFKC normalization.

    Zero-width characters and bidi overrides are removed before
    normalizing, so visually identical addresses compare equal.
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZWNJ, U+200D ZWJ, U+FEFF ZWNBSP
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "duplicate_email",
    "duplicate_pending_application",
    "invalid_transition",
    "invalid_code",
    "invalid_credentials",
    "unauthenticated",
    "invalid_token",
    "account_disabled",
    "storage_unavailable",
    "method_not_allowed",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can branch on."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PASSWORD_SPECIALS = "@$!%*?&"


def _validate_password_strength(value: str) -> str:
    """At least 12 characters mixing upper, lower, digit and one of @$!%*?&."""
    if len(value) < 12:
        raise ValueError("password must be at least 12 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        raise ValueError(f"password must contain one of {_PASSWORD_SPECIALS}")
    return value


_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{6,20}$")


def _validate_phone(value: Optional[str]) -> Optional[str]:
    """Empty string is allowed and means "clear the phone number"."""
    if value is None or value == "":
        return value
    value = value.strip()
    if not _PHONE_PATTERN.match(value):
        raise ValueError("invalid phone number")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.STUDENT
    language: Optional[str] = Field(default=None, max_length=10)
    phone: Optional[str] = Field(default=None, max_length=20)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: UserRole) -> UserRole:
        if value not in SELF_SERVICE_ROLES:
            raise ValueError("only STUDENT or PARENT can be chosen at registration")
        return value

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value) or None


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class SendCodeRequest(BaseModel):
    email: str
    purpose: VerificationPurpose = VerificationPurpose.REGISTER

    @field_validator("email")
    @classmethod
    def _validate_send_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyCodeRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")
    purpose: VerificationPurpose = VerificationPurpose.REGISTER

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    email: str
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_confirm_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    language: Optional[str] = Field(default=None, max_length=10)
    phone: Optional[str] = Field(default=None, max_length=20)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class ApplyRoleRequest(BaseModel):
    role: UserRole
    reason: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def _validate_reason(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if len(value.strip()) < 5:
            raise ValueError("reason must be at least 5 characters")
        return value.strip()


class ApproveRequest(BaseModel):
    decision: ApplicationStatus
    comment: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("decision")
    @classmethod
    def _validate_decision(cls, value: ApplicationStatus) -> ApplicationStatus:
        if value not in (ApplicationStatus.APPROVED, ApplicationStatus.REJECTED):
            raise ValueError("decision must be APPROVED or REJECTED")
        return value


class UserStatusRequest(BaseModel):
    status: UserStatus


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: UserRole
    status: UserStatus
    language: str
    phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class TokenResponse(BaseModel):
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    current: bool = False


class RoleApplicationResponse(BaseModel):
    id: str
    user_id: str
    role: UserRole
    status: ApplicationStatus
    reason: Optional[str] = None
    reviewer_id: Optional[str] = None
    comment: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RoleHistoryResponse(BaseModel):
    id: str
    application_id: str
    from_status: Optional[ApplicationStatus] = None
    to_status: ApplicationStatus
    actor_id: str
    comment: Optional[str] = None
    created_at: datetime


class RoleRecordResponse(BaseModel):
    role: UserRole
    status: ApplicationStatus
    applied_at: datetime
    processed_at: Optional[datetime] = None
    comment: Optional[str] = None
    application_id: Optional[str] = None


class RolesResponse(BaseModel):
    current_role: UserRole
    roles: List[RoleRecordResponse] = Field(default_factory=list)
    pending_application: Optional[RoleApplicationResponse] = None
