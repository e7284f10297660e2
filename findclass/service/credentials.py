from __future__ import annotations

import secrets
import unicodedata
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from findclass.config import Settings
from findclass.logging import get_logger
from findclass.service.clock import Clock, SystemClock
from findclass.service.errors import (
    AccountDisabled,
    DuplicateEmail,
    InvalidCredentials,
    NotFoundError,
    ValidationError,
)
from findclass.storage.errors import USER_EMAIL_UNIQUE, ConstraintViolation
from findclass.storage.models import User, UserRole, UserStatus, new_id

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, user: User) -> User:
        """Insert ``user``; raises ConstraintViolation if the email is taken."""
        ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        updated_at,
        name: Optional[str] = None,
        language: Optional[str] = None,
        phone: Optional[str] = None,
        clear_phone: bool = False,
        password_hash: Optional[str] = None,
        status: Optional[UserStatus] = None,
    ) -> Optional[User]: ...


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


class CredentialService:
    """User records and password verification.

    The role column is written here only once, at creation. Promotion goes
    through the role application workflow.
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def register(
        self,
        email: str,
        password: str,
        name: str,
        role: UserRole = UserRole.STUDENT,
        *,
        language: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        if not password:
            raise ValidationError("password required", detail={"field": "password"})
        display_name = (name or "").strip()
        if not display_name:
            raise ValidationError("name required", detail={"field": "name"})
        now = self.clock.now()
        user = User(
            id=new_id(),
            email=normalized,
            password_hash=self.hash_password(password),
            name=display_name,
            role=UserRole(role),
            status=UserStatus.ACTIVE,
            language=language or self.settings.default_language,
            phone=phone or None,
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.store.create_user(user)
        except ConstraintViolation as exc:
            if exc.constraint == USER_EMAIL_UNIQUE:
                raise DuplicateEmail(detail={"field": "email"}) from exc
            raise
        self.logger.info("user_registered", user_id=created.id, role=created.role.value)
        return created

    def authenticate(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            # Burn a comparable amount of time so unknown emails cannot be timed
            self._verify_hash(self._get_dummy_hash(), password)
            raise InvalidCredentials()
        if not self._verify_hash(user.password_hash, password):
            self.logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredentials()
        if not user.is_active:
            self.logger.warning("login_account_disabled", user_id=user.id)
            raise AccountDisabled()
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(normalize_email(email))

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        language: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        """Patch name, language or phone. An empty phone clears it."""
        if name is not None and not name.strip():
            raise ValidationError("name cannot be empty", detail={"field": "name"})
        updated = self.store.update_user(
            user_id,
            updated_at=self.clock.now(),
            name=name.strip() if name is not None else None,
            language=language or None,
            phone=phone or None,
            clear_phone=phone == "",
        )
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_profile_updated", user_id=user_id)
        return updated

    def change_password(self, user_id: str, new_password: str) -> User:
        updated = self.store.update_user(
            user_id,
            updated_at=self.clock.now(),
            password_hash=self.hash_password(new_password),
        )
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_password_changed", user_id=user_id)
        return updated

    def set_status(self, user_id: str, status: UserStatus) -> User:
        updated = self.store.update_user(
            user_id, updated_at=self.clock.now(), status=UserStatus(status)
        )
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_status_changed", user_id=user_id, status=updated.status.value)
        return updated

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        return self._dummy_hash
