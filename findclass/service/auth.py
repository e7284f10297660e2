from __future__ import annotations

from typing import Optional, Tuple

from findclass.config import Settings
from findclass.logging import get_logger
from findclass.service.credentials import CredentialService
from findclass.service.errors import ForbiddenError, InvalidCode, RateLimitedError
from findclass.service.sessions import SessionService, TokenPair
from findclass.service.verification import VerificationService
from findclass.storage.models import User, UserRole, UserStatus, VerificationPurpose

logger = get_logger(__name__)


class AuthService:
    """Account flows that span credentials, verification codes and sessions."""

    def __init__(
        self,
        credentials: CredentialService,
        verification: VerificationService,
        sessions: SessionService,
        settings: Settings,
    ) -> None:
        self.credentials = credentials
        self.verification = verification
        self.sessions = sessions
        self.settings = settings
        self.logger = logger

    def signup(
        self,
        email: str,
        password: str,
        name: str,
        role: UserRole = UserRole.STUDENT,
        *,
        language: Optional[str] = None,
        phone: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        user = self.credentials.register(
            email, password, name, role, language=language, phone=phone
        )
        self._issue_quietly(user.email, VerificationPurpose.REGISTER)
        tokens = self.sessions.login(user, user_agent=user_agent, ip_addr=ip_addr)
        return user, tokens

    def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        user = self.credentials.authenticate(email, password)
        tokens = self.sessions.login(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("user_logged_in", user_id=user.id)
        return user, tokens

    def request_password_reset(self, email: str) -> None:
        """Send a reset code if the account exists; callers always see success."""
        user = self.credentials.find_by_email(email)
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_account")
            return
        self._issue_quietly(user.email, VerificationPurpose.PASSWORD_RESET)

    def reset_password(self, email: str, code: str, new_password: str) -> None:
        self.verification.redeem(email, code, VerificationPurpose.PASSWORD_RESET)
        user = self.credentials.find_by_email(email)
        if user is None:
            # A code can be issued for any address; treat it as spent
            raise InvalidCode()
        self.credentials.change_password(user.id, new_password)
        revoked = self.sessions.logout_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    def set_user_status(self, user_id: str, status: UserStatus) -> User:
        user = self.credentials.set_status(user_id, status)
        if user.status is UserStatus.DISABLED:
            self.sessions.logout_all(user.id)
        return user

    def _issue_quietly(self, email: str, purpose: VerificationPurpose) -> None:
        try:
            self.verification.issue(email, purpose)
        except RateLimitedError:
            self.logger.warning("verification_issue_skipped", purpose=purpose.value)
