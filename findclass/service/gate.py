from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from findclass.logging import get_logger
from findclass.service.credentials import UserStore
from findclass.service.errors import ForbiddenError, Unauthenticated
from findclass.service.sessions import SessionService
from findclass.storage.models import UserRole

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: UserRole
    session_id: str

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthorizationGate:
    """Resolves the caller behind a bearer token.

    The role always comes from the user record, so a promotion takes effect
    on the caller's next request without reissuing tokens.
    """

    def __init__(self, sessions: SessionService, users: UserStore) -> None:
        self.sessions = sessions
        self.users = users

    def authenticate(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise Unauthenticated()
        _, session = self.sessions.verify_access_token(token)
        user = self.users.get_user(session.user_id)
        if user is None or not user.is_active:
            logger.warning("gate_inactive_user", user_id=session.user_id)
            raise Unauthenticated("account unavailable")
        return AuthContext(user_id=user.id, role=user.role, session_id=session.id)

    def require_role(
        self, token: Optional[str], allowed_roles: Iterable[UserRole]
    ) -> AuthContext:
        ctx = self.authenticate(token)
        allowed = {UserRole(r) for r in allowed_roles}
        if ctx.role not in allowed:
            logger.info(
                "gate_forbidden",
                user_id=ctx.user_id,
                role=ctx.role.value,
                allowed=sorted(r.value for r in allowed),
            )
            raise ForbiddenError(
                "insufficient role", detail={"required": sorted(r.value for r in allowed)}
            )
        return ctx
