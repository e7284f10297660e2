from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Protocol, Tuple

from findclass.config import Settings
from findclass.logging import get_logger
from findclass.service.clock import Clock, SystemClock
from findclass.service.credentials import UserStore
from findclass.service.errors import InvalidToken, Unauthenticated
from findclass.storage.models import Session, User, new_id

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def rotate_session(
        self, old_session_id: str, old_token_hash: str, new_session: Session
    ) -> bool:
        """Replace a session row only if it still carries ``old_token_hash``.

        Exactly one of several concurrent rotations of the same row succeeds.
        """
        ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionService:
    """Issues signed access/refresh pairs backed by revocable session rows.

    Tokens are HS256 JWTs. Access tokens carry ``token_type=access`` and the
    jti recorded on the session row; refresh tokens carry
    ``token_type=refresh`` and are only ever stored as a SHA-256 digest.
    """

    def __init__(
        self,
        store: SessionStore,
        users: UserStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.users = users
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger
        self._leeway = timedelta(seconds=settings.token_leeway_seconds)

    def login(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        session, tokens = self._new_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.store.create_session(session)
        self.logger.info("session_created", user_id=user.id, session_id=session.id)
        return tokens

    def refresh(self, refresh_token: str) -> TokenPair:
        payload = self._decode_jwt(refresh_token or "")
        if not payload or payload.get("token_type") != REFRESH:
            raise InvalidToken()
        token_hash = hash_refresh_token(refresh_token)
        session = self.store.get_session_by_token_hash(token_hash)
        now = self.clock.now()
        if (
            session is None
            or session.id != payload.get("sid")
            or session.user_id != payload.get("sub")
            or session.is_expired(now)
        ):
            raise InvalidToken()
        user = self.users.get_user(session.user_id)
        if user is None or not user.is_active:
            raise InvalidToken()
        new_session, tokens = self._new_session(
            user, user_agent=session.user_agent, ip_addr=session.ip_addr
        )
        if not self.store.rotate_session(session.id, token_hash, new_session):
            # Lost a race with a concurrent refresh of the same token
            self.logger.warning("session_rotation_conflict", session_id=session.id)
            raise InvalidToken()
        self.logger.info(
            "session_rotated",
            user_id=user.id,
            old_session_id=session.id,
            session_id=new_session.id,
        )
        return tokens

    def logout(self, access_token: str) -> None:
        payload = self._decode_jwt(access_token or "")
        if not payload or payload.get("token_type") != ACCESS or not payload.get("sid"):
            raise Unauthenticated("invalid access token")
        self.revoke_session(payload["sid"])

    def revoke_session(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        self.logger.info("session_revoked", session_id=session_id, removed=removed)
        return removed

    def logout_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id=except_session_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=removed)
        return removed

    def list_sessions(self, user_id: str) -> List[Session]:
        now = self.clock.now()
        sessions = [s for s in self.store.list_user_sessions(user_id) if not s.is_expired(now)]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self.clock.now())
        if removed:
            self.logger.info("expired_sessions_purged", count=removed)
        return removed

    def verify_access_token(self, token: str) -> Tuple[dict[str, Any], Session]:
        """Check signature, expiry and the backing session row of an access token."""
        payload = self._decode_jwt(token or "")
        if not payload or payload.get("token_type") != ACCESS:
            raise Unauthenticated("invalid access token")
        session_id = payload.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if session is None or session.is_expired(self.clock.now()):
            raise Unauthenticated("session expired or revoked")
        if session.token_jti != payload.get("jti") or session.user_id != payload.get("sub"):
            raise Unauthenticated("session expired or revoked")
        return payload, session

    def _new_session(
        self,
        user: User,
        *,
        user_agent: Optional[str],
        ip_addr: Optional[str],
    ) -> Tuple[Session, TokenPair]:
        now = self.clock.now()
        session_id = new_id()
        access_jti = new_id()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session_id,
            "role": user.role.value,
        }
        access_token = self._encode_jwt(
            {**claims, "token_type": ACCESS, "jti": access_jti, "exp": int(access_exp.timestamp())}
        )
        refresh_token = self._encode_jwt(
            {**claims, "token_type": REFRESH, "jti": new_id(), "exp": int(refresh_exp.timestamp())}
        )
        session = Session.new(
            user.id,
            token_jti=access_jti,
            token_hash=hash_refresh_token(refresh_token),
            now=now,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            session_id=session_id,
        )
        tokens = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            expires_at=access_exp,
            refresh_expires_at=session.expires_at,
        )
        return session, tokens

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (self.clock.now() - self._leeway).timestamp():
            return None
        return payload
