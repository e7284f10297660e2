from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional, Protocol

from findclass.config import Settings
from findclass.logging import get_logger
from findclass.service.clock import Clock, SystemClock
from findclass.service.credentials import normalize_email
from findclass.service.errors import InvalidCode, RateLimitedError
from findclass.storage.models import VerificationCode, VerificationPurpose, new_id

logger = get_logger(__name__)

CODE_LENGTH = 6


class VerificationCodeStore(Protocol):
    def create_code(self, code: VerificationCode) -> VerificationCode: ...

    def redeem_code(
        self, email: str, code: str, purpose: VerificationPurpose, now: datetime
    ) -> bool:
        """Atomically mark a matching unused, unexpired code as used.

        Returns False when no such code exists, including when a concurrent
        caller redeemed it first.
        """
        ...

    def count_codes_since(
        self, email: str, purpose: VerificationPurpose, since: datetime
    ) -> int: ...

    def delete_expired_codes(self, now: datetime) -> int: ...


class Notifier(Protocol):
    def send(self, email: str, purpose: VerificationPurpose, code: str) -> None: ...


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class VerificationService:
    """Issues and redeems single-use six digit codes."""

    def __init__(
        self,
        store: VerificationCodeStore,
        notifier: Optional[Notifier],
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger

    def issue(self, email: str, purpose: VerificationPurpose) -> None:
        """Create a code and hand it to the notifier.

        Succeeds whether or not ``email`` belongs to a registered user.
        """
        normalized = normalize_email(email)
        purpose = VerificationPurpose(purpose)
        now = self.clock.now()
        window_start = now - timedelta(seconds=self.settings.verification_send_window_seconds)
        recent = self.store.count_codes_since(normalized, purpose, window_start)
        if recent >= self.settings.verification_send_limit:
            self.logger.warning("verification_rate_limited", purpose=purpose.value)
            raise RateLimitedError(
                "too many verification codes requested, try again later",
                detail={"retry_after": self.settings.verification_send_window_seconds},
            )
        record = VerificationCode(
            id=new_id(),
            email=normalized,
            code=generate_code(),
            purpose=purpose,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.verification_code_ttl_seconds),
        )
        self.store.create_code(record)
        self.logger.info("verification_code_issued", purpose=purpose.value, verification_id=record.id)
        self._dispatch(normalized, purpose, record.code)

    def redeem(self, email: str, code: str, purpose: VerificationPurpose) -> None:
        code = (code or "").strip()
        purpose = VerificationPurpose(purpose)
        if len(code) != CODE_LENGTH or not code.isdigit():
            raise InvalidCode()
        redeemed = self.store.redeem_code(
            normalize_email(email), code, purpose, self.clock.now()
        )
        if not redeemed:
            self.logger.info("verification_code_rejected", purpose=purpose.value)
            raise InvalidCode()
        self.logger.info("verification_code_redeemed", purpose=purpose.value)

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_codes(self.clock.now())
        if removed:
            self.logger.info("verification_codes_purged", count=removed)
        return removed

    def _dispatch(self, email: str, purpose: VerificationPurpose, code: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send(email, purpose, code)
        except Exception as exc:
            # Delivery is fire-and-forget; the code is already stored
            self.logger.error(
                "verification_notify_failed",
                purpose=purpose.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
