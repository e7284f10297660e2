from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from findclass.config import Settings, StorageBackend, get_settings, reset_settings_cache
from findclass.logging import get_logger
from findclass.service.auth import AuthService
from findclass.service.clock import Clock, SystemClock
from findclass.service.credentials import CredentialService
from findclass.service.email import EmailService
from findclass.service.gate import AuthorizationGate
from findclass.service.role_applications import RoleApplicationService
from findclass.service.sessions import SessionService
from findclass.service.verification import VerificationService
from findclass.storage.memory import MemoryStore
from findclass.storage.postgres import PostgresStore
from findclass.storage.redis_store import RedisStore

logger = get_logger(__name__)

# How often the in-process rate limiter drops buckets that have refilled
LOCAL_BUCKET_SWEEP_SECONDS = 60


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings):
    """Create the persistence adapter selected by ``STORAGE_BACKEND``."""
    backend = settings.storage_backend
    if backend is StorageBackend.MEMORY:
        fs_root = settings.shared_fs_root if settings.persist_memory_store else None
        return MemoryStore(fs_root=fs_root)
    if backend is StorageBackend.REDIS:
        return RedisStore(settings.redis_url)
    return PostgresStore(settings.database_url)


class Runtime:
    """Wires settings, the store and every service together for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        clock: Optional[Clock] = None,
        notifier=None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            storage_backend=self.settings.storage_backend.value,
            database_url=_mask_url_password(self.settings.database_url),
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        self.clock = clock or SystemClock()
        self.store = store if store is not None else build_store(self.settings)
        logger.info("runtime_store_initialized", store=type(self.store).__name__)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_seconds=self.settings.verification_code_ttl_seconds,
        )
        self.notifier = notifier if notifier is not None else self.email

        self.credentials = CredentialService(self.store, self.settings, clock=self.clock)
        self.verification = VerificationService(
            self.store, self.notifier, self.settings, clock=self.clock
        )
        self.sessions = SessionService(self.store, self.store, self.settings, clock=self.clock)
        self.gate = AuthorizationGate(self.sessions, self.store)
        self.roles = RoleApplicationService(self.store, self.store, clock=self.clock)
        self.auth = AuthService(self.credentials, self.verification, self.sessions, self.settings)

        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limits_swept_at = self.clock.now()
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info("runtime_initialized")

    def cleanup_expired(self) -> dict[str, int]:
        """Purge expired sessions and verification codes."""
        return {
            "sessions": self.sessions.cleanup_expired(),
            "verification_codes": self.verification.cleanup_expired(),
        }

    def close(self) -> None:
        self.email.shutdown(wait=False)
        self.store.close()


runtime: Runtime | None = None

_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket keyed by ``key``.

    Uses the store's shared bucket when it has one (Redis), so every worker
    sees the same limit; otherwise falls back to an in-process bucket.
    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    shared_bucket = getattr(runtime.store, "check_rate_limit", None)
    if shared_bucket is not None:
        allowed, remaining, reset_seconds = await asyncio.to_thread(
            shared_bucket, key, limit, window_seconds, cost=cost
        )
    else:
        allowed, remaining, reset_seconds = await _check_local_bucket(
            runtime, key, limit, window_seconds, cost
        )
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


async def _check_local_bucket(
    runtime: Runtime, key: str, limit: int, window_seconds: int, cost: int
) -> Tuple[bool, int, int]:
    now = runtime.clock.now()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if (now - runtime._local_rate_limits_swept_at).total_seconds() >= LOCAL_BUCKET_SWEEP_SECONDS:
            _sweep_full_buckets(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
    return allowed, int(tokens), reset_seconds


def _sweep_full_buckets(runtime: Runtime, now: datetime) -> None:
    # A bucket that has refilled is indistinguishable from a missing one
    full = [key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now]
    for key in full:
        del runtime._local_rate_limits[key]
    runtime._local_rate_limits_swept_at = now
    if full:
        logger.debug("rate_limit_buckets_swept", removed=len(full))
