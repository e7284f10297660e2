from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from findclass.api.error_handling import register_exception_handlers
from findclass.api.routes import router
from findclass.config import Settings
from findclass.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

CLEANUP_INTERVAL_SECONDS = 15 * 60
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_expiry_cleanup(interval_seconds: int) -> None:
    """Periodically purge expired sessions and verification codes."""
    from findclass.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await asyncio.to_thread(get_runtime().cleanup_expired)
                logger.info("expiry_cleanup_completed", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("expiry_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("expiry_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from findclass.service.runtime import get_runtime

    try:
        get_runtime()
        _cleanup_task = asyncio.create_task(_run_expiry_cleanup(CLEANUP_INTERVAL_SECONDS))
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="FindClass Identity API", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line for this request with the client's X-Request-ID, or a fresh one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report storage reachability; 503 when the store does not answer."""
    from findclass.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="storage", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_storage_failed", error=str(exc))
        store_ok = False
    checks["storage"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "backend": runtime.settings.storage_backend.value,
    }
    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)


def create_app() -> FastAPI:
    return app
