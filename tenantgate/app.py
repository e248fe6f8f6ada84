from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantgate.api.error_handling import register_exception_handlers
from tenantgate.api.routes import router
from tenantgate.config import Settings
from tenantgate.logging import get_logger, set_correlation_id
from tenantgate.service.auth import AuthOrchestrator, CleanupReport

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
MIN_MAINTENANCE_TICK_SECONDS = 60

_maintenance_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _maintenance_task
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", signing_kid=runtime.keys.current_key().kid)
    _maintenance_task = asyncio.create_task(
        _run_maintenance(
            runtime.auth,
            runtime.settings.maintenance_interval_seconds,
            runtime.settings.key_rotation_interval_seconds,
        )
    )

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tenantgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (generated when absent)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/.well-known/jwks.json", tags=["discovery"])
async def jwks() -> Dict[str, Any]:
    """Public signing keys, current and retained, for offline token validation."""
    from tenantgate.service.runtime import get_runtime

    return get_runtime().auth.jwks()


@app.get("/.well-known/openid-configuration", tags=["discovery"])
async def openid_configuration() -> Dict[str, Any]:
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    return runtime.auth.openid_configuration(runtime.settings.app_base_url)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Health check with bounded probes of the relational store and the counter cache."""
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _probe(label: str, awaitable) -> bool:
        try:
            return bool(await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error_type=type(exc).__name__)
        return False

    db_ok = await _probe("database", asyncio.to_thread(runtime.store.ping))
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    cache_ok = await _probe("cache", runtime.cache.ping())
    checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}

    return {
        "status": "healthy" if db_ok and cache_ok else "unhealthy",
        "checks": checks,
        "signing_kid": runtime.keys.current_key().kid,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _maintenance_pass(auth: AuthOrchestrator, *, rotate: bool = False) -> CleanupReport:
    report = await auth.cleanup()
    logger.info(
        "maintenance_sweep_complete",
        refresh_records=report.refresh_tokens,
        otp_challenges=report.otp_challenges,
    )
    if rotate:
        await auth.rotate_signing_key()
    return report


async def _run_maintenance(
    auth: AuthOrchestrator, interval_seconds: int, rotation_interval_seconds: int
) -> None:
    """Background loop sweeping expired records and rotating the signing key on schedule."""

    tick = interval_seconds
    if rotation_interval_seconds:
        tick = min(tick, rotation_interval_seconds)
    tick = max(tick, MIN_MAINTENANCE_TICK_SECONDS)
    last_rotation = time.monotonic()
    try:
        while True:
            rotate = bool(rotation_interval_seconds) and (
                time.monotonic() - last_rotation >= rotation_interval_seconds
            )
            try:
                await _maintenance_pass(auth, rotate=rotate)
                if rotate:
                    last_rotation = time.monotonic()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_failed", error_type=type(exc).__name__)
            await asyncio.sleep(tick)
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


def create_app() -> FastAPI:
    return app
