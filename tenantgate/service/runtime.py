from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tenantgate.config import KeyBackendKind, Settings, get_settings, reset_settings_cache
from tenantgate.logging import get_logger
from tenantgate.service.auth import AuthOrchestrator
from tenantgate.service.credentials import CredentialStore
from tenantgate.service.keys import KeyBackend, KeyManager, RemoteHSMBackend, SoftwareKeyBackend
from tenantgate.service.ledger import RefreshTokenLedger
from tenantgate.service.notifier import WhatsAppNotifier
from tenantgate.service.otp import OTPManager
from tenantgate.service.rate_limit import RateLimiter
from tenantgate.service.tokens import TokenService
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.memory_cache import MemoryCache
from tenantgate.storage.postgres import PostgresStore
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
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
        return url
    except ValueError:
        return "***url_parse_error***"


def build_key_backend(settings: Settings) -> KeyBackend:
    if settings.key_backend == KeyBackendKind.HSM:
        return RemoteHSMBackend(
            settings.hsm_url or "",
            api_key=settings.hsm_api_key,
            timeout=settings.hsm_timeout_seconds,
            key_size=settings.key_size,
        )
    seed = None
    if settings.signing_key_path:
        seed = Path(settings.signing_key_path).read_bytes()
    return SoftwareKeyBackend(settings.key_size, private_key_pem=seed)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            use_memory_cache=self.settings.use_memory_cache,
            key_backend=self.settings.key_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.db_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[MemoryCache, RedisCache]
        if self.settings.use_memory_cache:
            if not self.settings.test_mode:
                logger.warning(
                    "memory_cache_enabled",
                    message="rate-limit windows are per-process; do not run more than one instance",
                )
            self.cache = MemoryCache()
        else:
            cache = RedisCache(
                self.settings.redis_url, socket_timeout=self.settings.cache_timeout_seconds
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                # Counters must be shared; never fall back silently
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                )
                raise RuntimeError(
                    "Redis is required for login throttling and OTP issuance limits; "
                    "start Redis or set USE_MEMORY_CACHE=true for single-process development."
                ) from exc
            self.cache = cache

        self.keys = KeyManager(
            build_key_backend(self.settings),
            retention_seconds=self.settings.effective_key_retention_seconds,
            max_retained_keys=self.settings.max_retained_keys,
            initial_key_ref=(
                self.settings.hsm_key_id
                if self.settings.key_backend == KeyBackendKind.HSM
                else None
            ),
        )
        self.limiter = RateLimiter(self.cache)
        self.notifier = WhatsAppNotifier(
            api_url=self.settings.whatsapp_api_url,
            api_token=self.settings.whatsapp_api_token,
            template=self.settings.whatsapp_template,
            language=self.settings.whatsapp_language,
            timeout=self.settings.notifier_timeout_seconds,
        )
        self.credentials = CredentialStore(self.store, self.limiter, self.settings)
        self.otp = OTPManager(self.store, self.limiter, self.notifier, self.settings)
        self.tokens = TokenService(self.keys, self.settings)
        self.ledger = RefreshTokenLedger(self.store, self.settings.refresh_fingerprint_key or "")
        self.auth = AuthOrchestrator(
            credentials=self.credentials,
            otp=self.otp,
            tokens=self.tokens,
            ledger=self.ledger,
            keys=self.keys,
            settings=self.settings,
        )
        logger.info("runtime_init_completed", signing_kid=self.keys.current_key().kid)

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()
        backend = self.keys.backend
        if isinstance(backend, RemoteHSMBackend):
            backend.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
