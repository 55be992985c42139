from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from applicant_auth.config import get_settings, reset_settings_cache
from applicant_auth.logging import get_logger
from applicant_auth.service.auth import AuthService
from applicant_auth.service.brute_force import BruteForceGuard
from applicant_auth.service.email import EmailService
from applicant_auth.service.m2m import M2MCredentialClient
from applicant_auth.service.otp import OtpService
from applicant_auth.service.revocation import RevocationRegistry
from applicant_auth.service.sso import GoogleIdentityVerifier, SsoService
from applicant_auth.service.tokens import TokenService
from applicant_auth.storage.cache import MemoryCache
from applicant_auth.storage.memory import MemoryStore
from applicant_auth.storage.postgres import PostgresStore
from applicant_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login throttling, token revocation and cooldowns; "
                    "start Redis or set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; attempt counters, "
                    "revocations and cooldowns are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.revocation = RevocationRegistry(self.cache)
        self.tokens = TokenService.from_settings(self.settings, revocation=self.revocation)
        self.guard = BruteForceGuard(
            self.cache,
            max_attempts=self.settings.login_max_attempts,
            window_seconds=self.settings.login_window_seconds,
            fail_open=self.settings.login_guard_fail_open,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            activation_ttl_hours=self.settings.activation_token_ttl_hours,
            reset_ttl_minutes=self.settings.reset_token_ttl_minutes,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.google = GoogleIdentityVerifier(
            self.settings.google_client_id,
            tokeninfo_url=self.settings.google_tokeninfo_url,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            guard=self.guard,
            revocation=self.revocation,
            mailer=self.email,
        )
        self.sso = SsoService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            verifier=self.google,
        )
        self.otp = OtpService(self.cache, self.settings, mailer=self.email)
        self.m2m = M2MCredentialClient(
            self.cache,
            token_url=self.settings.m2m_token_url,
            client_id=self.settings.m2m_client_id,
            client_secret=self.settings.m2m_client_secret,
            scope=self.settings.m2m_scope,
            expiry_buffer_seconds=self.settings.m2m_expiry_buffer_seconds,
            single_flight=self.settings.m2m_single_flight,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=not isinstance(self.cache, MemoryCache),
            email_configured=self.email.is_configured,
            google_configured=bool(self.settings.google_client_id),
            m2m_configured=self.m2m.is_configured,
        )


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
        # Close existing connections to avoid event loop issues
        if runtime is not None:
            cache = runtime.cache
            try:
                if isinstance(cache, (SyncRedisCache, MemoryCache)):
                    asyncio.run(cache.close())
                elif cache is not None:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(cache.close())
                    except RuntimeError:
                        asyncio.run(cache.close())
                runtime.store.close()
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
