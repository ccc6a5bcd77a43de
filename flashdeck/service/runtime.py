from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from flashdeck.config import IdentityBackend, get_settings, reset_settings_cache
from flashdeck.logging import get_logger
from flashdeck.service.account import AccountService
from flashdeck.service.audit import (
    LoggingAuditSink,
    MemoryAuditSink,
    RedisAuditSink,
    SecurityAuditLog,
)
from flashdeck.service.identity import (
    GoTrueIdentityProvider,
    IdentityProvider,
    LocalIdentityProvider,
)
from flashdeck.service.rate_limit import (
    InMemoryRateLimiter,
    RateLimitPolicy,
    RateLimiter,
    RedisRateLimiter,
)
from flashdeck.service.sessions import SessionLoader
from flashdeck.storage.memory import MemoryStore
from flashdeck.storage.postgres import PostgresProfileStore
from flashdeck.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
        self.settings.validate_identity_backend()
        logger.info(
            "runtime_init_started",
            identity_backend=self.settings.identity_backend.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore()
        self.profiles: Union[MemoryStore, PostgresProfileStore]
        try:
            self.profiles = (
                self.store
                if self.settings.use_memory_store
                else PostgresProfileStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
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

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and the security event stream; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; attempt counters are "
                    "per-process and security events go to logs only."
                ),
                mode=fallback_mode,
            )

        self.identity: IdentityProvider
        if self.settings.identity_backend == IdentityBackend.GOTRUE:
            self.identity = GoTrueIdentityProvider(
                self.settings.identity_url or "",
                api_key=self.settings.identity_api_key,
                service_key=self.settings.identity_service_key,
                timeout=self.settings.identity_timeout_seconds,
            )
        else:
            local = LocalIdentityProvider(
                self.store, token_ttl_seconds=self.settings.access_token_ttl_seconds
            )
            self._seed_dev_user(local)
            self.identity = local

        self.rate_limiter: RateLimiter = (
            RedisRateLimiter(self.cache) if self.cache is not None else InMemoryRateLimiter()
        )

        self.audit_events = MemoryAuditSink() if self.settings.test_mode else None
        sinks = [LoggingAuditSink()]
        if self.cache is not None:
            sinks.append(RedisAuditSink(self.cache))
        if self.audit_events is not None:
            sinks.append(self.audit_events)
        self.audit = SecurityAuditLog(sinks)

        self.session_loader = SessionLoader(
            self.audit,
            public_paths=self.settings.public_paths,
            login_path=self.settings.login_path,
            refresh_threshold_seconds=self.settings.session_refresh_threshold_seconds,
            security_delay_max_ms=self.settings.security_delay_max_ms,
        )
        self.accounts = AccountService(
            self.rate_limiter,
            self.audit,
            self.profiles,
            change_password_policy=RateLimitPolicy(
                "change_password",
                max_attempts=self.settings.change_password_max_attempts,
                window_seconds=self.settings.change_password_window_seconds,
                block_seconds=self.settings.change_password_block_seconds,
            ),
            delete_account_policy=RateLimitPolicy(
                "delete_account",
                max_attempts=self.settings.delete_account_max_attempts,
                window_seconds=self.settings.delete_account_window_seconds,
                block_seconds=self.settings.delete_account_block_seconds,
            ),
            security_delay_max_ms=self.settings.security_delay_max_ms,
        )

        logger.info(
            "runtime_initialized",
            identity_backend=self.settings.identity_backend.value,
            profile_store="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
        )

    def _seed_dev_user(self, provider: LocalIdentityProvider) -> None:
        email = self.settings.dev_user_email
        password = self.settings.dev_user_password
        if not email or not password:
            return
        if self.store.get_user_by_email(email) is not None:
            return
        user = provider.register_user(email, password)
        self.profiles.create_profile(user.id)
        logger.info("dev_user_seeded", user_id=user.id)

    async def close(self) -> None:
        await self.identity.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.profiles, PostgresProfileStore):
            self.profiles.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
