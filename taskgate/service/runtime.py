from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.service.auth import AuthService
from taskgate.service.email import EmailService
from taskgate.service.gate import AuthGate
from taskgate.service.passwords import PasswordHasher
from taskgate.service.rate_limit import RateLimiter
from taskgate.service.sessions import SessionRegistry
from taskgate.service.tokens import TokenIssuer
from taskgate.storage.memory import MemoryStore
from taskgate.storage.models import utcnow
from taskgate.storage.postgres import PostgresStore
from taskgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns the service graph for one application instance.

    Built once from ``Settings`` when the app starts and closed at shutdown;
    request handlers reach it through ``request.app.state.runtime``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            if settings.use_memory_store:
                self.store: Union[MemoryStore, PostgresStore] = MemoryStore(
                    fs_root=settings.shared_fs_root
                )
            else:
                if not settings.database_url:
                    raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
                self.store = PostgresStore(settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                # Sync client in test mode avoids binding the pool to a test event loop
                cache = (
                    SyncRedisCache(settings.redis_url)
                    if settings.test_mode
                    else RedisCache(settings.redis_url)
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh tokens and rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; refresh tokens and rate "
                    "limits are process-local."
                ),
                mode=fallback_mode,
            )

        self.hasher = PasswordHasher(settings)
        self.tokens = TokenIssuer(settings, clock=self.clock)
        self.sessions = SessionRegistry(self.cache, clock=self.clock)
        self.rate_limiter = RateLimiter(
            self.cache,
            clock=self.clock,
            sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
        )
        self.gate = AuthGate(self.store, self.tokens)
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.tokens,
            self.sessions,
            settings,
            clock=self.clock,
        )
        self.email = EmailService.from_settings(settings)
        logger.info("runtime_init_completed", redis=bool(self.cache))

    async def close(self) -> None:
        if self.cache:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        self.store.close()
        logger.info("runtime_closed")


def build_runtime(
    settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
) -> Runtime:
    return Runtime(settings, clock=clock)
