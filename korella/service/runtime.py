from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from korella.config import Settings
from korella.logging import get_logger
from korella.service.auth import AuthService
from korella.service.email import EmailService, Mailer
from korella.service.oauth import OAuthProviderClient
from korella.storage.common import AuthStore
from korella.storage.memory import MemoryStore
from korella.storage.postgres import PostgresStore
from korella.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""

    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Service handles owned by one process entry point.

    Built by ``build_runtime`` and closed by whoever built it; nothing here is
    a module-level singleton.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        auth: AuthService,
        *,
        cache=None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.auth = auth

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
        logger.info("runtime_closed")


def _build_store(
    settings: Settings, clock: Optional[Callable[[], datetime]] = None
) -> AuthStore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store = MemoryStore(fs_root=settings.state_dir, clock=clock)
        else:
            store = PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def _build_cache(settings: Settings):
    cache = None
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode avoids binding to per-test event loops
            if settings.test_mode:
                cache = SyncRedisCache(settings.redis_url)
            else:
                cache = RedisCache(settings.redis_url)
            cache.verify_connection()
        except (RedisError, OSError) as exc:
            redis_error = exc
            cache = None

    if cache is None:
        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits, OAuth state and logout deny-lists; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
    return cache


def build_runtime(
    settings: Settings,
    *,
    store: Optional[AuthStore] = None,
    cache=None,
    mailer: Optional[Mailer] = None,
    oauth_client: Optional[OAuthProviderClient] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Runtime:
    """Construct every service explicitly from ``settings``.

    Any collaborator passed in is used as-is; the rest are built from
    configuration. Passing ``store`` without ``cache`` skips Redis entirely.
    """

    logger.info(
        "runtime_init_started",
        use_memory_store=settings.use_memory_store,
        test_mode=settings.test_mode,
    )
    if store is None:
        store = _build_store(settings, clock)
        if cache is None:
            cache = _build_cache(settings)
    auth = AuthService(
        store,
        settings,
        mailer=mailer or EmailService.from_settings(settings),
        cache=cache,
        oauth_client=oauth_client,
        clock=clock,
    )
    return Runtime(settings, store, auth, cache=cache)
