from __future__ import annotations

from concurrent.futures import Executor
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher

from otplogin.config import Settings, get_settings
from otplogin.logging import get_logger
from otplogin.service.attempts import AttemptTracker
from otplogin.service.audit import AuditService
from otplogin.service.auth import AuthOrchestrator
from otplogin.service.email import EmailDispatcher, EmailService
from otplogin.service.otp import OtpStore
from otplogin.service.rate_limit import RateLimiter
from otplogin.service.revocation import RevocationRegistry
from otplogin.service.tokens import TokenService
from otplogin.service.users import UserService
from otplogin.storage.failover import FailoverCache, PrimaryCache
from otplogin.storage.memory import MemoryStore
from otplogin.storage.memory_cache import MemoryCache
from otplogin.storage.postgres import PostgresStore
from otplogin.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: Store = MemoryStore(fs_root=settings.data_dir)
        else:
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
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


def _build_cache(settings: Settings) -> FailoverCache:
    """Redis in front of an in-process fallback.

    Redis must be reachable at startup unless TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV is set; after startup an outage only moves
    traffic to the fallback until the next successful probe.
    """
    primary: Optional[PrimaryCache] = None
    redis_error: Optional[Exception] = None
    if settings.redis_url:
        try:
            # sync client in test mode so the pool is not tied to one event loop
            if settings.test_mode:
                candidate: PrimaryCache = SyncRedisCache(settings.redis_url)
            else:
                candidate = RedisCache(settings.redis_url)
            candidate.verify_connection()
            primary = candidate
        except Exception as exc:
            redis_error = exc

    if primary is None:
        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits and OTP state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate buckets and OTP "
                "records are process-local only."
            ),
            mode=fallback_mode,
        )
    return FailoverCache(
        primary,
        MemoryCache(),
        probe_interval=settings.cache_probe_interval_seconds,
    )


class Runtime:
    """Holds the service singletons for one app instance."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        cache: Optional[FailoverCache] = None,
        email: Optional[EmailService] = None,
        mail_executor: Optional[Executor] = None,
        otp_hasher: Optional[PasswordHasher] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else _build_store(self.settings)
        self.cache = cache if cache is not None else _build_cache(self.settings)

        self.email = email or EmailService.from_settings(self.settings)
        self.mailer = EmailDispatcher(self.email, executor=mail_executor)

        self.rate_limiter = RateLimiter.from_settings(self.cache, self.settings)
        self.attempts = AttemptTracker.from_settings(self.store, self.settings)
        self.otp = OtpStore.from_settings(self.cache, self.settings, hasher=otp_hasher)
        self.tokens = TokenService.from_settings(self.settings)
        self.revocation = RevocationRegistry(self.store, self.tokens)
        self.audit = AuditService(self.store)
        self.users = UserService(self.store, self.attempts, mailer=self.mailer)
        self.auth = AuthOrchestrator(
            users=self.store,
            otp=self.otp,
            tokens=self.tokens,
            revocation=self.revocation,
            attempts=self.attempts,
            audit=self.audit,
            mailer=self.mailer,
        )
        logger.info(
            "runtime_initialized",
            cache_backend=self.cache.backend_name,
            email_configured=self.email.is_configured,
        )

    def sweep(self) -> int:
        """One maintenance pass: dead revocations plus idle in-process cache entries."""
        removed = self.revocation.sweep_expired()
        pruned = self.cache.prune_expired()
        if pruned:
            logger.debug("cache_fallback_pruned", entries=pruned)
        return removed

    async def close(self) -> None:
        self.mailer.shutdown(wait=False)
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")
