from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthSessionManager
from gatehouse.service.email import EmailService
from gatehouse.service.invites import PrivateInviteIssuer
from gatehouse.service.password_reset import PasswordResetFlow
from gatehouse.service.tokens import TokenCodec
from gatehouse.storage.memory import MemoryCache, MemoryStore
from gatehouse.storage.models import utcnow
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
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
    """Holds the configured stores and services for one application instance.

    Built by the app factory and kept on ``app.state``; nothing here is
    module-global.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        cache: Union[MemoryCache, RedisCache, None] = None,
        mailer: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.clock = clock
        logger.info(
            "runtime_init_started",
            environment=settings.environment.value,
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        if store is None:
            if settings.use_memory_store or settings.test_mode:
                store = MemoryStore(clock=clock)
            else:
                store = PostgresStore(settings.database_url)
        self.store = store

        self.cache = cache if cache is not None else self._build_cache()

        self.email = mailer or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

        self.codec = TokenCodec(
            settings.token_symmetric_key,
            previous_keys=settings.token_previous_keys,
            clock=clock,
        )
        self.auth = AuthSessionManager(
            self.codec,
            self.store,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            block_on_logout=settings.block_session_on_logout,
            clock=clock,
        )
        self.password_reset = PasswordResetFlow(
            users=self.store,
            state=self.cache,
            codec=self.codec,
            mailer=self.email,
            sessions=self.auth,
            code_length=settings.reset_code_length,
            code_ttl_seconds=settings.reset_code_ttl_seconds,
            token_ttl_seconds=settings.reset_token_ttl_seconds,
            cooldown_seconds=settings.reset_request_cooldown_seconds,
            max_confirm_attempts=settings.reset_confirm_max_attempts,
            clock=clock,
        )
        self.invites = PrivateInviteIssuer(
            self.codec,
            self.store,
            ttl=timedelta(minutes=settings.private_invite_ttl_minutes),
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_cache(self) -> Union[MemoryCache, RedisCache]:
        settings = self.settings
        if settings.test_mode:
            return MemoryCache(clock=self.clock)
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(
                    settings.redis_url,
                    socket_timeout=settings.redis_socket_timeout,
                    clock=self.clock,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits and password resets; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running without Redis; rate limits and reset codes are process-local.",
        )
        return MemoryCache(clock=self.clock)

    async def startup(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()
            logger.info("runtime_store_opened", store_type="postgres")

    async def shutdown(self) -> None:
        await self.cache.close()
        await self.store.close()
        logger.info("runtime_shutdown")
