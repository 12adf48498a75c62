from __future__ import annotations

from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from studyauth.config import Settings, get_settings
from studyauth.logging import get_logger
from studyauth.service.auth import AuthService
from studyauth.service.notifications import (
    EmailSender,
    NotificationSender,
    NotificationService,
    SmsGatewaySender,
)
from studyauth.service.otp import OTPStore
from studyauth.service.passwords import Argon2PasswordHasher, PasswordHasher
from studyauth.service.sessions import SessionRegistry
from studyauth.service.tokens import TokenCodec
from studyauth.storage.memory import MemoryStore
from studyauth.storage.postgres import PostgresStore
from studyauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in ``url`` for logging.

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
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds the auth components for one process from ``Settings``.

    Collaborators can be swapped in (tests pass a recording notifier or a
    cheap hasher); everything else is derived from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Union[MemoryStore, PostgresStore]] = None,
        cache: Optional[RedisCache] = None,
        notifier: Optional[NotificationSender] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.hasher = hasher or Argon2PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=self.settings.token_leeway_seconds),
        )
        self.sessions = SessionRegistry(
            self.store,
            self.cache,
            refresh_ttl=self.codec.refresh_ttl,
            timeout=self.settings.store_timeout_seconds,
        )
        self.otp = OTPStore(
            self.store,
            self.cache,
            hash_secret=self.settings.otp_hash_secret,
            code_length=self.settings.otp_code_length,
            ttl_seconds=self.settings.otp_ttl_seconds,
            max_attempts=self.settings.otp_max_attempts,
            timeout=self.settings.store_timeout_seconds,
        )
        notification_dev_mode = self.settings.test_mode or self.settings.notification_dev_mode
        self.notifier = notifier or NotificationService(
            EmailSender(
                smtp_host=self.settings.smtp_host,
                smtp_port=self.settings.smtp_port,
                smtp_user=self.settings.smtp_user,
                smtp_password=self.settings.smtp_password,
                smtp_use_tls=self.settings.smtp_use_tls,
                from_email=self.settings.email_from_address,
                from_name=self.settings.email_from_name,
                timeout=self.settings.notification_timeout_seconds,
                dev_mode=notification_dev_mode,
            ),
            SmsGatewaySender(
                base_url=self.settings.sms_gateway_base_url,
                api_key=self.settings.sms_gateway_api_key,
                sender_id=self.settings.sms_sender_id,
                timeout=self.settings.notification_timeout_seconds,
                dev_mode=notification_dev_mode,
            ),
        )
        self.auth = AuthService(
            self.store,
            self.codec,
            self.sessions,
            self.otp,
            self.hasher,
            self.notifier,
            self.settings,
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
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

    def _build_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the shared revocation set and OTP challenges; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocations and OTP "
                "challenges live in the credential store."
            ),
            mode=fallback_mode,
        )
        return None

    async def close(self) -> None:
        if self.cache:
            await self.cache.close()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
