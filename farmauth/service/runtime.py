from __future__ import annotations

import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from farmauth.config import get_settings, reset_settings_cache
from farmauth.logging import get_logger
from farmauth.service.auth import AuthService
from farmauth.service.dispatch import (
    ChannelDispatcher,
    Dispatcher,
    EmailDispatcher,
    LogDispatcher,
    SmsDispatcher,
)
from farmauth.service.email import EmailService
from farmauth.service.otp import OTPManager
from farmauth.service.tokens import TokenService
from farmauth.storage.memory import MemoryChallengeStore, MemoryStore
from farmauth.storage.models import Channel
from farmauth.storage.postgres import PostgresStore
from farmauth.storage.redis_cache import RedisChallengeStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        if self.settings.redis_url:
            challenges = RedisChallengeStore(
                self.settings.redis_url,
                retention_seconds=self.settings.otp_retention_minutes * 60,
            )
            try:
                challenges.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; start Redis or unset "
                    "REDIS_URL to keep challenges in process memory."
                ) from exc
            self.challenges = challenges
        else:
            if not self.settings.test_mode:
                logger.warning(
                    "redis_disabled_fallback",
                    message=(
                        "OTP challenges are held in process memory; run a single "
                        "instance or configure REDIS_URL."
                    ),
                )
            self.challenges = MemoryChallengeStore(
                retention_seconds=self.settings.otp_retention_minutes * 60
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.app_name,
            timeout=self.settings.dispatch_timeout_seconds,
        )
        self.dispatcher = self._build_dispatcher()

        self.otp = OTPManager(
            self.challenges,
            self.store,
            self.dispatcher,
            code_length=self.settings.otp_length,
            ttl=timedelta(minutes=self.settings.otp_ttl_minutes),
            dispatch_timeout=self.settings.dispatch_timeout_seconds,
            app_name=self.settings.app_name,
        )
        self.tokens = TokenService(
            self.store,
            access_secret=self.settings.access_token_secret,
            refresh_secret=self.settings.refresh_token_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.auth = AuthService(self.store, self.otp, self.tokens)

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.challenges, RedisChallengeStore),
            sms_configured=bool(self.settings.sms_gateway_url),
            email_configured=self.email.is_configured,
        )

    def _build_dispatcher(self) -> Dispatcher:
        routes: Dict[Channel, Dispatcher] = {}
        if self.settings.sms_gateway_url:
            routes[Channel.PHONE] = SmsDispatcher(
                self.settings.sms_gateway_url,
                api_key=self.settings.sms_gateway_api_key,
                sender_id=self.settings.sms_sender_id,
                timeout=self.settings.dispatch_timeout_seconds,
            )
        else:
            # Codes land in the log until a gateway is configured
            routes[Channel.PHONE] = LogDispatcher()
        routes[Channel.EMAIL] = EmailDispatcher(
            self.email, subject=f"Your {self.settings.app_name} verification code"
        )
        return ChannelDispatcher(routes)

    async def close(self) -> None:
        if isinstance(self.challenges, RedisChallengeStore):
            await self.challenges.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
