from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatehouse.config import Settings, get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.accounts import AccountService
from gatehouse.service.auth import Authenticator, AuthService, AuthStore
from gatehouse.service.confirmation import ConfirmationService
from gatehouse.service.cookies import RememberCookieCipher, SessionCookieSigner
from gatehouse.service.email import EmailService, Mailer, OutboxMailer
from gatehouse.service.password_reset import PasswordResetService
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.tokens import TokenCodec, TokenPurpose
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a DSN so it can be logged."""
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


def _build_store(settings: Settings) -> AuthStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url)


def _build_mailer(settings: Settings) -> Mailer:
    if settings.test_mode:
        return OutboxMailer()
    return EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.mailer_from_email,
        from_name=settings.email_from_name,
        base_url=settings.app_base_url,
        token_ttl_minutes=settings.confirmation_token_ttl_minutes,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        remember_max_age = self.settings.remember_cookie_max_age_days * 24 * 60 * 60
        self.hasher = PasswordHasher()
        self.codec = TokenCodec(
            self.settings.secret_key,
            ttls={
                TokenPurpose.CONFIRM_EMAIL: timedelta(
                    minutes=self.settings.confirmation_token_ttl_minutes
                ),
                TokenPurpose.RESET_PASSWORD: timedelta(
                    minutes=self.settings.password_reset_token_ttl_minutes
                ),
            },
        )
        self.session_signer = SessionCookieSigner(self.settings.secret_key)
        self.remember_cipher = RememberCookieCipher(
            self.settings.secret_key, max_age_seconds=remember_max_age
        )
        self.mailer = _build_mailer(self.settings)
        self.authenticator = Authenticator(self.store, self.hasher)
        self.auth = AuthService(
            self.store,
            self.authenticator,
            self.remember_cipher,
            remember_cookie_name=self.settings.remember_cookie_name,
            remember_max_age_seconds=remember_max_age,
        )
        self.confirmations = ConfirmationService(self.store, self.codec, self.mailer)
        self.password_resets = PasswordResetService(
            self.store,
            self.codec,
            self.mailer,
            self.hasher,
            password_min_length=self.settings.password_min_length,
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.authenticator,
            self.auth,
            self.confirmations,
            password_min_length=self.settings.password_min_length,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            mailer=type(self.mailer).__name__,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        runtime = Runtime(settings)
        return runtime
