from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from aegisid.config import get_settings, reset_settings_cache
from aegisid.logging import get_logger
from aegisid.service.auth import AuthOrchestrator
from aegisid.service.backup_codes import BackupCodeService
from aegisid.service.cleanup import CleanupJob
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.credentials import CredentialStore
from aegisid.service.email import EmailDispatcher, EmailSender
from aegisid.service.email_codes import EmailCodeService
from aegisid.service.geolocation import GeolocationClient, GeoLookup
from aegisid.service.mfa import MFAEngine
from aegisid.service.passwords import PasswordService
from aegisid.service.policy import MFAPolicyService
from aegisid.service.security import SecurityDetector
from aegisid.service.sessions import SessionManager
from aegisid.service.tokens import TokenService
from aegisid.service.trusted_devices import TrustedDeviceService
from aegisid.storage.errors import StoreUnavailable
from aegisid.storage.memory import MemoryStore
from aegisid.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` so it can be logged."""
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
    """Holds singleton service instances for the FastAPI app.

    Construction is where misconfiguration becomes fatal: no signing key, no
    usable MFA encryption key or an unreachable database all raise
    ``RuntimeError`` before the app accepts traffic.
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        email_sender: Optional[EmailSender] = None,
        geolocation: Optional[GeoLookup] = None,
    ) -> None:
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET must be set before starting the service")

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            if settings.use_memory_store:
                self.store = MemoryStore(mfa_encryption_key=settings.mfa_encryption_key)
            else:
                self.store = PostgresStore(
                    settings.database_url, mfa_encryption_key=settings.mfa_encryption_key
                )
        except StoreUnavailable as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(settings.database_url),
                error=str(exc),
            )
            raise RuntimeError("database is unreachable") from exc
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        if not self.store.ping():
            raise RuntimeError("database is unreachable")
        logger.info("runtime_store_initialized", store_type=store_type)

        self.email = email_sender or EmailDispatcher(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.email_send_timeout_seconds,
        )
        self.geolocation = geolocation or GeolocationClient(
            settings.geolocation_url, timeout=settings.geolocation_timeout_seconds
        )

        self.passwords = PasswordService(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.credentials = CredentialStore(self.store, self.passwords, settings, self.clock)
        self.tokens = TokenService(settings, self.clock)
        self.policy = MFAPolicyService(self.store, settings, self.clock)
        self.email_codes = EmailCodeService(self.store, settings, self.email, self.clock)
        self.backup_codes = BackupCodeService(self.store, self.clock)
        self.trusted_devices = TrustedDeviceService(self.store, settings, self.clock)
        self.mfa = MFAEngine(
            self.store,
            settings,
            credentials=self.credentials,
            email_codes=self.email_codes,
            backup_codes=self.backup_codes,
            trusted_devices=self.trusted_devices,
            policy=self.policy,
            clock=self.clock,
        )
        self.sessions = SessionManager(
            self.store,
            settings,
            self.tokens,
            geolocation=self.geolocation,
            clock=self.clock,
        )
        self.security = SecurityDetector(
            self.store, settings, sender=self.email, clock=self.clock
        )
        self.auth = AuthOrchestrator(
            settings,
            credentials=self.credentials,
            tokens=self.tokens,
            mfa=self.mfa,
            sessions=self.sessions,
            security=self.security,
            policy=self.policy,
            clock=self.clock,
        )
        self.cleanup = CleanupJob(
            self.sessions,
            self.store,
            interval_seconds=settings.session_cleanup_interval_seconds,
            clock=self.clock,
        )
        logger.info(
            "runtime_init_complete",
            store_type=store_type,
            mfa_enabled=settings.enable_mfa,
            smtp_configured=bool(settings.smtp_host),
            rotate_refresh_tokens=settings.rotate_refresh_tokens,
        )

    async def close(self) -> None:
        await self.cleanup.stop()
        await self.security.drain_alerts()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check guards first construction.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Keyword arguments are passed to ``Runtime`` so tests can inject a clock,
    an email sender or a geolocation stub.
    """
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.store.close()
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**overrides)
        return runtime
