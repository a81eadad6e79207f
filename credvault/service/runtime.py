from __future__ import annotations

import threading
from typing import Optional

from credvault.config import Settings, get_settings, reset_settings_cache
from credvault.logging import get_logger
from credvault.service.auth import AuthService
from credvault.service.email import EmailService
from credvault.storage.common import CredentialStore
from credvault.storage.memory import MemoryStore
from credvault.storage.postgres import PostgresStore

logger = get_logger(__name__)


def build_store(settings: Settings) -> CredentialStore:
    if settings.use_memory_store:
        return MemoryStore(
            fs_root=settings.shared_fs_root,
            lock_timeout_seconds=settings.store_timeout_seconds,
        )
    return PostgresStore(settings.database_url, timeout_seconds=settings.store_timeout_seconds)


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
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            verification_ttl_hours=self.settings.email_verification_ttl_hours,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.auth = AuthService(self.store, self.settings, notifier=self.email)
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            email_configured=self.email.is_configured,
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
