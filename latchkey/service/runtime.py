from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from latchkey.config import Settings, get_settings, reset_settings_cache
from latchkey.logging import get_logger
from latchkey.service.auth import AuthService
from latchkey.service.email import Mailer, SMTPMailer
from latchkey.service.oauth import GoogleOAuthAuthenticator
from latchkey.service.otp import EmailOTPAuthenticator
from latchkey.service.session import SessionManager
from latchkey.storage.memory import MemoryStore
from latchkey.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
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
    """Holds the singleton store, verifiers and services for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        mailer: Optional[Mailer] = None,
        store: Union[MemoryStore, PostgresStore, None] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            environment=self.settings.environment,
        )

        if store is not None:
            self.store = store
        elif self.settings.use_memory_store:
            self.store = MemoryStore(fs_root=self.settings.state_dir)
        else:
            self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_postgres_configured",
                database_url=_mask_url_password(self.settings.database_url),
            )

        self.mailer: Mailer = mailer or SMTPMailer.from_settings(self.settings)
        self.sessions = SessionManager(self.store, self.settings)
        self.auth = AuthService(self.store, self.sessions)

        self.email_otp = EmailOTPAuthenticator.from_settings(
            self.store, self.mailer, self.settings
        )
        self.auth.register(self.email_otp)

        self.google: Optional[GoogleOAuthAuthenticator] = None
        if self.settings.google_configured:
            self.google = GoogleOAuthAuthenticator.from_settings(self.settings)
            self.auth.register(self.google)
        else:
            logger.info("google_oauth_disabled", reason="client credentials not configured")

        logger.info("runtime_init_complete", providers=self.auth.provider_types)

    async def startup(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()
            await self.store.ensure_schema()

    async def shutdown(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings so tests start clean."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        if get_settings().is_production:
            raise RuntimeError("runtime reset is not allowed in production")
        runtime = None
