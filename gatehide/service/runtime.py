from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatehide.config import Settings
from gatehide.logging import get_logger
from gatehide.service.auth import AuthService, AuthStore
from gatehide.service.notifications import (
    EmailNotificationDispatcher,
    NotificationDispatcher,
)
from gatehide.storage.memory import MemoryStore
from gatehide.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> AuthStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.memory_store_path)
    return PostgresStore(settings.database_url)


class Runtime:
    """Explicitly wired service graph for one application instance.

    Nothing here is process-global: the app factory builds a Runtime and
    stores it on ``app.state``; tests build their own with fakes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[AuthStore] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.settings = settings
        store_type = "memory" if settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        if store is None:
            try:
                store = build_store(settings)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    dsn=None if settings.use_memory_store else _mask_url_password(settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)
        self.store: AuthStore = store
        self.notifier: NotificationDispatcher = (
            notifier or EmailNotificationDispatcher.from_settings(settings)
        )
        self.auth = AuthService.build(self.store, settings, self.notifier)
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            notifier=type(self.notifier).__name__,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
