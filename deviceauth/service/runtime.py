from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from deviceauth.config import Settings, get_settings, reset_settings_cache
from deviceauth.logging import get_logger
from deviceauth.service.gateway import AuthGateway
from deviceauth.service.sessions import SessionManager, SessionStore
from deviceauth.service.tokens import TokenIssuer
from deviceauth.storage.memory import MemoryStore
from deviceauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> SessionStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=settings.db_timeout_seconds,
    )


class Runtime:
    """Holds the per-process service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[SessionStore] = None,
    ):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            database_url=None
            if self.settings.use_memory_store
            else _mask_url_password(self.settings.database_url),
        )
        try:
            self.store: SessionStore = store or build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.tokens = TokenIssuer.from_settings(self.settings)
        self.sessions = SessionManager(self.store, self.tokens)
        self.gateway = AuthGateway(self.tokens)
        logger.info("runtime_init_complete", store_type=type(self.store).__name__)

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking so the common path skips the lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the Runtime singleton and cached settings for isolated test runs."""

    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        runtime = None
        reset_settings_cache()
