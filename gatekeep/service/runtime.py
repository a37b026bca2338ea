from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.auth import AuthService
from gatekeep.service.permissions import PermissionCatalog
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: postgresql://app:hunter2@db:5432/gatekeep -> postgresql://app:***@db:5432/gatekeep
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


class Runtime:
    """Builds the store and services for one process from a single Settings value."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=settings.shared_fs_root, secret_key=settings.mfa_secret_key
                )
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.auth = AuthService(self.store, settings)
        self.permissions = PermissionCatalog(self.store)
