from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from idbridge.config import get_settings, reset_settings_cache
from idbridge.logging import get_logger
from idbridge.service.auth import AuthService
from idbridge.service.credentials import CredentialVerifier
from idbridge.service.identity import IdentityResolver
from idbridge.service.oauth import GitHubOAuthClient
from idbridge.service.tokens import TokenManager
from idbridge.storage.memory import MemoryStore
from idbridge.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info("runtime_init_started", store_type=store_type)

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.memory_store_path,
                    encryption_key=self.settings.encryption_key_material,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    encryption_key=self.settings.encryption_key_material,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise

        self.verifier = CredentialVerifier.from_settings(self.settings)
        self.resolver = IdentityResolver(self.store, self.verifier)
        self.tokens = TokenManager(self.store, self.settings, self.verifier)
        self.github = GitHubOAuthClient(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            resolver=self.resolver,
            tokens=self.tokens,
            github=self.github,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            github_oauth_configured=self.settings.github_oauth_configured,
            signup_enabled=self.settings.allow_signup,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    The unlocked check is the fast path; creation re-checks under the lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.use_memory_store:
            raise RuntimeError("runtime reset is only allowed with USE_MEMORY_STORE=true")
        runtime = Runtime()
        return runtime
