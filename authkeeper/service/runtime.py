from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkeeper.config import get_settings, reset_settings_cache
from authkeeper.logging import get_logger
from authkeeper.service.auth import AuthService
from authkeeper.service.crypto import KeyMaterial, SessionCipher
from authkeeper.service.identity import (
    GoogleIdentityProvider,
    IdentityExchangeClient,
    IdentityProvider,
    StaticIdentityProvider,
    UserDirectory,
)
from authkeeper.service.tokens import TokenCodec
from authkeeper.storage.common import SessionStore
from authkeeper.storage.memory import MemorySessionStore, MemoryUserDirectory
from authkeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide key material, store and services.

    Keys and cipher are built once here and only read afterwards.
    """

    def __init__(
        self,
        *,
        provider: Optional[IdentityProvider] = None,
        directory: Optional[UserDirectory] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            jwt_algorithm=self.settings.jwt_algorithm,
            session_mode=self.settings.session_mode.value,
        )

        self.keys = KeyMaterial.from_settings(self.settings)
        if not self.keys.signing_key or not self.keys.verification_key:
            raise RuntimeError(
                f"signing keys for {self.keys.algorithm} are not configured; "
                "set JWT_SECRET (HS*) or JWT_PRIVATE_KEY/JWT_PUBLIC_KEY"
            )
        if not self.settings.session_encryption_key:
            raise RuntimeError(
                "SESSION_ENCRYPTION_KEY is required; generate one with scripts/generate_keys.py"
            )
        self.cipher = SessionCipher.from_settings(self.settings)
        self.codec = TokenCodec(self.settings, self.keys)

        self.store: SessionStore
        if self.settings.use_memory_store:
            self.store = MemorySessionStore(
                self.cipher, session_mode=self.settings.session_mode
            )
        else:
            cache = RedisCache(
                self.settings.redis_url,
                self.cipher,
                session_mode=self.settings.session_mode,
                operation_timeout=self.settings.store_timeout_seconds,
                retry_attempts=self.settings.store_retry_attempts,
                retry_backoff_seconds=self.settings.store_retry_backoff_seconds,
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                )
                raise RuntimeError(
                    "Redis is required for sessions, blacklists and rate limits; "
                    "start Redis or set USE_MEMORY_STORE=true for a single-process setup."
                ) from exc
            self.store = cache
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
        )

        self.directory = directory or MemoryUserDirectory(
            default_role=self.settings.default_role
        )
        if provider is None:
            if self.settings.test_mode:
                provider = StaticIdentityProvider()
            else:
                provider = GoogleIdentityProvider.from_settings(self.settings)
        self.provider = provider
        self.identity = IdentityExchangeClient(
            self.provider, self.directory, default_role=self.settings.default_role
        )
        self.auth = AuthService(
            self.settings, self.codec, self.store, self.identity, directory=self.directory
        )
        logger.info("runtime_init_completed", provider=type(self.provider).__name__)


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
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.store.close())
            else:
                loop.create_task(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
