from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlsplit

from assetauth.config import Settings, get_settings, reset_settings_cache
from assetauth.logging import get_logger
from assetauth.service.auth import AuthService
from assetauth.service.authenticator import RequestAuthenticator
from assetauth.service.credentials import MemoryCredentialStore, PasswordMatcher
from assetauth.service.revocation import RevocationStore
from assetauth.service.sessions import SessionRegistry
from assetauth.service.tokens import TokenSigner
from assetauth.storage.memory import MemoryCache
from assetauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _redacted_url(url: Optional[str]) -> Optional[str]:
    """redis://:pw@host:6379/0 -> redis://:***@host:6379/0"""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return parts._replace(netloc=f"{parts.username or ''}:***@{host}").geturl()
    except ValueError:
        return "<unparseable url>"


def build_cache(settings: Settings) -> Cache:
    """Pick the revocation/session backend.

    Redis is mandatory unless TEST_MODE or ALLOW_REDIS_FALLBACK_DEV is set.
    """
    if settings.use_memory_cache:
        return MemoryCache()

    failure: Optional[Exception] = None
    if settings.redis_url:
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(
                settings.redis_url, socket_timeout=settings.redis_socket_timeout
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unreachable and is required for token revocation; "
            "set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV to run on process-local storage"
        ) from failure

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_redacted_url(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return MemoryCache()


class Runtime:
    """Process-wide wiring of the auth components, built once from Settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.cache = build_cache(self.settings)
        timeout = self.settings.store_operation_timeout_seconds

        self.signer = TokenSigner.from_settings(self.settings)
        self.revocations = RevocationStore(self.cache, timeout_seconds=timeout)
        self.sessions = SessionRegistry(
            self.cache,
            timeout_seconds=timeout,
            default_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.credentials = MemoryCredentialStore()
        self.authenticator = RequestAuthenticator(self.signer, self.revocations)
        self.auth = AuthService(
            self.credentials,
            self.signer,
            self.revocations,
            self.sessions,
            password_matcher=PasswordMatcher(),
            authenticator=self.authenticator,
            default_device_id=self.settings.default_device_id,
        )
        logger.info(
            "runtime_ready",
            cache_type=type(self.cache).__name__,
            jwt_algorithm=self.signer.algorithm,
            access_ttl=self.signer.access_ttl_seconds,
            refresh_ttl=self.signer.refresh_ttl_seconds,
        )

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment read (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        previous = runtime
        if isinstance(getattr(previous, "cache", None), SyncRedisCache):
            # The async pool of RedisCache is bound to a finished loop; only
            # the sync client can be closed from here
            previous.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
