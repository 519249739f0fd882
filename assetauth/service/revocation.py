from __future__ import annotations

import asyncio
from typing import Any

from assetauth.logging import get_logger
from assetauth.service.errors import RevocationStoreUnavailable
from assetauth.service.tokens import token_fingerprint

logger = get_logger(__name__)


class RevocationStore:
    """TTL-bound set of tokens that must be refused before their natural expiry.

    Entries are keyed by token fingerprint and expire on their own; nothing
    ever deletes them explicitly. Backend failures and timeouts surface as
    RevocationStoreUnavailable so callers can fail closed.
    """

    def __init__(self, cache: Any, *, timeout_seconds: float = 2.0) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.logger = logger

    async def revoke(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            # Already expired; the token cannot be replayed anyway
            return
        token_fp = token_fingerprint(token)
        try:
            await asyncio.wait_for(
                self.cache.mark_token_revoked(token_fp, int(ttl_seconds)),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "revocation_store_unavailable",
                operation="revoke",
                error="timeout",
                timeout=self.timeout_seconds,
            )
            raise RevocationStoreUnavailable("revocation store timed out") from exc
        except Exception as exc:
            self.logger.error(
                "revocation_store_unavailable",
                operation="revoke",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise RevocationStoreUnavailable("revocation store unavailable") from exc

    async def is_revoked(self, token: str) -> bool:
        """Membership check; absence only means not known to be revoked."""
        token_fp = token_fingerprint(token)
        try:
            return bool(
                await asyncio.wait_for(
                    self.cache.is_token_revoked(token_fp), self.timeout_seconds
                )
            )
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "revocation_store_unavailable",
                operation="is_revoked",
                error="timeout",
                timeout=self.timeout_seconds,
            )
            raise RevocationStoreUnavailable("revocation store timed out") from exc
        except Exception as exc:
            self.logger.error(
                "revocation_store_unavailable",
                operation="is_revoked",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise RevocationStoreUnavailable("revocation store unavailable") from exc
