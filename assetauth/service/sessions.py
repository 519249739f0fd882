from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, List, Optional, TypeVar

from assetauth.logging import get_logger
from assetauth.service.errors import SessionStoreUnavailable
from assetauth.service.tokens import token_fingerprint
from assetauth.storage.models import SessionRecord

logger = get_logger(__name__)

T = TypeVar("T")


class SessionRegistry:
    """Tracks the one authoritative token pair per (user, device).

    Every mutation is a single atomic store operation, so concurrent logins,
    refreshes and logouts for the same key settle on last-writer-wins without
    an application-level lock. Refresh and targeted delete are
    compare-and-swap on the refresh token, so they never act on a record that
    a newer login has replaced.
    """

    def __init__(
        self,
        cache: Any,
        *,
        timeout_seconds: float = 2.0,
        default_ttl_seconds: int = 7 * 24 * 60 * 60,
    ) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.default_ttl_seconds = default_ttl_seconds
        self.logger = logger

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "session_store_unavailable",
                operation=operation,
                error="timeout",
                timeout=self.timeout_seconds,
            )
            raise SessionStoreUnavailable("session store timed out") from exc
        except Exception as exc:
            self.logger.error(
                "session_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise SessionStoreUnavailable("session store unavailable") from exc

    def _decode(self, raw: Optional[str]) -> Optional[SessionRecord]:
        if not raw:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("session_record_corrupt", error=str(exc))
            return None

    @staticmethod
    def _payload(record: SessionRecord) -> str:
        return record.to_json(
            access_fp=token_fingerprint(record.access_token),
            refresh_fp=token_fingerprint(record.refresh_token),
        )

    async def upsert(
        self,
        user_id: str,
        device_id: str,
        access_token: str,
        refresh_token: str,
        created_at: Optional[datetime] = None,
        *,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[SessionRecord]:
        """Store the pair for (user, device), replacing any existing record.

        Returns the record that was superseded, if there was one.
        """
        record = SessionRecord(
            user_id=user_id,
            device_id=device_id,
            access_token=access_token,
            refresh_token=refresh_token,
            created_at=created_at or datetime.now(timezone.utc),
        )
        previous = await self._call(
            "upsert",
            self.cache.upsert_session(
                user_id,
                device_id,
                self._payload(record),
                access_fp=token_fingerprint(access_token),
                ttl_seconds=ttl_seconds or self.default_ttl_seconds,
            ),
        )
        return self._decode(previous)

    async def replace_access_token(
        self, record: SessionRecord, access_token: str
    ) -> Optional[SessionRecord]:
        """Swap in a new access token if the record still holds record.refresh_token.

        Returns the updated record, or None when the session was removed or
        superseded in the meantime.
        """
        updated = SessionRecord(
            user_id=record.user_id,
            device_id=record.device_id,
            access_token=access_token,
            refresh_token=record.refresh_token,
            created_at=record.created_at,
            updated_at=datetime.now(timezone.utc),
        )
        swapped = await self._call(
            "replace_access_token",
            self.cache.replace_session_access(
                record.user_id,
                record.device_id,
                self._payload(updated),
                access_fp=token_fingerprint(access_token),
                expected_refresh_fp=token_fingerprint(record.refresh_token),
            ),
        )
        return updated if swapped else None

    async def find_by_key(self, user_id: str, device_id: str) -> Optional[SessionRecord]:
        raw = await self._call("find_by_key", self.cache.get_session(user_id, device_id))
        return self._decode(raw)

    async def find_by_access_token(self, access_token: str) -> Optional[SessionRecord]:
        raw = await self._call(
            "find_by_access_token",
            self.cache.get_session_by_access(token_fingerprint(access_token)),
        )
        record = self._decode(raw)
        if record is None or record.access_token != access_token:
            return None
        return record

    async def find_all_by_user(self, user_id: str) -> List[SessionRecord]:
        raws = await self._call("find_all_by_user", self.cache.list_user_sessions(user_id))
        return [record for record in map(self._decode, raws) if record is not None]

    async def delete_by_key(
        self,
        user_id: str,
        device_id: str,
        *,
        expected_refresh_token: Optional[str] = None,
    ) -> Optional[SessionRecord]:
        """Remove the record for (user, device) and return it.

        With expected_refresh_token the delete only happens while the record
        still carries that refresh token.
        """
        raw = await self._call(
            "delete_by_key",
            self.cache.delete_session(
                user_id,
                device_id,
                expected_refresh_fp=(
                    token_fingerprint(expected_refresh_token)
                    if expected_refresh_token
                    else None
                ),
            ),
        )
        return self._decode(raw)

    async def delete_all_by_user(self, user_id: str) -> List[SessionRecord]:
        raws = await self._call(
            "delete_all_by_user", self.cache.delete_user_sessions(user_id)
        )
        return [record for record in map(self._decode, raws) if record is not None]
