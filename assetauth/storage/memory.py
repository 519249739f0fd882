from __future__ import annotations

import json
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

SessionKey = Tuple[str, str]


class MemoryCache:
    """In-process stand-in for RedisCache used in tests and local development.

    Mirrors RedisCache's coroutine API and TTL semantics. Every mutation runs
    under one re-entrant lock, which gives the same all-or-nothing behaviour as
    the Lua scripts used against Redis. Expired entries are dropped lazily on
    access.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data_lock = threading.RLock()
        self._revoked: Dict[str, float] = {}
        # (user_id, device_id) -> (raw record, expires_at)
        self._sessions: Dict[SessionKey, Tuple[str, float]] = {}
        self._access_index: Dict[str, SessionKey] = {}
        self._user_index: Dict[str, Set[str]] = {}

    def verify_connection(self) -> None:
        return None

    def _expired(self, expires_at: float) -> bool:
        return expires_at <= self._clock()

    def _live_record(self, key: SessionKey) -> Optional[str]:
        entry = self._sessions.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._expired(expires_at):
            self._drop_record(key, raw)
            return None
        return raw

    def _drop_record(self, key: SessionKey, raw: str) -> None:
        self._sessions.pop(key, None)
        access_fp = _field(raw, "access_fp")
        if access_fp and self._access_index.get(access_fp) == key:
            self._access_index.pop(access_fp, None)
        devices = self._user_index.get(key[0])
        if devices is not None:
            devices.discard(key[1])
            if not devices:
                self._user_index.pop(key[0], None)

    async def mark_token_revoked(self, token_fp: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._data_lock:
            self._revoked[token_fp] = self._clock() + int(ttl_seconds)

    async def is_token_revoked(self, token_fp: str) -> bool:
        with self._data_lock:
            expires_at = self._revoked.get(token_fp)
            if expires_at is None:
                return False
            if self._expired(expires_at):
                self._revoked.pop(token_fp, None)
                return False
            return True

    async def upsert_session(
        self,
        user_id: str,
        device_id: str,
        payload: str,
        *,
        access_fp: str,
        ttl_seconds: int,
    ) -> Optional[str]:
        key = (user_id, device_id)
        with self._data_lock:
            previous = self._live_record(key)
            if previous is not None:
                old_fp = _field(previous, "access_fp")
                if old_fp and old_fp != access_fp:
                    self._access_index.pop(old_fp, None)
            self._sessions[key] = (payload, self._clock() + max(1, int(ttl_seconds)))
            self._access_index[access_fp] = key
            self._user_index.setdefault(user_id, set()).add(device_id)
            return previous

    async def replace_session_access(
        self,
        user_id: str,
        device_id: str,
        payload: str,
        *,
        access_fp: str,
        expected_refresh_fp: str,
    ) -> bool:
        key = (user_id, device_id)
        with self._data_lock:
            current = self._live_record(key)
            if current is None or _field(current, "refresh_fp") != expected_refresh_fp:
                return False
            old_fp = _field(current, "access_fp")
            if old_fp:
                self._access_index.pop(old_fp, None)
            _, expires_at = self._sessions[key]
            self._sessions[key] = (payload, expires_at)
            self._access_index[access_fp] = key
            return True

    async def get_session(self, user_id: str, device_id: str) -> Optional[str]:
        with self._data_lock:
            return self._live_record((user_id, device_id))

    async def get_session_by_access(self, access_fp: str) -> Optional[str]:
        with self._data_lock:
            key = self._access_index.get(access_fp)
            if key is None:
                return None
            raw = self._live_record(key)
            if raw is None or _field(raw, "access_fp") != access_fp:
                return None
            return raw

    async def list_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            records = []
            for device_id in sorted(self._user_index.get(user_id, set())):
                raw = self._live_record((user_id, device_id))
                if raw is not None:
                    records.append(raw)
            return records

    async def delete_session(
        self,
        user_id: str,
        device_id: str,
        *,
        expected_refresh_fp: Optional[str] = None,
    ) -> Optional[str]:
        key = (user_id, device_id)
        with self._data_lock:
            current = self._live_record(key)
            if current is None:
                return None
            if expected_refresh_fp and _field(current, "refresh_fp") != expected_refresh_fp:
                return None
            self._drop_record(key, current)
            return current

    async def delete_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            removed = []
            for device_id in sorted(self._user_index.get(user_id, set())):
                key = (user_id, device_id)
                current = self._live_record(key)
                if current is not None:
                    self._drop_record(key, current)
                    removed.append(current)
            self._user_index.pop(user_id, None)
            return removed

    async def close(self) -> None:
        with self._data_lock:
            self._revoked.clear()
            self._sessions.clear()
            self._access_index.clear()
            self._user_index.clear()


def _field(raw: str, name: str) -> Optional[str]:
    try:
        return json.loads(raw).get(name)
    except (json.JSONDecodeError, AttributeError):
        return None
