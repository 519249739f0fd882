from __future__ import annotations

import hashlib
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis

ACCESS_INDEX_PREFIX = "auth:session:access:"


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def session_key(user_id: str, device_id: str) -> str:
    """Key for the one record per (user, device).

    Both components are hashed so a ':' inside a user or device id cannot
    collide with another pair.
    """
    return f"auth:session:{_digest(user_id)}:{_digest(device_id)}"


def user_index_key(user_id: str) -> str:
    return f"auth:user_sessions:{_digest(user_id)}"


def access_index_key(access_fp: str) -> str:
    return f"{ACCESS_INDEX_PREFIX}{access_fp}"


def revoked_key(token_fp: str) -> str:
    return f"auth:revoked:{token_fp}"


class RedisCache:
    """Redis-backed revocation set and session registry."""

    # Overwrites the record for a (user, device) key, drops the superseded
    # access-token index entry and returns the previous record, if any.
    _UPSERT_SESSION_SCRIPT = """
local record_key = KEYS[1]
local index_key = KEYS[2]
local access_key = KEYS[3]
local payload = ARGV[1]
local ttl = tonumber(ARGV[2])
local access_prefix = ARGV[3]

local previous = redis.call('GET', record_key)
if previous then
  local ok, decoded = pcall(cjson.decode, previous)
  if ok and decoded['access_fp'] then
    local old_key = access_prefix .. decoded['access_fp']
    if old_key ~= access_key then
      redis.call('DEL', old_key)
    end
  end
end

redis.call('SET', record_key, payload, 'EX', ttl)
redis.call('SET', access_key, record_key, 'EX', ttl)
redis.call('SADD', index_key, record_key)
if redis.call('TTL', index_key) < ttl then
  redis.call('EXPIRE', index_key, ttl)
end
if previous then
  return previous
end
return false
"""

    # Swaps the access token only while the record still carries the expected
    # refresh token; keeps the record's remaining TTL.
    _REPLACE_ACCESS_SCRIPT = """
local record_key = KEYS[1]
local access_key = KEYS[2]
local payload = ARGV[1]
local expected_refresh_fp = ARGV[2]
local access_prefix = ARGV[3]

local current = redis.call('GET', record_key)
if not current then
  return 0
end
local ok, decoded = pcall(cjson.decode, current)
if not ok or decoded['refresh_fp'] ~= expected_refresh_fp then
  return 0
end
local ttl = redis.call('TTL', record_key)
if ttl <= 0 then
  return 0
end
if decoded['access_fp'] then
  redis.call('DEL', access_prefix .. decoded['access_fp'])
end
redis.call('SET', record_key, payload, 'EX', ttl)
redis.call('SET', access_key, record_key, 'EX', ttl)
return 1
"""

    # Removes one record, optionally only if it still carries the expected
    # refresh token, and returns what was removed.
    _DELETE_SESSION_SCRIPT = """
local record_key = KEYS[1]
local index_key = KEYS[2]
local expected_refresh_fp = ARGV[1]
local access_prefix = ARGV[2]

local current = redis.call('GET', record_key)
if not current then
  redis.call('SREM', index_key, record_key)
  return false
end
local ok, decoded = pcall(cjson.decode, current)
if expected_refresh_fp ~= '' and (not ok or decoded['refresh_fp'] ~= expected_refresh_fp) then
  return false
end
if ok and decoded['access_fp'] then
  redis.call('DEL', access_prefix .. decoded['access_fp'])
end
redis.call('DEL', record_key)
redis.call('SREM', index_key, record_key)
return current
"""

    _DELETE_USER_SESSIONS_SCRIPT = """
local index_key = KEYS[1]
local access_prefix = ARGV[1]

local members = redis.call('SMEMBERS', index_key)
local removed = {}
for _, record_key in ipairs(members) do
  local current = redis.call('GET', record_key)
  if current then
    local ok, decoded = pcall(cjson.decode, current)
    if ok and decoded['access_fp'] then
      redis.call('DEL', access_prefix .. decoded['access_fp'])
    end
    redis.call('DEL', record_key)
    table.insert(removed, current)
  end
end
redis.call('DEL', index_key)
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._upsert_session = self.client.register_script(self._UPSERT_SESSION_SCRIPT)
        self._replace_access = self.client.register_script(self._REPLACE_ACCESS_SCRIPT)
        self._delete_session = self.client.register_script(self._DELETE_SESSION_SCRIPT)
        self._delete_user_sessions = self.client.register_script(
            self._DELETE_USER_SESSIONS_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_token_revoked(self, token_fp: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(revoked_key(token_fp), "1", ex=int(ttl_seconds))

    async def is_token_revoked(self, token_fp: str) -> bool:
        return bool(await self.client.exists(revoked_key(token_fp)))

    async def upsert_session(
        self,
        user_id: str,
        device_id: str,
        payload: str,
        *,
        access_fp: str,
        ttl_seconds: int,
    ) -> Optional[str]:
        record_key = session_key(user_id, device_id)
        return await self._upsert_session(
            keys=[record_key, user_index_key(user_id), access_index_key(access_fp)],
            args=[payload, max(1, int(ttl_seconds)), ACCESS_INDEX_PREFIX],
        )

    async def replace_session_access(
        self,
        user_id: str,
        device_id: str,
        payload: str,
        *,
        access_fp: str,
        expected_refresh_fp: str,
    ) -> bool:
        swapped = await self._replace_access(
            keys=[session_key(user_id, device_id), access_index_key(access_fp)],
            args=[payload, expected_refresh_fp, ACCESS_INDEX_PREFIX],
        )
        return bool(int(swapped))

    async def get_session(self, user_id: str, device_id: str) -> Optional[str]:
        return await self.client.get(session_key(user_id, device_id))

    async def get_session_by_access(self, access_fp: str) -> Optional[str]:
        record_key = await self.client.get(access_index_key(access_fp))
        if not record_key:
            return None
        return await self.client.get(record_key)

    async def list_user_sessions(self, user_id: str) -> List[str]:
        index_key = user_index_key(user_id)
        record_keys = sorted(await self.client.smembers(index_key))
        if not record_keys:
            return []
        values = await self.client.mget(record_keys)
        stale = [key for key, value in zip(record_keys, values) if value is None]
        if stale:
            # Records expire on their own; drop their dangling index entries
            await self.client.srem(index_key, *stale)
        return [value for value in values if value is not None]

    async def delete_session(
        self,
        user_id: str,
        device_id: str,
        *,
        expected_refresh_fp: Optional[str] = None,
    ) -> Optional[str]:
        return await self._delete_session(
            keys=[session_key(user_id, device_id), user_index_key(user_id)],
            args=[expected_refresh_fp or "", ACCESS_INDEX_PREFIX],
        )

    async def delete_user_sessions(self, user_id: str) -> List[str]:
        removed = await self._delete_user_sessions(
            keys=[user_index_key(user_id)], args=[ACCESS_INDEX_PREFIX]
        )
        return list(removed or [])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._upsert_session = self.client.register_script(
            RedisCache._UPSERT_SESSION_SCRIPT
        )
        self._replace_access = self.client.register_script(
            RedisCache._REPLACE_ACCESS_SCRIPT
        )
        self._delete_session = self.client.register_script(
            RedisCache._DELETE_SESSION_SCRIPT
        )
        self._delete_user_sessions = self.client.register_script(
            RedisCache._DELETE_USER_SESSIONS_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def mark_token_revoked(self, token_fp: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self.client.set(revoked_key(token_fp), "1", ex=int(ttl_seconds))

    async def is_token_revoked(self, token_fp: str) -> bool:
        return bool(self.client.exists(revoked_key(token_fp)))

    async def upsert_session(
        self,
        user_id: str,
        device_id: str,
        payload: str,
        *,
        access_fp: str,
        ttl_seconds: int,
    ) -> Optional[str]:
        record_key = session_key(user_id, device_id)
        return self._upsert_session(
            keys=[record_key, user_index_key(user_id), access_index_key(access_fp)],
            args=[payload, max(1, int(ttl_seconds)), ACCESS_INDEX_PREFIX],
        )

    async def replace_session_access(
        self,
        user_id: str,
        device_id: str,
        payload: str,
        *,
        access_fp: str,
        expected_refresh_fp: str,
    ) -> bool:
        swapped = self._replace_access(
            keys=[session_key(user_id, device_id), access_index_key(access_fp)],
            args=[payload, expected_refresh_fp, ACCESS_INDEX_PREFIX],
        )
        return bool(int(swapped))

    async def get_session(self, user_id: str, device_id: str) -> Optional[str]:
        return self.client.get(session_key(user_id, device_id))

    async def get_session_by_access(self, access_fp: str) -> Optional[str]:
        record_key = self.client.get(access_index_key(access_fp))
        if not record_key:
            return None
        return self.client.get(record_key)

    async def list_user_sessions(self, user_id: str) -> List[str]:
        """List live session records for a user (sync version)."""
        index_key = user_index_key(user_id)
        record_keys = sorted(self.client.smembers(index_key))
        if not record_keys:
            return []
        values = self.client.mget(record_keys)
        stale = [key for key, value in zip(record_keys, values) if value is None]
        if stale:
            self.client.srem(index_key, *stale)
        return [value for value in values if value is not None]

    async def delete_session(
        self,
        user_id: str,
        device_id: str,
        *,
        expected_refresh_fp: Optional[str] = None,
    ) -> Optional[str]:
        return self._delete_session(
            keys=[session_key(user_id, device_id), user_index_key(user_id)],
            args=[expected_refresh_fp or "", ACCESS_INDEX_PREFIX],
        )

    async def delete_user_sessions(self, user_id: str) -> List[str]:
        removed = self._delete_user_sessions(
            keys=[user_index_key(user_id)], args=[ACCESS_INDEX_PREFIX]
        )
        return list(removed or [])

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
