"""Tests for the revocation store and its fail-closed behaviour."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from assetauth.service.errors import RevocationStoreUnavailable, StoreUnavailable
from assetauth.service.revocation import RevocationStore
from assetauth.service.tokens import token_fingerprint
from assetauth.storage.memory import MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store(cache):
    return RevocationStore(cache, timeout_seconds=0.5)


@pytest.mark.asyncio
async def test_revoked_token_is_reported(store):
    await store.revoke("token-a", 60)

    assert await store.is_revoked("token-a") is True
    assert await store.is_revoked("token-b") is False


@pytest.mark.asyncio
async def test_revocation_expires_with_ttl(store, clock):
    await store.revoke("token-a", 60)
    clock.advance(59)
    assert await store.is_revoked("token-a") is True

    clock.advance(1)
    assert await store.is_revoked("token-a") is False


@pytest.mark.asyncio
@pytest.mark.parametrize("ttl", [0, -5])
async def test_non_positive_ttl_is_noop(store, ttl):
    await store.revoke("token-a", ttl)

    assert await store.is_revoked("token-a") is False


@pytest.mark.asyncio
async def test_revoking_twice_is_harmless(store):
    await store.revoke("token-a", 60)
    await store.revoke("token-a", 30)

    assert await store.is_revoked("token-a") is True


@pytest.mark.asyncio
async def test_store_keys_by_fingerprint(cache, store):
    await store.revoke("raw-token-value", 60)

    assert await cache.is_token_revoked(token_fingerprint("raw-token-value")) is True
    assert "raw-token-value" not in cache._revoked


@pytest.mark.asyncio
async def test_backend_error_raises_unavailable():
    cache = AsyncMock()
    cache.is_token_revoked.side_effect = ConnectionError("redis down")
    cache.mark_token_revoked.side_effect = ConnectionError("redis down")
    store = RevocationStore(cache)

    with pytest.raises(RevocationStoreUnavailable):
        await store.is_revoked("token-a")
    with pytest.raises(StoreUnavailable):
        await store.revoke("token-a", 60)


@pytest.mark.asyncio
async def test_slow_backend_times_out():
    async def _hang(*_args, **_kwargs):
        await asyncio.sleep(5)

    cache = AsyncMock()
    cache.is_token_revoked.side_effect = _hang
    store = RevocationStore(cache, timeout_seconds=0.05)

    with pytest.raises(RevocationStoreUnavailable):
        await store.is_revoked("token-a")


@pytest.mark.asyncio
async def test_skipped_revoke_never_touches_backend():
    cache = AsyncMock()
    store = RevocationStore(cache)

    await store.revoke("token-a", 0)

    cache.mark_token_revoked.assert_not_called()
