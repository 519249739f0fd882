"""Unit tests for the login / refresh / logout lifecycle."""

import os
from unittest.mock import AsyncMock

import pytest
from argon2 import PasswordHasher, Type

from assetauth.service.auth import AuthService
from assetauth.service.credentials import MemoryCredentialStore, PasswordMatcher
from assetauth.service.errors import (
    AuthenticationFailed,
    ConflictError,
    InvalidToken,
    SessionNotFound,
    ValidationError,
)
from assetauth.service.revocation import RevocationStore
from assetauth.service.sessions import SessionRegistry
from assetauth.service.tokens import TokenSigner
from assetauth.storage.memory import MemoryCache

ACCESS_TTL = 3600
REFRESH_TTL = 604800


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def signer(clock):
    return TokenSigner(
        os.environ["JWT_SECRET"],
        access_ttl_seconds=ACCESS_TTL,
        refresh_ttl_seconds=REFRESH_TTL,
        clock=clock,
    )


@pytest.fixture
def revocations(cache):
    return RevocationStore(cache)


@pytest.fixture
def sessions(cache):
    return SessionRegistry(cache, default_ttl_seconds=REFRESH_TTL)


@pytest.fixture
def auth_service(signer, revocations, sessions):
    # Minimal argon2 cost keeps the suite fast
    matcher = PasswordMatcher(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )
    return AuthService(
        MemoryCredentialStore(),
        signer,
        revocations,
        sessions,
        password_matcher=matcher,
    )


async def _register_alice(auth_service):
    await auth_service.register("alice", "correct-horse")


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_hashes_password(self, auth_service):
        record = await auth_service.register("alice", "correct-horse")

        assert record.user_id == "alice"
        assert record.role == "user"
        assert record.password_hash.startswith("$argon2id$")

    @pytest.mark.asyncio
    async def test_register_duplicate_conflicts(self, auth_service):
        await _register_alice(auth_service)

        with pytest.raises(ConflictError):
            await auth_service.register("alice", "other")

    @pytest.mark.asyncio
    async def test_register_requires_fields(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("", "pw")


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_issues_pair_and_registers_session(
        self, auth_service, signer, sessions
    ):
        await _register_alice(auth_service)

        result = await auth_service.login("alice", "correct-horse", "phone1")

        assert result.device_id == "phone1"
        assert result.expires_in == ACCESS_TTL
        assert result.token_type == "bearer"
        claims = signer.verify(result.access_token)
        assert (claims.subject, claims.device_id) == ("alice", "phone1")
        assert claims.roles == ("user",)
        record = await sessions.find_by_key("alice", "phone1")
        assert record.access_token == result.access_token
        assert record.refresh_token == result.refresh_token

    @pytest.mark.asyncio
    async def test_login_defaults_device(self, auth_service):
        await _register_alice(auth_service)

        result = await auth_service.login("alice", "correct-horse")

        assert result.device_id == "default"

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_user_look_identical(self, auth_service):
        await _register_alice(auth_service)

        with pytest.raises(AuthenticationFailed) as wrong_pw:
            await auth_service.login("alice", "wrong", "phone1")
        with pytest.raises(AuthenticationFailed) as unknown:
            await auth_service.login("nobody", "correct-horse", "phone1")

        assert wrong_pw.value.message == unknown.value.message
        assert wrong_pw.value.status_code == unknown.value.status_code == 401

    @pytest.mark.asyncio
    async def test_failed_login_creates_no_session(self, auth_service, sessions):
        await _register_alice(auth_service)

        with pytest.raises(AuthenticationFailed):
            await auth_service.login("alice", "wrong", "phone1")

        assert await sessions.find_all_by_user("alice") == []

    @pytest.mark.asyncio
    async def test_relogin_same_device_supersedes(self, auth_service, sessions):
        await _register_alice(auth_service)
        first = await auth_service.login("alice", "correct-horse", "phone1")
        second = await auth_service.login("alice", "correct-horse", "phone1")

        records = await sessions.find_all_by_user("alice")
        assert len(records) == 1
        assert records[0].access_token == second.access_token
        assert first.refresh_token != second.refresh_token
        with pytest.raises(SessionNotFound):
            await auth_service.refresh(first.refresh_token)

    @pytest.mark.asyncio
    async def test_session_store_outage_fails_login(self, signer, revocations):
        cache = AsyncMock()
        cache.upsert_session.side_effect = ConnectionError("redis down")
        store = MemoryCredentialStore()
        matcher = PasswordMatcher(
            PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        )
        service = AuthService(
            store, signer, revocations, SessionRegistry(cache), password_matcher=matcher
        )
        await service.register("alice", "correct-horse")

        with pytest.raises(AuthenticationFailed):
            await service.login("alice", "correct-horse", "phone1")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_mints_new_access_and_keeps_refresh(
        self, auth_service, sessions, clock
    ):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")
        clock.advance(10)

        pair = await auth_service.refresh(login.refresh_token)

        assert pair.refresh_token == login.refresh_token
        assert pair.access_token != login.access_token
        record = await sessions.find_by_key("alice", "phone1")
        assert record.access_token == pair.access_token
        assert record.updated_at is not None
        assert await sessions.find_by_access_token(login.access_token) is None

    @pytest.mark.asyncio
    async def test_refresh_revokes_replaced_access_token(
        self, auth_service, revocations, clock
    ):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")

        pair = await auth_service.refresh(login.refresh_token)

        assert await revocations.is_revoked(login.access_token)
        assert not await revocations.is_revoked(pair.access_token)
        assert not await revocations.is_revoked(login.refresh_token)
        clock.advance(ACCESS_TTL)
        assert not await revocations.is_revoked(login.access_token)

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, auth_service):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")

        with pytest.raises(InvalidToken):
            await auth_service.refresh(login.access_token)

    @pytest.mark.asyncio
    async def test_expired_refresh_token_rejected(self, auth_service, clock):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")
        clock.advance(REFRESH_TTL)

        with pytest.raises(InvalidToken):
            await auth_service.refresh(login.refresh_token)

    @pytest.mark.asyncio
    async def test_garbage_refresh_token_rejected(self, auth_service):
        with pytest.raises(InvalidToken):
            await auth_service.refresh("not.a.token")

    @pytest.mark.asyncio
    async def test_refresh_after_logout_rejected(self, auth_service):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")
        await auth_service.logout("alice", "phone1")

        with pytest.raises(InvalidToken):
            await auth_service.refresh(login.refresh_token)

    @pytest.mark.asyncio
    async def test_unregistered_refresh_token_rejected(self, auth_service, signer):
        await _register_alice(auth_service)
        stray = signer.mint_refresh_token("alice", "tablet")

        with pytest.raises(SessionNotFound):
            await auth_service.refresh(stray)


class TestValidate:
    @pytest.mark.asyncio
    async def test_current_access_token_is_valid(self, auth_service):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")

        assert await auth_service.validate(login.access_token)

    @pytest.mark.asyncio
    async def test_access_token_replaced_by_refresh_is_invalid(self, auth_service):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")
        pair = await auth_service.refresh(login.refresh_token)

        assert not await auth_service.validate(login.access_token)
        assert await auth_service.validate(pair.access_token)

    @pytest.mark.asyncio
    async def test_access_token_superseded_by_relogin_is_invalid(self, auth_service):
        await _register_alice(auth_service)
        first = await auth_service.login("alice", "correct-horse", "phone1")
        await auth_service.login("alice", "correct-horse", "phone1")

        assert not await auth_service.validate(first.access_token)

    @pytest.mark.asyncio
    async def test_unregistered_access_token_is_invalid(self, auth_service, signer):
        stray = signer.mint_access_token("alice", "tablet")

        assert not await auth_service.validate(stray)

    @pytest.mark.asyncio
    async def test_refresh_token_and_garbage_are_invalid(self, auth_service):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")

        assert not await auth_service.validate(login.refresh_token)
        assert not await auth_service.validate("not.a.token")

    @pytest.mark.asyncio
    async def test_session_store_outage_reports_invalid(self, signer, revocations):
        cache = AsyncMock()
        cache.get_session_by_access.side_effect = ConnectionError("redis down")
        service = AuthService(
            MemoryCredentialStore(), signer, revocations, SessionRegistry(cache)
        )

        assert not await service.validate(signer.mint_access_token("alice", "phone1"))


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_revokes_both_tokens(self, auth_service, revocations, sessions):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")

        ended = await auth_service.logout("alice", "phone1")

        assert ended == 1
        assert await revocations.is_revoked(login.access_token)
        assert await revocations.is_revoked(login.refresh_token)
        assert await sessions.find_by_key("alice", "phone1") is None

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, auth_service):
        await _register_alice(auth_service)
        await auth_service.login("alice", "correct-horse", "phone1")

        assert await auth_service.logout("alice", "phone1") == 1
        assert await auth_service.logout("alice", "phone1") == 0
        assert await auth_service.logout("nobody", "phone1") == 0

    @pytest.mark.asyncio
    async def test_logout_all_devices(self, auth_service, revocations, sessions):
        await _register_alice(auth_service)
        phone = await auth_service.login("alice", "correct-horse", "phone1")
        laptop = await auth_service.login("alice", "correct-horse", "laptop1")

        ended = await auth_service.logout("alice")

        assert ended == 2
        for token in (phone.access_token, laptop.refresh_token):
            assert await revocations.is_revoked(token)
        assert await sessions.find_all_by_user("alice") == []
        assert await auth_service.logout("alice") == 0

    @pytest.mark.asyncio
    async def test_revocations_expire_with_tokens(self, auth_service, revocations, clock):
        await _register_alice(auth_service)
        login = await auth_service.login("alice", "correct-horse", "phone1")
        await auth_service.logout("alice", "phone1")

        clock.advance(ACCESS_TTL)
        assert not await revocations.is_revoked(login.access_token)
        assert await revocations.is_revoked(login.refresh_token)

    @pytest.mark.asyncio
    async def test_revocation_outage_fails_logout(self, signer, sessions):
        cache = AsyncMock()
        cache.mark_token_revoked.side_effect = ConnectionError("redis down")
        matcher = PasswordMatcher(
            PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        )
        service = AuthService(
            MemoryCredentialStore(),
            signer,
            RevocationStore(cache),
            sessions,
            password_matcher=matcher,
        )
        await service.register("alice", "correct-horse")
        await service.login("alice", "correct-horse", "phone1")

        with pytest.raises(AuthenticationFailed):
            await service.logout("alice", "phone1")
        # Nothing was deleted, so the user can retry
        assert await sessions.find_by_key("alice", "phone1") is not None


@pytest.mark.asyncio
async def test_two_device_walkthrough(auth_service, revocations, sessions):
    await _register_alice(auth_service)
    phone = await auth_service.login("alice", "correct-horse", "phone1")
    laptop = await auth_service.login("alice", "correct-horse", "laptop1")

    assert len(await sessions.find_all_by_user("alice")) == 2

    await auth_service.logout("alice", "phone1")

    assert await revocations.is_revoked(phone.access_token)
    assert not await revocations.is_revoked(laptop.access_token)
    pair = await auth_service.refresh(laptop.refresh_token)
    assert pair.refresh_token == laptop.refresh_token
    with pytest.raises(InvalidToken):
        await auth_service.refresh(phone.refresh_token)

    remaining = await auth_service.list_sessions("alice")
    assert [r.device_id for r in remaining] == ["laptop1"]
