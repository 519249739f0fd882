from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Iterable, List, Optional

from assetauth.logging import get_logger
from assetauth.service.authenticator import RequestAuthenticator
from assetauth.service.credentials import (
    CredentialStore,
    PasswordMatcher,
    WritableCredentialStore,
)
from assetauth.service.errors import (
    AuthenticationFailed,
    InvalidToken,
    SessionNotFound,
    StoreUnavailable,
    TokenExpired,
    ValidationError,
)
from assetauth.service.revocation import RevocationStore
from assetauth.service.sessions import SessionRegistry
from assetauth.service.tokens import TokenKind, TokenSigner
from assetauth.storage.models import CredentialRecord, SessionRecord

logger = get_logger(__name__)

DEFAULT_DEVICE_ID = "default"


@dataclass(frozen=True)
class LoginResult:
    user_id: str
    device_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class AuthService:
    """Login, refresh and logout over signed tokens plus server-side session state.

    Per (user, device) the lifecycle is Anonymous -> Authenticated -> Revoked.
    The service keeps no mutable state of its own; the session registry and
    revocation store are the synchronization points. Store outages are logged
    with their cause and reported to callers as AuthenticationFailed.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        signer: TokenSigner,
        revocations: RevocationStore,
        sessions: SessionRegistry,
        *,
        password_matcher: Optional[PasswordMatcher] = None,
        authenticator: Optional[RequestAuthenticator] = None,
        default_device_id: str = DEFAULT_DEVICE_ID,
    ) -> None:
        self.credentials = credentials
        self.signer = signer
        self.revocations = revocations
        self.sessions = sessions
        self.passwords = password_matcher or PasswordMatcher()
        self.authenticator = authenticator or RequestAuthenticator(signer, revocations)
        self.default_device_id = default_device_id
        self.logger = logger

    async def register(
        self, user_id: str, password: str, *, role: str = "user"
    ) -> CredentialRecord:
        """Create a credential record with an argon2id hash."""
        if not user_id or not password:
            raise ValidationError("user_id and password are required")
        if not isinstance(self.credentials, WritableCredentialStore):
            raise ValidationError("credential store is read-only")
        record = self.credentials.save_credentials(
            user_id, self.passwords.hash(password), role
        )
        self.logger.info("credentials_registered", user_id=user_id, role=role)
        return record

    async def login(
        self, user_id: str, password: str, device_id: Optional[str] = None
    ) -> LoginResult:
        device = (device_id or "").strip() or self.default_device_id
        record = self._lookup_credentials(user_id)
        if record is None:
            # Same cost and same error as a wrong password
            self.passwords.burn(password or "")
            self.logger.info("login_failed", user_id=user_id, device_id=device)
            raise AuthenticationFailed()
        if not self.passwords.matches(password or "", record.password_hash):
            self.logger.info("login_failed", user_id=user_id, device_id=device)
            raise AuthenticationFailed()

        roles = (record.role,) if record.role else ()
        access_token = self.signer.mint_access_token(user_id, device, roles=roles)
        refresh_token = self.signer.mint_refresh_token(user_id, device, roles=roles)
        try:
            previous = await self.sessions.upsert(
                user_id,
                device,
                access_token,
                refresh_token,
                ttl_seconds=self.signer.refresh_ttl_seconds,
            )
        except StoreUnavailable as exc:
            self._log_infrastructure_failure("login", exc, user_id=user_id, device_id=device)
            raise AuthenticationFailed() from exc
        if previous is not None:
            self.logger.info("session_superseded", user_id=user_id, device_id=device)
        self.logger.info("login_succeeded", user_id=user_id, device_id=device)
        return LoginResult(
            user_id=user_id,
            device_id=device,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.signer.access_ttl_seconds,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new access token; the refresh token is retained, not rotated."""
        try:
            claims = self.signer.verify(refresh_token)
        except TokenExpired as exc:
            self.logger.info("refresh_rejected", reason="expired")
            raise InvalidToken("refresh token expired") from exc
        except InvalidToken as exc:
            self.logger.warning(
                "refresh_rejected", reason=type(exc).__name__, error=exc.message
            )
            raise InvalidToken() from exc
        if claims.kind is not TokenKind.REFRESH:
            self.logger.warning(
                "refresh_rejected", reason="wrong_token_type", subject=claims.subject
            )
            raise InvalidToken("not a refresh token")

        try:
            if await self.revocations.is_revoked(refresh_token):
                self.logger.info(
                    "refresh_rejected", reason="revoked", subject=claims.subject, jti=claims.jti
                )
                raise InvalidToken("refresh token revoked")
            record = await self.sessions.find_by_key(claims.subject, claims.device_id)
            if record is None or not hmac.compare_digest(
                record.refresh_token.encode(), refresh_token.encode()
            ):
                self.logger.info(
                    "refresh_rejected",
                    reason="not_registered",
                    subject=claims.subject,
                    device_id=claims.device_id,
                )
                raise SessionNotFound("session not found")

            access_token = self.signer.mint_access_token(
                claims.subject, claims.device_id, roles=claims.roles
            )
            updated = await self.sessions.replace_access_token(record, access_token)
        except StoreUnavailable as exc:
            self._log_infrastructure_failure(
                "refresh", exc, user_id=claims.subject, device_id=claims.device_id
            )
            raise AuthenticationFailed() from exc
        if updated is None:
            # A logout or a newer login replaced the record between read and swap
            self.logger.info(
                "refresh_rejected",
                reason="superseded",
                subject=claims.subject,
                device_id=claims.device_id,
            )
            raise SessionNotFound("session not found")

        # The replaced access token stays revoked for the rest of its own lifetime
        try:
            await self.revocations.revoke(
                record.access_token, self.signer.remaining_lifetime(record.access_token)
            )
        except StoreUnavailable as exc:
            self._log_infrastructure_failure(
                "refresh", exc, user_id=claims.subject, device_id=claims.device_id
            )
            raise AuthenticationFailed() from exc

        self.logger.info(
            "tokens_refreshed", user_id=claims.subject, device_id=claims.device_id
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.signer.access_ttl_seconds,
        )

    async def logout(self, user_id: str, device_id: Optional[str] = None) -> int:
        """Revoke and remove one device's session, or every session when device_id is None.

        Returns how many sessions were ended. Logging out a key with no active
        session is a no-op that returns 0.
        """
        try:
            if device_id is None:
                return await self._logout_all(user_id)
            return await self._logout_device(user_id, device_id)
        except StoreUnavailable as exc:
            self._log_infrastructure_failure(
                "logout", exc, user_id=user_id, device_id=device_id
            )
            raise AuthenticationFailed() from exc

    async def validate(self, token: str) -> bool:
        """True when the access token verifies, is not revoked and is still the
        current access token of a registered session.

        A session store outage reports the token as invalid.
        """
        identity = await self.authenticator.resolve_token(token)
        if identity is None:
            return False
        try:
            record = await self.sessions.find_by_access_token(token)
        except StoreUnavailable as exc:
            self._log_infrastructure_failure(
                "validate", exc, user_id=identity.subject, device_id=identity.device_id
            )
            return False
        if record is None:
            self.logger.info(
                "token_not_current",
                user_id=identity.subject,
                device_id=identity.device_id,
            )
            return False
        return True

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        try:
            return await self.sessions.find_all_by_user(user_id)
        except StoreUnavailable as exc:
            self._log_infrastructure_failure("list_sessions", exc, user_id=user_id)
            raise AuthenticationFailed() from exc

    async def _logout_device(self, user_id: str, device_id: str) -> int:
        record = await self.sessions.find_by_key(user_id, device_id)
        if record is None:
            self.logger.info("logout_no_active_session", user_id=user_id, device_id=device_id)
            return 0
        await self._revoke_pair(record)
        removed = await self.sessions.delete_by_key(
            user_id, device_id, expected_refresh_token=record.refresh_token
        )
        if removed is None:
            # A newer login owns the key now; its tokens stay valid
            self.logger.info("logout_raced_with_login", user_id=user_id, device_id=device_id)
        self.logger.info("logout_succeeded", user_id=user_id, device_id=device_id)
        return 1

    async def _logout_all(self, user_id: str) -> int:
        records = await self.sessions.find_all_by_user(user_id)
        await self._revoke_records(records)
        removed = await self.sessions.delete_all_by_user(user_id)
        # Sessions created between the listing and the delete were removed
        # without being revoked above
        seen = {record.refresh_token for record in records}
        late = [record for record in removed if record.refresh_token not in seen]
        await self._revoke_records(late)
        ended = len(seen) + len(late)
        self.logger.info("logout_all_succeeded", user_id=user_id, sessions_ended=ended)
        return ended

    async def _revoke_records(self, records: Iterable[SessionRecord]) -> None:
        for record in records:
            await self._revoke_pair(record)

    async def _revoke_pair(self, record: SessionRecord) -> None:
        for token in (record.access_token, record.refresh_token):
            await self.revocations.revoke(token, self.signer.remaining_lifetime(token))

    def _lookup_credentials(self, user_id: str) -> Optional[CredentialRecord]:
        if not user_id:
            return None
        try:
            return self.credentials.find_by_user_id(user_id)
        except Exception as exc:
            self._log_infrastructure_failure("login", exc, user_id=user_id)
            raise AuthenticationFailed() from exc

    def _log_infrastructure_failure(
        self, operation: str, exc: Exception, **context
    ) -> None:
        self.logger.error(
            "auth_infrastructure_failure",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
            **context,
        )
