from __future__ import annotations

from typing import Optional

from assetauth.logging import get_logger
from assetauth.service.errors import (
    InvalidSignature,
    InvalidToken,
    RevocationStoreUnavailable,
    TokenExpired,
)
from assetauth.service.revocation import RevocationStore
from assetauth.service.tokens import TokenKind, TokenSigner
from assetauth.storage.models import Identity

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


class RequestAuthenticator:
    """Per-request gate resolving a bearer token to an Identity.

    Never raises for bad or missing credentials: an unusable token simply
    yields no identity and downstream authorization decides. Revocation store
    outages fail closed.
    """

    def __init__(self, signer: TokenSigner, revocations: RevocationStore) -> None:
        self.signer = signer
        self.revocations = revocations
        self.logger = logger

    async def authenticate(self, authorization: Optional[str]) -> Optional[Identity]:
        token = extract_bearer(authorization)
        if token is None:
            return None
        return await self.resolve_token(token)

    async def resolve_token(self, token: str) -> Optional[Identity]:
        try:
            claims = self.signer.verify(token)
        except TokenExpired:
            self.logger.debug("request_token_expired")
            return None
        except InvalidSignature:
            self.logger.warning("request_token_forged")
            return None
        except InvalidToken as exc:
            self.logger.info("request_token_invalid", reason=type(exc).__name__)
            return None
        if claims.kind is not TokenKind.ACCESS:
            self.logger.warning(
                "request_token_wrong_type", subject=claims.subject, kind=claims.kind.value
            )
            return None
        try:
            revoked = await self.revocations.is_revoked(token)
        except RevocationStoreUnavailable:
            self.logger.error(
                "request_token_rejected_store_unavailable",
                subject=claims.subject,
                jti=claims.jti,
            )
            return None
        if revoked:
            self.logger.info("request_token_revoked", subject=claims.subject, jti=claims.jti)
            return None
        return Identity(
            subject=claims.subject, device_id=claims.device_id, roles=claims.roles
        )
