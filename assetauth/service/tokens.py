from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Tuple

from assetauth.config import MIN_SECRET_BYTES, SUPPORTED_JWT_ALGORITHMS, Settings
from assetauth.logging import get_logger
from assetauth.service.errors import (
    InvalidSignature,
    MalformedToken,
    TokenExpired,
    UnsupportedAlgorithm,
)

logger = get_logger(__name__)

_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    device_id: str
    kind: TokenKind
    issued_at: int
    expires_at: int
    jti: str
    roles: Tuple[str, ...] = ()


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def token_fingerprint(token: str) -> str:
    """Stable storage key for a raw token; the token itself never becomes a key."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenSigner:
    """Mints and verifies HMAC-signed compact JWS bearer tokens.

    The only state is the signing key, which is read-only after construction,
    so one instance is shared by every concurrent request.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret or len(secret.encode()) < MIN_SECRET_BYTES:
            raise ValueError(f"signing secret must be at least {MIN_SECRET_BYTES} bytes")
        algorithm = (algorithm or "").upper()
        if algorithm not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(f"unsupported signing algorithm: {algorithm}")
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ValueError("token TTLs must be positive")
        self._key = secret.encode()
        self._digest = _DIGESTS[algorithm]
        self.algorithm = algorithm
        self.access_ttl_seconds = int(access_ttl_seconds)
        self.refresh_ttl_seconds = int(refresh_ttl_seconds)
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenSigner":
        return cls(
            settings.jwt_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            algorithm=settings.jwt_algorithm,
            clock=clock,
        )

    def now(self) -> int:
        """Current time at the second granularity all expiry checks use."""
        return int(self._clock())

    def mint_access_token(
        self, subject: str, device_id: str, *, roles: Iterable[str] = ()
    ) -> str:
        return self._mint(subject, device_id, TokenKind.ACCESS, self.access_ttl_seconds, roles)

    def mint_refresh_token(
        self, subject: str, device_id: str, *, roles: Iterable[str] = ()
    ) -> str:
        return self._mint(
            subject, device_id, TokenKind.REFRESH, self.refresh_ttl_seconds, roles
        )

    def verify(self, token: str) -> TokenClaims:
        """Validate a token and return its claims.

        Raises MalformedToken, UnsupportedAlgorithm, TokenExpired or
        InvalidSignature. Expiry is checked before the signature, so an
        expired token reports TokenExpired whatever its signature.
        """
        if not token or not isinstance(token, str):
            raise MalformedToken("token missing")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            raise MalformedToken("token header is not valid JSON") from None
        if not isinstance(header, dict):
            raise MalformedToken("token header is not an object")
        alg = header.get("alg")
        if alg != self.algorithm:
            # Anything but our own HMAC is an algorithm confusion attempt
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise UnsupportedAlgorithm(f"unsupported algorithm: {alg}")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError):
            raise MalformedToken("token payload is not valid JSON") from None
        claims = self._claims_from_payload(payload)

        if claims.expires_at <= self.now():
            raise TokenExpired()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.warning(
                "jwt_signature_mismatch", subject=claims.subject, jti=claims.jti
            )
            raise InvalidSignature()
        return claims

    def remaining_lifetime(self, token: str) -> int:
        """Seconds until the token's own exp claim, never negative.

        Reads exp without verifying the signature; callers only pass tokens
        they minted themselves (registry contents), so 0 is returned for
        anything unreadable.
        """
        exp = self.read_expiry(token)
        if exp is None:
            return 0
        return max(0, exp - self.now())

    def read_expiry(self, token: str) -> Optional[int]:
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
            exp = payload["exp"]
        except (ValueError, TypeError, KeyError, AttributeError, RecursionError):
            return None
        return exp if _is_timestamp(exp) else None

    def _mint(
        self,
        subject: str,
        device_id: str,
        kind: TokenKind,
        ttl_seconds: int,
        roles: Iterable[str],
    ) -> str:
        if not subject:
            raise ValueError("subject is required")
        if not device_id:
            raise ValueError("device_id is required")
        issued_at = self.now()
        payload = {
            "sub": subject,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
            "deviceId": device_id,
            "token_type": kind.value,
            "jti": str(uuid.uuid4()),
            "roles": list(roles),
        }
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), self._digest).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _claims_from_payload(self, payload: Any) -> TokenClaims:
        if not isinstance(payload, dict):
            raise MalformedToken("token payload is not an object")
        subject = payload.get("sub")
        device_id = payload.get("deviceId")
        jti = payload.get("jti")
        if not isinstance(subject, str) or not subject:
            raise MalformedToken("token has no subject")
        if not isinstance(device_id, str) or not device_id:
            raise MalformedToken("token has no device id")
        if not isinstance(jti, str) or not jti:
            raise MalformedToken("token has no identifier")
        try:
            kind = TokenKind(payload.get("token_type"))
        except ValueError:
            raise MalformedToken("token has an unknown type") from None
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        # Whole seconds only; floats such as Infinity or 1e400 are not timestamps
        if not (_is_timestamp(issued_at) and _is_timestamp(expires_at)):
            raise MalformedToken("token timestamps are missing or invalid")
        roles = payload.get("roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise MalformedToken("token roles are invalid")
        return TokenClaims(
            subject=subject,
            device_id=device_id,
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
            roles=tuple(roles),
        )
