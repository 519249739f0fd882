from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that is rendered into the error envelope:
    - unauthorized (401)
    - invalid_token (401)
    - token_expired (401)
    - validation_error (400)
    - conflict (409)
    - server_error (500/503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthenticationFailed(AuthenticationError):
    """Bad credentials, or an infrastructure failure hidden behind the same answer."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """Token is malformed, forged, of the wrong kind, or no longer registered."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MalformedToken(InvalidToken):
    """Token is not a structurally valid compact JWS."""


class InvalidSignature(InvalidToken):
    """Signature does not verify against the current signing key."""


class UnsupportedAlgorithm(InvalidToken):
    """Header names an algorithm other than the configured HMAC one."""


class SessionNotFound(InvalidToken):
    """No active session record references the presented token."""


class TokenExpired(AuthenticationError):
    """Token expiry has passed; clients should refresh rather than re-login."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailable(ServerError):
    """A backing store timed out or refused the operation (503)."""
    status_code = 503


class RevocationStoreUnavailable(StoreUnavailable):
    """Revocation membership could not be read or written."""


class SessionStoreUnavailable(StoreUnavailable):
    """Session registry could not be read or written."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthenticationFailed",
    "InvalidToken",
    "MalformedToken",
    "InvalidSignature",
    "UnsupportedAlgorithm",
    "SessionNotFound",
    "TokenExpired",
    "ConflictError",
    "ServerError",
    "StoreUnavailable",
    "RevocationStoreUnavailable",
    "SessionStoreUnavailable",
]
