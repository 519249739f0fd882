from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "token_expired",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})

# Printable identifiers only; ':' is allowed because device labels often use it
_IDENTIFIER = re.compile(r"^[A-Za-z0-9._@:+-]+$")


def _normalize_identifier(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip())
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    if not _IDENTIFIER.match(normalized):
        raise ValueError(f"{field_name} contains unsupported characters")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignupRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str) -> str:
        return _normalize_identifier(value, "user_id")


class SignupResponse(BaseModel):
    user_id: str
    role: str


class LoginRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    password: str = Field(..., max_length=1024)
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str) -> str:
        return _normalize_identifier(value, "user_id")

    @field_validator("device_id")
    @classmethod
    def _validate_device_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _normalize_identifier(value, "device_id")


class LoginResponse(BaseModel):
    user_id: str
    device_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutRequest(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    all_devices: bool = False

    @field_validator("device_id")
    @classmethod
    def _validate_device_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _normalize_identifier(value, "device_id")


class LogoutResponse(BaseModel):
    sessions_ended: int


class TokenValidateRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class TokenValidateResponse(BaseModel):
    valid: bool


class IdentityResponse(BaseModel):
    user_id: str
    device_id: str
    roles: List[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    device_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
