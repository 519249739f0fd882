from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from assetauth.api.schemas import (
    Envelope,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    SignupResponse,
    TokenRefreshRequest,
    TokenResponse,
    TokenValidateRequest,
    TokenValidateResponse,
)
from assetauth.service.authenticator import extract_bearer
from assetauth.service.runtime import get_runtime
from assetauth.storage.models import Identity

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_identity(request: Request) -> Identity:
    """Require the identity the request authenticator attached, or fail with 401."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return identity


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Register credentials for a new user id.

    Raises:
        409: If the user id is already registered
    """
    runtime = get_runtime()
    record = await runtime.auth.register(body.user_id, body.password)
    return Envelope(
        status="ok", data=SignupResponse(user_id=record.user_id, role=record.role)
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with user id and password and open a session for one device.

    Logging in again from the same device replaces that device's session.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.user_id, body.password, body.device_id)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user_id,
            device_id=result.device_id,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    identity: Identity = Depends(get_identity),
):
    """End the caller's session on one device, or on every device with all_devices."""
    runtime = get_runtime()
    body = body or LogoutRequest()
    if body.all_devices:
        ended = await runtime.auth.logout(identity.subject)
    else:
        ended = await runtime.auth.logout(
            identity.subject, body.device_id or identity.device_id
        )
    return Envelope(status="ok", data=LogoutResponse(sessions_ended=ended))


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate_token(
    body: Optional[TokenValidateRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Report whether an access token is live and still current for its session.

    The token comes from the body, or from the Authorization header when the
    body is omitted.
    """
    runtime = get_runtime()
    token = body.token if body else extract_bearer(authorization)
    if not token:
        return Envelope(status="ok", data=TokenValidateResponse(valid=False))
    valid = await runtime.auth.validate(token)
    return Envelope(status="ok", data=TokenValidateResponse(valid=valid))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def whoami(identity: Identity = Depends(get_identity)):
    return Envelope(
        status="ok",
        data=IdentityResponse(
            user_id=identity.subject,
            device_id=identity.device_id,
            roles=list(identity.roles),
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(identity: Identity = Depends(get_identity)):
    """List the caller's active devices."""
    runtime = get_runtime()
    records = await runtime.auth.list_sessions(identity.subject)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    device_id=record.device_id,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                    current=record.device_id == identity.device_id,
                )
                for record in records
            ]
        ),
    )
