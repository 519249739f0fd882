from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from assetauth.api.schemas import Envelope, ErrorBody
from assetauth.logging import get_correlation_id, get_logger
from assetauth.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    503: "server_error",
}

# RFC 6750 challenge parameter for each token-level error code
_BEARER_ERRORS = {
    "invalid_token": 'Bearer error="invalid_token"',
    "token_expired": 'Bearer error="invalid_token", error_description="token expired"',
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _challenge(error_code: str) -> dict[str, str]:
    return {"WWW-Authenticate": _BEARER_ERRORS.get(error_code, "Bearer")}


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """Render an error envelope; 401s also carry a Bearer challenge."""
    error_code = code or _error_code_for_status(status_code)
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=error_code, message=message, details=details),
    )
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(),
        headers=_challenge(error_code) if status_code == 401 else None,
    )


def _log_error(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Route every failure through the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_error(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # Field locations only; raw input may contain a password
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        _log_error(request, "request_validation_error", 422, errors=len(details))
        return _error_response(422, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            # Envelope-shaped detail from routes._http_error()
            error_obj = detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = detail if isinstance(detail, str) else "http error"
            code = None
            details = detail if isinstance(detail, (dict, list)) else None
        _log_error(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
