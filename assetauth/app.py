from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from assetauth.api.error_handling import register_exception_handlers
from assetauth.api.routes import router
from assetauth.config import get_settings
from assetauth.logging import bind_request_context, get_logger, set_correlation_id
from assetauth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so a missing Redis fails fast."""
    runtime = get_runtime()
    logger.info("app_started", cache_type=type(runtime.cache).__name__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Asset Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Attach the bearer identity (or None) to request.state.

    Public paths skip token resolution entirely. Protected routes turn a
    missing identity into 401 via the get_identity dependency.
    """
    request.state.identity = None
    if request.url.path not in get_settings().public_paths:
        runtime = get_runtime()
        request.state.identity = await runtime.authenticator.authenticate(
            request.headers.get("Authorization")
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation ID and log its outcome.

    The ID comes from the client's X-Request-ID header when present, is bound
    into every structured log line for the request, and is echoed back in the
    X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    bind_request_context(method=request.method, path=request.url.path)
    started = time.perf_counter()
    logger.debug("request_started")
    response = await call_next(request)
    logger.info(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report liveness plus reachability of the revocation/session store."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    store_ok = True
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.cache.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        store_ok = False
        logger.error(
            "health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        store_ok = False
        logger.error("health_check_cache_failed", error=str(exc))
    checks["cache"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)
