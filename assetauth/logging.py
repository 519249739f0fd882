from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys whose values are bearer credentials; logged only as a short fingerprint
_TOKEN_KEYS = ("token", "authorization")
# Keys whose values are never logged in any form
_SECRET_KEYS = ("password", "secret", "api_key")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request ID, or mint one, for the current context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(**values: Any) -> None:
    """Attach request attributes (method, path, ...) to every log line of this request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _token_hint(value: str) -> str:
    # Same digest family as revocation keys, so a log line can be matched to one
    return "sha256:" + hashlib.sha256(value.encode()).hexdigest()[:12]


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that keeps credential material out of log sinks.

    Token-like values become a short sha256 prefix. Password and secret
    values are replaced outright.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(marker in lower_key for marker in _TOKEN_KEYS):
            event_dict[key] = _token_hint(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    JSON lines are the default; development mode (or json_output=False)
    switches to the colored console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
