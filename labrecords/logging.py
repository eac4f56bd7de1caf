from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars

# Keys whose values never reach the log output in clear text
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "credential")


def get_correlation_id() -> Optional[str]:
    """Request id bound by the HTTP middleware, if any."""
    return get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) into the structlog context.

    ``merge_contextvars`` then stamps it on every entry logged while the
    request is handled.
    """
    cid = correlation_id or str(uuid.uuid4())
    bind_contextvars(correlation_id=cid)
    return cid


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _CREDENTIAL_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(level: str, *, pretty: bool) -> None:
    """Install the process-wide structlog pipeline.

    JSON lines by default; ``pretty`` switches to the coloured console
    renderer for local work.
    """
    renderer = (
        [structlog.dev.ConsoleRenderer(colors=True)]
        if pretty
        else [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _mask_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    os.getenv("LOG_LEVEL", "INFO").upper(),
    pretty=_env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that would leak SQL, filesystem paths or secrets to a client
_LEAKY_FRAGMENTS = [
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(select|insert|update|delete)\b.{0,50}",
        r"(?i)(database|connection)\s+\w*\s*(error|failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token|key)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an exception message before it is logged next to request data."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."
